from django.conf import settings
from django.contrib import admin
from django.urls import include
from django.urls import path

urlpatterns = [
    path(settings.ADMIN_URL, admin.site.urls),
    # Checkout, coupons, subscription management and the crypto webhook
    path("api/v1/billing/", include("tollgate.billing.urls", namespace="billing")),
    # Sweeps triggered by an external scheduler
    path("api/v1/scheduled/", include("tollgate.core.api.urls", namespace="scheduled")),
    # dj-stripe webhook endpoint: /stripe/webhook/
    path("stripe/", include("djstripe.urls", namespace="djstripe")),
]
