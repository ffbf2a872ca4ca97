"""
URL configuration for the billing API.

Mounted under /api/v1/billing/ by config/urls.py. The Stripe webhook is
handled by dj-stripe at /stripe/webhook/.
"""

from django.urls import path

from tollgate.billing import views

app_name = "billing"

urlpatterns = [
    path("overview/", views.BillingOverviewView.as_view(), name="overview"),
    path("checkout/<str:rail>/", views.CheckoutView.as_view(), name="checkout"),
    path(
        "coupons/validate/",
        views.CouponValidateView.as_view(),
        name="coupon-validate",
    ),
    path("portal/", views.CustomerPortalView.as_view(), name="portal"),
    path(
        "subscriptions/cancel/",
        views.CancelSubscriptionView.as_view(),
        name="subscription-cancel",
    ),
    path(
        "subscriptions/reactivate/",
        views.ReactivateSubscriptionView.as_view(),
        name="subscription-reactivate",
    ),
    path(
        "subscriptions/upgrade/",
        views.UpgradeSubscriptionView.as_view(),
        name="subscription-upgrade",
    ),
    path(
        "subscriptions/renew/",
        views.RenewSubscriptionView.as_view(),
        name="subscription-renew",
    ),
    path(
        "subscriptions/expiring/",
        views.ExpiringSubscriptionsView.as_view(),
        name="subscriptions-expiring",
    ),
    path(
        "cryptomus/webhook/",
        views.CryptomusWebhookView.as_view(),
        name="cryptomus-webhook",
    ),
]
