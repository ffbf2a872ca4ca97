from django.contrib import admin
from django.contrib.auth import admin as auth_admin
from django.utils.translation import gettext_lazy as _

from tollgate.users.models import User


@admin.register(User)
class UserAdmin(auth_admin.UserAdmin):
    fieldsets = (
        (None, {"fields": ("username", "password")}),
        (_("Personal info"), {"fields": ("name", "email")}),
        (
            _("Billing"),
            {
                "fields": (
                    "stripe_customer_id",
                    "subscription_status",
                    "current_product",
                ),
            },
        ),
        (
            _("Permissions"),
            {
                "fields": (
                    "is_active",
                    "is_staff",
                    "is_superuser",
                    "groups",
                    "user_permissions",
                ),
            },
        ),
        (_("Important dates"), {"fields": ("last_login", "date_joined")}),
    )
    list_display = ["username", "email", "name", "subscription_status", "is_superuser"]
    list_filter = ["subscription_status", "is_staff", "is_superuser"]
    search_fields = ["username", "email", "name", "stripe_customer_id"]
    raw_id_fields = ["current_product"]
