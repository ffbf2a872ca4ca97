from django.apps import AppConfig


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Handles checkout on the card and crypto rails, webhook reconciliation,
    and the renewal/expiry sweeps.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "tollgate.billing"

    def ready(self):
        """
        Import webhook handlers to register signal receivers.

        dj-stripe 2.9+ uses per-event Django signals; importing the webhooks
        module connects our receivers when Django starts.
        """
        from tollgate.billing import webhooks  # noqa: F401
