"""
Management command to expire subscriptions whose billing period has ended.

Crypto subscriptions are canceled; card subscriptions and free grants are
moved to past_due. Safe to run concurrently with itself.

Usage:
    python manage.py expire_subscriptions
    python manage.py expire_subscriptions --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from tollgate.billing.constants import SubscriptionStatus
from tollgate.billing.models import Subscription
from tollgate.billing.renewals import expire_overdue_subscriptions


class Command(BaseCommand):
    help = "Expire active subscriptions whose current period has ended."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show how many subscriptions would expire without changing them",
        )

    def handle(self, *args, **options):
        now = timezone.now()

        if options["dry_run"]:
            count = Subscription.objects.filter(
                status=SubscriptionStatus.ACTIVE,
                current_period_end__lt=now,
            ).count()
            self.stdout.write(
                self.style.WARNING(f"[DRY RUN] Would expire {count} subscription(s)."),
            )
            return

        result = expire_overdue_subscriptions(now)

        if result.checked == 0:
            self.stdout.write(self.style.SUCCESS("No overdue subscriptions found."))
            return

        self.stdout.write(
            self.style.SUCCESS(
                f"Expired {result.expired} of {result.checked} overdue subscription(s).",
            ),
        )
        for error in result.errors:
            self.stderr.write(error)
