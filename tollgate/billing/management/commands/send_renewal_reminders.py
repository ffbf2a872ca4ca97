"""
Management command to dispatch renewal reminders that have come due.

Each due reminder is marked sent exactly once and announced on the
``renewal_reminder_due`` signal.

Usage:
    python manage.py send_renewal_reminders
    python manage.py send_renewal_reminders --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from tollgate.billing.constants import ReminderStatus
from tollgate.billing.models import RenewalReminder
from tollgate.billing.renewals import dispatch_due_reminders


class Command(BaseCommand):
    help = "Send pending renewal reminders whose reminder time has passed."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show how many reminders are due without sending them",
        )

    def handle(self, *args, **options):
        now = timezone.now()

        if options["dry_run"]:
            count = RenewalReminder.objects.filter(
                status=ReminderStatus.PENDING,
                reminder_at__lte=now,
            ).count()
            self.stdout.write(
                self.style.WARNING(f"[DRY RUN] Would send {count} reminder(s)."),
            )
            return

        result = dispatch_due_reminders(now)

        if result.checked == 0:
            self.stdout.write(self.style.SUCCESS("No reminders due."))
            return

        self.stdout.write(
            self.style.SUCCESS(f"Sent {result.sent} of {result.checked} due reminder(s)."),
        )
        for error in result.errors:
            self.stderr.write(error)
