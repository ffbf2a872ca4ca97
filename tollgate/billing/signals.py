"""
Billing signals for collaborators outside the payment core.

renewal_reminder_due is sent once per reminder, right after the sweeper marks
it SENT. Receivers get ``reminder`` (a RenewalReminder) and are expected to
deliver the actual notification (email, push...).
"""

from django.dispatch import Signal

renewal_reminder_due = Signal()
