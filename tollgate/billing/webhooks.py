"""
Stripe webhook handlers using dj-stripe signals.

dj-stripe receives the webhook at /stripe/webhook/, verifies its signature
against DJSTRIPE_WEBHOOK_SECRET and stores the Event; our receivers then
normalize the event and hand it to the reconciler.

Key events handled:
- customer.subscription.created / updated: upsert the local Subscription
- customer.subscription.deleted: mark it canceled
- invoice.payment_succeeded: informational only
- invoice.payment_failed: flag the user as past due
- checkout.session.completed: record one-time purchases

To test locally:
    stripe listen --forward-to localhost:8000/stripe/webhook/
"""

import logging

from django.dispatch import receiver
from djstripe.signals import WEBHOOK_SIGNALS

from tollgate.billing.rails.card import normalize_stripe_event
from tollgate.billing.reconciliation import reconcile_stripe_event

logger = logging.getLogger(__name__)


def _reconcile(event) -> None:
    normalized = normalize_stripe_event(
        {"id": event.id, "type": event.type, "data": event.data},
    )
    if normalized is None:
        logger.debug("Ignoring Stripe event %s (%s)", event.id, event.type)
        return
    reconcile_stripe_event(normalized)


@receiver(WEBHOOK_SIGNALS["customer.subscription.created"])
def handle_subscription_created(sender, event, **kwargs):
    logger.info("customer.subscription.created: %s", event.id)
    _reconcile(event)


@receiver(WEBHOOK_SIGNALS["customer.subscription.updated"])
def handle_subscription_updated(sender, event, **kwargs):
    """
    Sync subscription changes from Stripe.

    Handles: status changes, period rollovers, cancel-at-period-end toggles
    and price swaps from upgrades.
    """
    logger.info("customer.subscription.updated: %s", event.id)
    _reconcile(event)


@receiver(WEBHOOK_SIGNALS["customer.subscription.deleted"])
def handle_subscription_deleted(sender, event, **kwargs):
    logger.info("customer.subscription.deleted: %s", event.id)
    _reconcile(event)


@receiver(WEBHOOK_SIGNALS["invoice.payment_succeeded"])
def handle_invoice_paid(sender, event, **kwargs):
    _reconcile(event)


@receiver(WEBHOOK_SIGNALS["invoice.payment_failed"])
def handle_payment_failed(sender, event, **kwargs):
    logger.info("invoice.payment_failed: %s", event.id)
    _reconcile(event)


@receiver(WEBHOOK_SIGNALS["checkout.session.completed"])
def handle_checkout_completed(sender, event, **kwargs):
    """
    Record one-time purchases after a successful Stripe Checkout.

    Subscription checkouts are left to the subscription events.
    """
    logger.info("checkout.session.completed: %s", event.id)
    _reconcile(event)
