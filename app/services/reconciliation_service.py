"""Reconciliation service — one atomic unit per payment event.

Responsible for:
- Recording the event in the idempotency ledger
- Driving the transaction state machine
- Granting entitlements / activating subscriptions on payment
- Deactivating subscriptions from provider lifecycle events
- Flagging warning-class outcomes as audit events

The ledger row and every effect share one database transaction (see
store.atomic), so an event is either seen-and-applied or neither. Only
store and provider failures raise; everything else returns a
ReconcileResult the webhook layer acknowledges with 200.
"""

import logging

from app.errors import Outcome
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.transaction import PurchaseTransaction
from app.services.entitlement_service import update_user_after_purchase
from app.services.ledger import LedgerResult, is_recorded, register_if_new
from app.services.normalizer import (
    SUBSCRIPTION_KINDS,
    EventKind,
    event_from_payload,
    event_identity,
    normalize,
)
from app.services.reconciler import mark_failed, mark_paid, mark_refunded
from app.services.store import atomic
from app.services.subscription_service import activate_or_renew, deactivate

logger = logging.getLogger(__name__)


class ReconcileResult:
    """What happened to one event."""

    def __init__(self, outcome, transaction=None, subscription=None):
        self.outcome = outcome
        self.transaction = transaction
        self.subscription = subscription

    @property
    def ok(self):
        return self.outcome == Outcome.PROCESSED

    def __repr__(self):
        return f"<ReconcileResult {self.outcome}>"


def _flag(event, action, transaction=None, extra=None):
    """Record a warning-class outcome for operators.

    Uses flush() so the caller's atomic scope controls the commit.
    """
    metadata = {
        "kind": event.kind.value,
        "event_type": event.event_type,
        "lookup_keys": [list(key) for key in event.lookup_keys],
    }
    if event.external_subscription_id:
        metadata["external_subscription_id"] = event.external_subscription_id
    metadata.update(extra or {})

    db.session.add(AuditEvent(
        provider=event.provider,
        event_id=event.event_id,
        transaction_id=transaction.id if transaction else None,
        action=action,
        metadata_=metadata,
    ))
    db.session.flush()


# ──────────────────────────────────────────────
# Per-kind handlers
# ──────────────────────────────────────────────

def _apply_success(event):
    if event.missing_metadata:
        logger.warning(
            f"{event.provider} {event.event_type} {event.event_id} missing metadata, skipping"
        )
        _flag(event, "payment.missing_metadata")
        return ReconcileResult(Outcome.MISSING_METADATA)

    result = mark_paid(event.provider, event.lookup_keys)
    tx = result.transaction

    if result.outcome == Outcome.UNMATCHED:
        _flag(event, "payment.unmatched")
        return ReconcileResult(Outcome.UNMATCHED)

    if result.outcome == Outcome.ILLEGAL_TRANSITION:
        _flag(event, "transition.illegal", tx, {"status": tx.status, "target": "paid"})
        return ReconcileResult(Outcome.ILLEGAL_TRANSITION, tx)

    is_subscription = tx.item_kind == PurchaseTransaction.ARTIST_SUBSCRIPTION

    if result.outcome == Outcome.ALREADY_IN_STATE:
        # A new renewal event for an already-paid subscription still extends access.
        if is_subscription and event.kind in SUBSCRIPTION_KINDS:
            sub = activate_or_renew(tx, period_end=event.period_end)
            return ReconcileResult(Outcome.PROCESSED, tx, sub)
        return ReconcileResult(Outcome.ALREADY_IN_STATE, tx)

    if not update_user_after_purchase(tx, event.payment_ref or tx.id):
        _flag(event, "entitlement.user_not_found", tx, {"user_id": tx.user_id})
        return ReconcileResult(Outcome.USER_NOT_FOUND, tx)

    sub = None
    if is_subscription:
        sub = activate_or_renew(tx, period_end=event.period_end)
    return ReconcileResult(Outcome.PROCESSED, tx, sub)


def _apply_failed(event):
    sub = None
    if event.external_subscription_id:
        sub = deactivate(event.external_subscription_id, "failed")

    if not event.lookup_keys:
        if sub is not None:
            return ReconcileResult(Outcome.PROCESSED, subscription=sub)
        _flag(event, "payment.unmatched")
        return ReconcileResult(Outcome.UNMATCHED)

    result = mark_failed(event.provider, event.lookup_keys, reason=event.failure_reason)

    if result.outcome == Outcome.UNMATCHED:
        if sub is not None:
            return ReconcileResult(Outcome.PROCESSED, subscription=sub)
        _flag(event, "payment.unmatched")
        return ReconcileResult(Outcome.UNMATCHED)

    if result.outcome == Outcome.ILLEGAL_TRANSITION:
        tx = result.transaction
        if sub is not None:
            # Failed renewal: the subscription carries it, the paid first payment stays.
            logger.info(
                f"Renewal failure for {event.external_subscription_id}, "
                f"transaction {tx.id} stays {tx.status}"
            )
            return ReconcileResult(Outcome.PROCESSED, tx, sub)
        _flag(event, "transition.illegal", tx, {"status": tx.status, "target": "failed"})
        return ReconcileResult(Outcome.ILLEGAL_TRANSITION, tx)

    return ReconcileResult(result.outcome, result.transaction, sub)


def _apply_cancelled(event):
    sub = deactivate(event.external_subscription_id, "cancelled")
    if sub is None:
        _flag(event, "subscription.unmatched")
        return ReconcileResult(Outcome.SUBSCRIPTION_NOT_FOUND)
    return ReconcileResult(Outcome.PROCESSED, subscription=sub)


def _apply_refund(event):
    result = mark_refunded(event.provider, event.lookup_keys)
    tx = result.transaction

    if result.outcome == Outcome.UNMATCHED:
        _flag(event, "refund.unmatched")
    elif result.outcome == Outcome.ILLEGAL_TRANSITION:
        _flag(event, "transition.illegal", tx, {"status": tx.status, "target": "refunded"})
    return ReconcileResult(result.outcome, tx)


_HANDLERS = {
    EventKind.PAYMENT_SUCCEEDED: _apply_success,
    EventKind.SUBSCRIPTION_ACTIVATED: _apply_success,
    EventKind.SUBSCRIPTION_RENEWED: _apply_success,
    EventKind.PAYMENT_FAILED: _apply_failed,
    EventKind.SUBSCRIPTION_CANCELLED: _apply_cancelled,
    EventKind.REFUND_ISSUED: _apply_refund,
}


def apply_event(event):
    """Apply a normalized event. Must run inside an atomic scope."""
    logger.info(f"Reconciling {event.provider} {event.kind.value} ({event.event_id})")
    return _HANDLERS[event.kind](event)


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def reconcile(provider, event_id, event_type, event):
    """Ledger check plus effects, committed as one unit.

    event may be None for provider events that carry no work; they are
    still recorded so redeliveries short-circuit. Without an event_id the
    ledger is skipped and the state machine alone guards against repeats.
    """
    with atomic():
        if event_id:
            if register_if_new(provider, event_id, event_type) == LedgerResult.DUPLICATE:
                logger.info(f"Duplicate {provider} event {event_id}, skipping")
                return ReconcileResult(Outcome.DUPLICATE)

        if event is None:
            logger.info(f"Ignored {provider} event {event_type} ({event_id})")
            return ReconcileResult(Outcome.IGNORED)

        return apply_event(event)


def process_notification(provider, payload, clients, event_id=None):
    """Handle one verified provider notification.

    clients is the ProviderClients registry; only this provider's client is
    handed to the normalizer.

    Redeliveries of a recorded event return DUPLICATE before normalizing,
    so they never reach the provider's API. The insert in reconcile() still
    decides races between first deliveries.
    """
    event_id, event_type = event_identity(provider, payload, fallback_event_id=event_id)
    if event_id and is_recorded(provider, event_id):
        logger.info(f"Duplicate {provider} event {event_id}, skipping")
        return ReconcileResult(Outcome.DUPLICATE)

    event = normalize(provider, payload, client=clients.get(provider), event_id=event_id)
    return reconcile(provider, event_id, event_type, event)


def _missing_provider(event):
    if event.provider:
        return False
    logger.warning(f"Internal {event.event_type} payload without provider, skipping")
    return True


def handle_payment_success(payload):
    """Internal entry point for a successful payment.

    payload: {event_id?, provider, transaction_id and/or lookup_keys,
    metadata, raw}. Without a provider returns MISSING_METADATA; with
    nothing to look the transaction up by, returns UNMATCHED. Neither
    touches the store.
    """
    event = event_from_payload(EventKind.PAYMENT_SUCCEEDED, payload)
    if _missing_provider(event):
        return ReconcileResult(Outcome.MISSING_METADATA)
    if not event.lookup_keys:
        logger.warning("handle_payment_success called without transaction_id or lookup keys")
        return ReconcileResult(Outcome.UNMATCHED)
    return reconcile(event.provider, event.event_id, event.event_type, event)


def handle_payment_failed(payload):
    """Internal entry point for a failed payment. Same payload as success, plus reason."""
    event = event_from_payload(EventKind.PAYMENT_FAILED, payload)
    if _missing_provider(event):
        return ReconcileResult(Outcome.MISSING_METADATA)
    if not event.lookup_keys and not event.external_subscription_id:
        logger.warning("handle_payment_failed called without transaction_id or lookup keys")
        return ReconcileResult(Outcome.UNMATCHED)
    return reconcile(event.provider, event.event_id, event.event_type, event)
