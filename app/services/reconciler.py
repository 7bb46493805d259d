"""Transaction reconciler — the purchase state machine.

    pending --success--> paid
    failed  --success--> paid      (card retried on the same intent)
    pending --failure--> failed
    paid    --refund---> refunded

Every transition is one conditional UPDATE whose WHERE clause names the
allowed prior states. Duplicate or racing deliveries match zero rows and
collapse into a no-op; stale events (e.g. "failed" after "paid") are
logged and ignored.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import update

from app.errors import Outcome
from app.extensions import db
from app.models.transaction import PurchaseTransaction
from app.services.invoice_service import next_invoice_number
from app.services.normalizer import TRANSACTION_ID
from app.services.store import execute

logger = logging.getLogger(__name__)

ALLOWED_PRIOR = {
    PurchaseTransaction.PAID: (PurchaseTransaction.PENDING, PurchaseTransaction.FAILED),
    PurchaseTransaction.FAILED: (PurchaseTransaction.PENDING,),
    PurchaseTransaction.REFUNDED: (PurchaseTransaction.PAID,),
}


class TransitionResult:
    """Outcome of a transition attempt plus the (refreshed) transaction."""

    def __init__(self, outcome, transaction=None):
        self.outcome = outcome
        self.transaction = transaction

    @property
    def applied(self):
        return self.outcome == Outcome.PROCESSED

    def __repr__(self):
        return f"<TransitionResult {self.outcome}>"


def find_transaction(provider, lookup_keys):
    """Return the first transaction matching a lookup key, trying keys in order.

    Keys are scoped to the provider. An explicit transaction_id key is a
    primary-key lookup and must also belong to the provider when one is given.
    """
    for key in lookup_keys or ():
        if key.field == TRANSACTION_ID:
            tx = db.session.get(PurchaseTransaction, key.value)
            if tx is not None and (provider is None or tx.provider == provider):
                return tx
            continue

        if key.field not in PurchaseTransaction.LOOKUP_FIELDS:
            logger.warning(f"Ignoring unknown lookup field {key.field!r}")
            continue

        column = getattr(PurchaseTransaction, key.field)
        query = PurchaseTransaction.query.filter(column == key.value)
        if provider is not None:
            query = query.filter(PurchaseTransaction.provider == provider)
        tx = query.order_by(PurchaseTransaction.created_at).first()
        if tx is not None:
            return tx
    return None


def transition(transaction, target, **values):
    """Move a transaction to target if its current status allows it.

    Returns a TransitionResult: PROCESSED when this call made the change,
    ALREADY_IN_STATE when the transaction was already there,
    ILLEGAL_TRANSITION otherwise.
    """
    allowed = ALLOWED_PRIOR[target]
    result = execute(
        update(PurchaseTransaction)
        .where(
            PurchaseTransaction.id == transaction.id,
            PurchaseTransaction.status.in_(allowed),
        )
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(transaction)

    if result.rowcount == 1:
        logger.info(f"Transaction {transaction.id} -> {target}")
        return TransitionResult(Outcome.PROCESSED, transaction)

    if transaction.status == target:
        logger.info(f"Transaction {transaction.id} already {target}, skipping")
        return TransitionResult(Outcome.ALREADY_IN_STATE, transaction)

    logger.warning(
        f"Ignoring illegal transition {transaction.status} -> {target} "
        f"for transaction {transaction.id}"
    )
    return TransitionResult(Outcome.ILLEGAL_TRANSITION, transaction)


def _reconcile(provider, lookup_keys, target, **values):
    tx = find_transaction(provider, lookup_keys)
    if tx is None:
        logger.warning(
            f"No {provider} transaction matches lookup keys "
            f"{[tuple(k) for k in lookup_keys or ()]}"
        )
        return TransitionResult(Outcome.UNMATCHED)
    return transition(tx, target, **values)


def mark_paid(provider, lookup_keys, now=None):
    """pending/failed -> paid, assigning the invoice number on the transition."""
    now = now or datetime.now(timezone.utc)
    result = _reconcile(provider, lookup_keys, PurchaseTransaction.PAID, paid_at=now)

    if result.applied and result.transaction.invoice_number is None:
        tx = result.transaction
        execute(
            update(PurchaseTransaction)
            .where(
                PurchaseTransaction.id == tx.id,
                PurchaseTransaction.invoice_number.is_(None),
            )
            .values(invoice_number=next_invoice_number(now))
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(tx)
        logger.info(f"Invoice {tx.invoice_number} assigned to transaction {tx.id}")

    return result


def mark_failed(provider, lookup_keys, reason=None, now=None):
    """pending -> failed."""
    now = now or datetime.now(timezone.utc)
    return _reconcile(
        provider,
        lookup_keys,
        PurchaseTransaction.FAILED,
        failed_at=now,
        failure_reason=reason,
    )


def mark_refunded(provider, lookup_keys, now=None):
    """paid -> refunded."""
    now = now or datetime.now(timezone.utc)
    return _reconcile(
        provider, lookup_keys, PurchaseTransaction.REFUNDED, refunded_at=now
    )


def mark_transaction_paid(gateway, identifiers):
    """Mark the transaction matching identifiers as paid.

    Returns the transaction, or None if it was not found or already paid.
    """
    if not gateway:
        logger.warning("No payment gateway provided. Cannot mark transaction as paid.")
        return None
    result = mark_paid(gateway, identifiers)
    return result.transaction if result.applied else None
