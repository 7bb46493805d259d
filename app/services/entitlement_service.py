"""Entitlement updater.

Grants a paid purchase to its user: one purchase-history row plus, for
songs and albums, an ownership row inserted with ON CONFLICT DO NOTHING so
repeat grants never duplicate membership. Artist subscriptions get the
history row only; their access lives in artist_subscriptions.

Functions flush but do NOT commit — the caller's atomic scope commits.
"""

import logging

from sqlalchemy import select

from app.extensions import db
from app.models.transaction import PurchaseTransaction
from app.models.user import OwnedItem, PurchaseHistoryEntry, User
from app.services.store import execute, insert_for_dialect

logger = logging.getLogger(__name__)

OWNED_KINDS = {
    PurchaseTransaction.SONG: OwnedItem.SONG,
    PurchaseTransaction.ALBUM: OwnedItem.ALBUM,
}


def update_user_after_purchase(transaction, payment_ref):
    """Grant the purchased item and append a history entry.

    Safe to re-invoke for the same transaction: ownership is set-like, and
    a repeated history row is tolerated as an audit artifact.

    Returns False if the user does not exist, True otherwise (including
    unknown item kinds, which are logged and skipped).
    """
    user_id = execute(
        select(User.id).where(User.id == transaction.user_id)
    ).scalar_one_or_none()
    if user_id is None:
        logger.warning(
            f"User {transaction.user_id} not found for transaction {transaction.id}"
        )
        return False

    kind = transaction.item_kind
    if kind in OWNED_KINDS:
        execute(
            insert_for_dialect(OwnedItem)
            .values(user_id=user_id, item_kind=OWNED_KINDS[kind], item_id=transaction.item_id)
            .on_conflict_do_nothing(index_elements=["user_id", "item_kind", "item_id"])
        )
    elif kind != PurchaseTransaction.ARTIST_SUBSCRIPTION:
        logger.warning(
            f"Unknown item kind {kind!r} on transaction {transaction.id}, no entitlement granted"
        )
        return True

    db.session.add(PurchaseHistoryEntry(
        user_id=user_id,
        transaction_id=transaction.id,
        item_kind=kind,
        item_id=transaction.item_id,
        price_minor=transaction.amount_minor,
        currency=transaction.currency,
        payment_ref=payment_ref,
        provider=transaction.provider,
    ))
    db.session.flush()

    logger.info(f"Granted {kind} {transaction.item_id} to user {user_id}")
    return True
