"""Subscription reconciler — artist subscription upserts and lifecycle.

Responsible for:
- Computing validity windows (provider period end > plan cycle > default)
- Upserting the single (user, artist) subscription row on payment
- Moving subscriptions to failed / cancelled from provider lifecycle events
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import case, func, update

from app.models.subscription import ArtistSubscription
from app.services.store import execute, insert_for_dialect

logger = logging.getLogger(__name__)

# Plan cycle -> days of access per payment.
CYCLE_DAYS = {
    "1m": 30,
    "3m": 90,
    "6m": 180,
}

DEFAULT_DAYS = 30


def compute_valid_until(period_end=None, cycle=None, now=None, default_days=DEFAULT_DAYS):
    """Return the end of the access window for one payment."""
    if period_end is not None:
        return period_end
    now = now or datetime.now(timezone.utc)
    days = CYCLE_DAYS.get(cycle) or default_days
    return now + timedelta(days=days)


def _artist_id(transaction):
    metadata = transaction.metadata_ or {}
    return transaction.artist_id or metadata.get("artistId") or transaction.item_id


def _external_subscription_id(transaction):
    metadata = transaction.metadata_ or {}
    return (
        metadata.get("externalSubscriptionId")
        or transaction.subscription_id
        or metadata.get("razorpaySubscriptionId")
        or metadata.get("paypalSubscriptionId")
        or transaction.payment_intent_id
        or transaction.order_id
        or transaction.payment_id
    )


def activate_or_renew(transaction, period_end=None, now=None):
    """Upsert the (user, artist) subscription as active.

    On insert the row starts active; on conflict the row is set active and
    its gateway, external id and linking transaction are refreshed.
    valid_until never moves backwards.

    Returns the ArtistSubscription.
    """
    metadata = transaction.metadata_ or {}
    default_days = current_app.config.get("SUBSCRIPTION_DEFAULT_DAYS", DEFAULT_DAYS)
    valid_until = compute_valid_until(
        period_end, metadata.get("cycle"), now, default_days
    )
    artist_id = _artist_id(transaction)

    stmt = insert_for_dialect(ArtistSubscription).values(
        user_id=transaction.user_id,
        artist_id=artist_id,
        status=ArtistSubscription.ACTIVE,
        valid_until=valid_until,
        gateway=transaction.provider,
        external_subscription_id=_external_subscription_id(transaction),
        transaction_id=transaction.id,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "artist_id"],
        set_={
            "status": ArtistSubscription.ACTIVE,
            "valid_until": case(
                (
                    ArtistSubscription.valid_until > stmt.excluded.valid_until,
                    ArtistSubscription.valid_until,
                ),
                else_=stmt.excluded.valid_until,
            ),
            "gateway": stmt.excluded.gateway,
            "external_subscription_id": stmt.excluded.external_subscription_id,
            "transaction_id": stmt.excluded.transaction_id,
            "updated_at": func.now(),
        },
    )
    execute(stmt)

    sub = (
        ArtistSubscription.query
        .filter_by(user_id=transaction.user_id, artist_id=artist_id)
        .populate_existing()
        .one()
    )
    logger.info(
        f"Subscription active for user {transaction.user_id} / artist {artist_id} "
        f"until {sub.valid_until}"
    )
    return sub


def deactivate(external_subscription_id, reason):
    """Mark subscriptions with this external id as failed or cancelled.

    reason is "failed" or "cancelled". A failed payment only demotes an
    active subscription; a cancellation wins over everything. Never creates
    a row.

    Returns the ArtistSubscription, or None if no local record exists.
    """
    if reason not in (ArtistSubscription.FAILED, ArtistSubscription.CANCELLED):
        raise ValueError(f"Invalid deactivation reason: {reason}")
    if not external_subscription_id:
        logger.warning(f"Cannot mark subscription {reason}: no external id")
        return None

    if reason == ArtistSubscription.FAILED:
        allowed = (ArtistSubscription.ACTIVE,)
    else:
        allowed = (ArtistSubscription.ACTIVE, ArtistSubscription.FAILED)

    result = execute(
        update(ArtistSubscription)
        .where(
            ArtistSubscription.external_subscription_id == external_subscription_id,
            ArtistSubscription.status.in_(allowed),
        )
        .values(status=reason, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )

    sub = (
        ArtistSubscription.query
        .filter_by(external_subscription_id=external_subscription_id)
        .populate_existing()
        .first()
    )
    if sub is None:
        logger.warning(f"No local subscription for external id {external_subscription_id}")
        return None

    if result.rowcount:
        logger.warning(f"Subscription {external_subscription_id} marked {reason}")
    else:
        logger.info(
            f"Subscription {external_subscription_id} left {sub.status} ({reason} not applied)"
        )
    return sub
