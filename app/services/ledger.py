"""Idempotency ledger.

register_if_new() is a single INSERT ... ON CONFLICT DO NOTHING on the
(provider, event_id) unique key. Two racing callers get exactly one NEW:
the database blocks the second insert until the first transaction ends,
then reports zero rows. Callers run it inside the same atomic scope as the
event's effects.
"""

import enum
import logging

from sqlalchemy import select

from app.errors import StoreUnavailable
from app.models.webhook_event import WebhookEvent
from app.services.store import execute, insert_for_dialect

logger = logging.getLogger(__name__)


class LedgerResult(str, enum.Enum):
    NEW = "new"
    DUPLICATE = "duplicate"


def register_if_new(provider, event_id, event_type):
    """Record (provider, event_id) as seen.

    Returns LedgerResult.NEW on first sight, LedgerResult.DUPLICATE if the
    key is already recorded. Raises StoreUnavailable if the insert fails
    for any other reason.
    """
    if not provider or not event_id:
        raise ValueError("provider and event_id are required")

    stmt = (
        insert_for_dialect(WebhookEvent)
        .values(provider=provider, event_id=event_id, event_type=event_type or "unknown")
        .on_conflict_do_nothing(index_elements=["provider", "event_id"])
    )
    result = execute(stmt)

    if result.rowcount == 1:
        return LedgerResult.NEW
    if result.rowcount == 0:
        logger.info(f"Ledger: {provider} event {event_id} already recorded")
        return LedgerResult.DUPLICATE
    raise StoreUnavailable(
        f"Unexpected rowcount {result.rowcount} registering {provider}:{event_id}"
    )


def is_recorded(provider, event_id):
    """Read-only check, run before any provider lookups for the event."""
    row = execute(
        select(WebhookEvent.id).where(
            WebhookEvent.provider == provider,
            WebhookEvent.event_id == event_id,
        )
    ).first()
    return row is not None
