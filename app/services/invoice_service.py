"""Invoice numbering.

Numbers come from the invoice_sequences counter, bumped with one UPDATE in
the caller's transaction. On PostgreSQL the row lock serializes concurrent
paid transitions; a rolled-back reconciliation gives its number back.
"""

from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select, update

from app.models.invoice import InvoiceSequence
from app.services.store import execute, insert_for_dialect

SEQUENCE_NAME = "invoice"


def next_invoice_number(now=None):
    """Allocate the next invoice number, e.g. "INV-2026-000042"."""
    execute(
        insert_for_dialect(InvoiceSequence)
        .values(name=SEQUENCE_NAME, value=0)
        .on_conflict_do_nothing(index_elements=["name"])
    )
    execute(
        update(InvoiceSequence)
        .where(InvoiceSequence.name == SEQUENCE_NAME)
        .values(value=InvoiceSequence.value + 1)
        .execution_options(synchronize_session=False)
    )
    value = execute(
        select(InvoiceSequence.value).where(InvoiceSequence.name == SEQUENCE_NAME)
    ).scalar_one()

    prefix = current_app.config.get("INVOICE_PREFIX", "INV")
    year = (now or datetime.now(timezone.utc)).year
    return f"{prefix}-{year}-{value:06d}"
