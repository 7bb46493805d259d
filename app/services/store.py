"""Store helpers — the atomic scope and dialect-aware upserts.

Every reconciliation runs inside one atomic() block: the ledger row, the
status transition, the entitlement rows and the invoice number are
committed together or not at all. Statements go through execute() so
driver failures surface as StoreUnavailable instead of being mistaken for
"already processed".
"""

import logging
from contextlib import contextmanager

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from app.errors import AtomicCommitFailure, ReconciliationError, StoreUnavailable
from app.extensions import db

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_for_dialect(model):
    """Return an INSERT construct that supports ON CONFLICT for the bound engine."""
    dialect = db.engine.dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise StoreUnavailable(f"Unsupported database dialect for upserts: {dialect}")
    return insert(model)


def execute(statement):
    """Execute a Core statement on the current session.

    Raises StoreUnavailable on any database error.
    """
    try:
        return db.session.execute(statement)
    except SQLAlchemyError as e:
        logger.error(f"Store statement failed: {e}", exc_info=True)
        raise StoreUnavailable(str(e)) from e


@contextmanager
def atomic():
    """Run the block in one database transaction.

    Commits on normal exit (including an early return). Rolls back on any
    exception; database errors raised by the commit itself become
    AtomicCommitFailure.
    """
    try:
        yield db.session
        db.session.commit()
    except ReconciliationError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Atomic scope rolled back: {e}", exc_info=True)
        raise AtomicCommitFailure(str(e)) from e
    except Exception:
        db.session.rollback()
        raise
