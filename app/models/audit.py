"""Audit event model.

Records reconciliation conditions that need an operator's eye (unmatched
events, missing metadata, stale transitions) alongside the event that
caused them. Written in the same transaction as the ledger row.
"""

import uuid

from app.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider = db.Column(db.String(20), nullable=True)
    event_id = db.Column(db.String(255), nullable=True)
    transaction_id = db.Column(db.String(36), nullable=True)
    action = db.Column(db.String(255), nullable=False)  # e.g. "payment.unmatched"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
