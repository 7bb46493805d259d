"""Webhook event model (idempotency ledger).

Every provider notification is recorded by (provider, provider event ID).
The row is inserted in the same database transaction as the event's
effects, so a committed row means the effects landed too. Rows are never
updated.
"""

import uuid

from app.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_event"),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider = db.Column(db.String(20), nullable=False)  # stripe | razorpay | paypal
    event_id = db.Column(
        db.String(255), nullable=False
    )  # e.g. "evt_1Abc...", "WH-2W...", razorpay event header
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "payment_intent.succeeded"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<WebhookEvent {self.provider}:{self.event_id} ({self.event_type})>"
