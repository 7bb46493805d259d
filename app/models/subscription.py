"""Artist subscription model.

Exactly one row per (user, artist). Activation and renewal events upsert
into the same row; lifecycle events move it to failed / cancelled by
external subscription id. artist_subscriptions.status is the source of
truth for recurring access.
"""

import uuid

from app.extensions import db


class ArtistSubscription(db.Model):
    __tablename__ = "artist_subscriptions"
    __table_args__ = (
        db.UniqueConstraint("user_id", "artist_id", name="uq_user_artist"),
    )

    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STATUSES = [ACTIVE, FAILED, CANCELLED]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    artist_id = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # active | failed | cancelled
    valid_until = db.Column(db.DateTime(timezone=True), nullable=False)
    gateway = db.Column(db.String(20), nullable=False)
    external_subscription_id = db.Column(
        db.String(255), nullable=True, index=True
    )
    transaction_id = db.Column(
        db.String(36), db.ForeignKey("purchase_transactions.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User")

    def __repr__(self):
        return f"<ArtistSubscription {self.artist_id} ({self.status})>"
