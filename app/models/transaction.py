"""Purchase transaction model.

One row per purchase or subscription-payment intent, created as "pending"
by the checkout flow. Correlation keys are written once, at creation, and
are what inbound provider events are matched against. Only the transaction
reconciler changes status, always through a conditional UPDATE.
"""

import uuid

from app.extensions import db


class PurchaseTransaction(db.Model):
    __tablename__ = "purchase_transactions"
    __table_args__ = (
        db.Index("ix_tx_provider_payment_intent", "provider", "payment_intent_id"),
        db.Index("ix_tx_provider_order", "provider", "order_id"),
        db.Index("ix_tx_provider_payment", "provider", "payment_id"),
        db.Index("ix_tx_provider_subscription", "provider", "subscription_id"),
    )

    # -- Statuses --
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    STATUSES = [PENDING, PAID, FAILED, REFUNDED]

    # -- Item kinds --
    SONG = "song"
    ALBUM = "album"
    ARTIST_SUBSCRIPTION = "artist-subscription"
    ITEM_KINDS = [SONG, ALBUM, ARTIST_SUBSCRIPTION]

    PROVIDERS = ["stripe", "razorpay", "paypal"]

    # Correlation-key columns an event lookup key may name.
    LOOKUP_FIELDS = ("payment_intent_id", "order_id", "payment_id", "subscription_id")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    item_kind = db.Column(db.String(32), nullable=False)  # song | album | artist-subscription
    item_id = db.Column(db.String(64), nullable=False)
    artist_id = db.Column(db.String(64), nullable=True)  # subscriptions only
    provider = db.Column(db.String(20), nullable=False)  # stripe | razorpay | paypal

    # --- Provider correlation keys (set once, at creation) ---
    payment_intent_id = db.Column(db.String(255), nullable=True)  # stripe pi_...
    order_id = db.Column(db.String(255), nullable=True)  # razorpay order_... / paypal order
    payment_id = db.Column(db.String(255), nullable=True)  # razorpay pay_...
    subscription_id = db.Column(db.String(255), nullable=True)  # sub_... / I-...

    amount_minor = db.Column(db.BigInteger, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default=PENDING
    )  # pending | paid | failed | refunded
    invoice_number = db.Column(db.String(64), unique=True, nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # provider extras (plan cycle, external ids), named metadata_ to avoid clash

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
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
        return f"<PurchaseTransaction {self.id} {self.item_kind} ({self.status})>"
