"""User and entitlement models.

- User: the account that owns purchases.
- OwnedItem: one row per (user, item kind, item id). The unique constraint
  makes purchased_songs / purchased_albums true sets under duplicate grants.
- PurchaseHistoryEntry: append-only purchase log. Rows are never updated.
"""

import uuid

from app.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(255))
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    owned_items = db.relationship(
        "OwnedItem", back_populates="user", lazy="dynamic"
    )
    purchase_history = db.relationship(
        "PurchaseHistoryEntry",
        back_populates="user",
        lazy="dynamic",
        order_by="PurchaseHistoryEntry.created_at",
    )

    @property
    def purchased_songs(self):
        return {
            item.item_id
            for item in self.owned_items.filter_by(item_kind=OwnedItem.SONG)
        }

    @property
    def purchased_albums(self):
        return {
            item.item_id
            for item in self.owned_items.filter_by(item_kind=OwnedItem.ALBUM)
        }

    def __repr__(self):
        return f"<User {self.email}>"


class OwnedItem(db.Model):
    __tablename__ = "user_owned_items"
    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "item_kind", "item_id", name="uq_owned_item"
        ),
    )

    SONG = "song"
    ALBUM = "album"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    item_kind = db.Column(db.String(20), nullable=False)  # song | album
    item_id = db.Column(db.String(64), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="owned_items")

    def __repr__(self):
        return f"<OwnedItem {self.item_kind}:{self.item_id}>"


class PurchaseHistoryEntry(db.Model):
    __tablename__ = "purchase_history"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    transaction_id = db.Column(
        db.String(36), db.ForeignKey("purchase_transactions.id"), nullable=False
    )
    item_kind = db.Column(db.String(32), nullable=False)
    item_id = db.Column(db.String(64), nullable=False)
    price_minor = db.Column(db.BigInteger, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    payment_ref = db.Column(db.String(255))  # provider-side payment reference
    provider = db.Column(db.String(20), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="purchase_history")

    def __repr__(self):
        return f"<PurchaseHistoryEntry {self.item_kind}:{self.item_id}>"
