"""Tests for the entitlement updater."""

from app.extensions import db
from app.models.transaction import PurchaseTransaction
from app.models.user import OwnedItem, PurchaseHistoryEntry, User
from app.services.entitlement_service import update_user_after_purchase
from app.services.store import atomic


def _tx(tx_id):
    return db.session.get(PurchaseTransaction, tx_id)


class TestUpdateUserAfterPurchase:
    """Tests for update_user_after_purchase()."""

    def test_song_granted(self, seed_data):
        with atomic():
            assert update_user_after_purchase(_tx(seed_data["song_tx_id"]), "pi_song_42")

        user = db.session.get(User, seed_data["user_id"])
        assert user.purchased_songs == {"song_42"}
        entry = user.purchase_history.one()
        assert entry.item_kind == "song"
        assert entry.price_minor == 199
        assert entry.currency == "USD"
        assert entry.payment_ref == "pi_song_42"
        assert entry.provider == "stripe"

    def test_repeat_grant_keeps_membership_set_like(self, seed_data):
        """Ownership never duplicates; the history log records both calls."""
        tx_id = seed_data["song_tx_id"]
        with atomic():
            update_user_after_purchase(_tx(tx_id), "pi_song_42")
        with atomic():
            update_user_after_purchase(_tx(tx_id), "pi_song_42")

        assert OwnedItem.query.filter_by(
            user_id=seed_data["user_id"], item_id="song_42"
        ).count() == 1
        assert PurchaseHistoryEntry.query.filter_by(transaction_id=tx_id).count() == 2

    def test_album_granted(self, seed_data):
        with atomic():
            update_user_after_purchase(_tx(seed_data["album_tx_id"]), "pay_1")

        user = db.session.get(User, seed_data["user_id"])
        assert user.purchased_albums == {"album_7"}
        assert user.purchased_songs == set()

    def test_subscription_gets_history_only(self, seed_data):
        """Artist access lives in artist_subscriptions, not owned items."""
        with atomic():
            assert update_user_after_purchase(_tx(seed_data["sub_tx_id"]), "sub_artist_9")

        assert OwnedItem.query.count() == 0
        entry = PurchaseHistoryEntry.query.one()
        assert entry.item_kind == PurchaseTransaction.ARTIST_SUBSCRIPTION

    def test_unknown_item_kind_skipped(self, seed_data, make_tx):
        tx_id = make_tx(seed_data["user_id"], item_kind="merch", item_id="shirt_1")
        with atomic():
            assert update_user_after_purchase(_tx(tx_id), "pi_x") is True

        assert OwnedItem.query.count() == 0
        assert PurchaseHistoryEntry.query.count() == 0

    def test_missing_user(self, seed_data, make_tx):
        """Dangling user id -> False, nothing written."""
        tx_id = make_tx("00000000-0000-0000-0000-000000000000")
        with atomic():
            assert update_user_after_purchase(_tx(tx_id), "pi_x") is False

        assert PurchaseHistoryEntry.query.count() == 0
