"""End-to-end tests for the reconciliation orchestrator.

Covers:
- One-time purchases: paid, invoiced, entitled
- Subscriptions: activation window from the plan cycle, renewals, lifecycle
- Exactly-once: replays are acknowledged without repeating effects
- Warning-class outcomes are flagged as audit events
- Atomicity: a failed effect leaves neither the ledger row nor partial state
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from app.errors import Outcome, StoreUnavailable
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.subscription import ArtistSubscription
from app.models.transaction import PurchaseTransaction
from app.models.user import OwnedItem, PurchaseHistoryEntry, User
from app.models.webhook_event import WebhookEvent
from app.services.ledger import is_recorded
from app.services.reconciliation_service import (
    handle_payment_failed,
    handle_payment_success,
    process_notification,
)


def _stripe(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _song_succeeded(seed_data, event_id="evt_song_1"):
    return _stripe(event_id, "payment_intent.succeeded", {
        "id": "pi_song_42",
        "amount_received": 199,
        "currency": "usd",
        "metadata": {"transactionId": seed_data["song_tx_id"]},
    })


def _tx(tx_id):
    return db.session.get(PurchaseTransaction, tx_id)


class TestOneTimePurchase:
    """Song and album purchases."""

    def test_stripe_song_paid(self, seed_data, clients):
        result = process_notification("stripe", _song_succeeded(seed_data), clients)

        assert result.outcome == Outcome.PROCESSED
        tx = _tx(seed_data["song_tx_id"])
        assert tx.status == PurchaseTransaction.PAID
        assert tx.invoice_number.startswith("TST-")
        user = db.session.get(User, seed_data["user_id"])
        assert user.purchased_songs == {"song_42"}
        assert user.purchase_history.count() == 1
        assert is_recorded("stripe", "evt_song_1")

    def test_replay_is_duplicate(self, seed_data, clients):
        """Same event twice -> one set of effects."""
        first = process_notification("stripe", _song_succeeded(seed_data), clients)
        second = process_notification("stripe", _song_succeeded(seed_data), clients)

        assert first.outcome == Outcome.PROCESSED
        assert second.outcome == Outcome.DUPLICATE
        assert PurchaseHistoryEntry.query.count() == 1
        assert WebhookEvent.query.count() == 1

    def test_new_event_for_paid_transaction(self, seed_data, clients):
        """A different event id for the same payment is a no-op."""
        process_notification("stripe", _song_succeeded(seed_data, "evt_a"), clients)
        result = process_notification("stripe", _song_succeeded(seed_data, "evt_b"), clients)

        assert result.outcome == Outcome.ALREADY_IN_STATE
        assert PurchaseHistoryEntry.query.count() == 1

    def test_razorpay_album(self, seed_data):
        razorpay = MagicMock()
        razorpay.fetch_payment.return_value = {
            "id": "pay_album_7",
            "notes": {"itemType": "album", "itemId": "album_7",
                      "userId": seed_data["user_id"]},
        }
        clients = MagicMock()
        clients.get.return_value = razorpay
        payload = {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": "pay_album_7", "order_id": "order_album_7",
                "amount": 49900, "currency": "INR",
            }}},
        }

        result = process_notification("razorpay", payload, clients, event_id="rzp_evt_1")

        assert result.outcome == Outcome.PROCESSED
        user = db.session.get(User, seed_data["user_id"])
        assert user.purchased_albums == {"album_7"}
        entry = user.purchase_history.one()
        assert entry.payment_ref == "pay_album_7"
        assert entry.currency == "INR"

    def test_failed_after_paid_is_flagged(self, seed_data, clients):
        process_notification("stripe", _song_succeeded(seed_data), clients)
        result = process_notification("stripe", _stripe("evt_fail", "payment_intent.payment_failed", {
            "id": "pi_song_42",
            "last_payment_error": {"message": "late failure"},
        }), clients)

        assert result.outcome == Outcome.ILLEGAL_TRANSITION
        assert _tx(seed_data["song_tx_id"]).status == PurchaseTransaction.PAID
        flag = AuditEvent.query.filter_by(action="transition.illegal").one()
        assert flag.transaction_id == seed_data["song_tx_id"]
        assert flag.metadata_["target"] == "failed"

    def test_refund_keeps_entitlement(self, seed_data, clients):
        process_notification("stripe", _song_succeeded(seed_data), clients)
        result = process_notification("stripe", _stripe("evt_refund", "charge.refunded", {
            "id": "ch_1", "payment_intent": "pi_song_42", "amount_refunded": 199,
        }), clients)

        assert result.outcome == Outcome.PROCESSED
        assert _tx(seed_data["song_tx_id"]).status == PurchaseTransaction.REFUNDED
        assert OwnedItem.query.filter_by(item_id="song_42").count() == 1


class TestSubscriptions:
    """Artist subscription activation, renewal and lifecycle."""

    def test_activation_uses_plan_cycle(self, seed_data, utc):
        """3m plan, no provider period -> valid for ~90 days."""
        before = datetime.now(timezone.utc)
        result = handle_payment_success({
            "event_id": "int_sub_1",
            "provider": "stripe",
            "transaction_id": seed_data["sub_tx_id"],
        })

        assert result.outcome == Outcome.PROCESSED
        sub = result.subscription
        assert sub.status == ArtistSubscription.ACTIVE
        expected = before + timedelta(days=90)
        assert abs(utc(sub.valid_until) - expected) < timedelta(minutes=1)
        assert OwnedItem.query.count() == 0
        assert PurchaseHistoryEntry.query.count() == 1

    def test_renewal_extends_window(self, seed_data, clients, utc):
        """Renewal invoice for an already-paid subscription refreshes access only."""
        handle_payment_success({
            "event_id": "int_sub_1",
            "provider": "stripe",
            "transaction_id": seed_data["sub_tx_id"],
        })
        period_end = int((datetime.now(timezone.utc) + timedelta(days=200)).timestamp())

        result = process_notification("stripe", _stripe("evt_renew", "invoice.payment_succeeded", {
            "subscription": "sub_artist_9",
            "billing_reason": "subscription_cycle",
            "lines": {"data": [{"period": {"end": period_end}}]},
        }), clients)

        assert result.outcome == Outcome.PROCESSED
        assert utc(result.subscription.valid_until) == datetime.fromtimestamp(
            period_end, tz=timezone.utc
        )
        assert ArtistSubscription.query.count() == 1
        assert PurchaseHistoryEntry.query.count() == 1

    def test_invoice_failure_marks_subscription_failed(self, seed_data, clients):
        handle_payment_success({
            "event_id": "int_sub_1",
            "provider": "stripe",
            "transaction_id": seed_data["sub_tx_id"],
        })

        result = process_notification("stripe", _stripe("evt_inv_fail", "invoice.payment_failed", {
            "subscription": "sub_artist_9",
        }), clients)

        assert result.outcome == Outcome.PROCESSED
        assert result.subscription.status == ArtistSubscription.FAILED
        assert _tx(seed_data["sub_tx_id"]).status == PurchaseTransaction.PAID
        assert AuditEvent.query.count() == 0

    def test_paypal_renewal_failure_not_flagged(self, seed_data, make_tx, clients):
        """A failed renewal is routine; only the subscription changes."""
        tx_id = make_tx(
            seed_data["user_id"],
            item_kind=PurchaseTransaction.ARTIST_SUBSCRIPTION,
            item_id="artist_4",
            provider="paypal",
            subscription_id="I-ARTIST4",
        )
        handle_payment_success({"event_id": "int_pp_1", "provider": "paypal", "transaction_id": tx_id})

        result = process_notification("paypal", {
            "id": "WH-RENEW-FAIL",
            "event_type": "BILLING.SUBSCRIPTION.PAYMENT.FAILED",
            "resource": {"id": "I-ARTIST4"},
        }, clients)

        assert result.outcome == Outcome.PROCESSED
        assert result.subscription.status == ArtistSubscription.FAILED
        assert _tx(tx_id).status == PurchaseTransaction.PAID
        assert AuditEvent.query.count() == 0

    def test_first_payment_failure_fails_transaction(self, seed_data, clients):
        """No subscription row yet: the pending transaction takes the failure."""
        result = process_notification("stripe", _stripe("evt_first_fail", "invoice.payment_failed", {
            "subscription": "sub_artist_9",
        }), clients)

        assert result.outcome == Outcome.PROCESSED
        assert _tx(seed_data["sub_tx_id"]).status == PurchaseTransaction.FAILED

    def test_cancellation(self, seed_data, clients):
        handle_payment_success({
            "event_id": "int_sub_1",
            "provider": "stripe",
            "transaction_id": seed_data["sub_tx_id"],
        })

        result = process_notification("stripe", _stripe(
            "evt_cancel", "customer.subscription.deleted", {"id": "sub_artist_9"},
        ), clients)

        assert result.outcome == Outcome.PROCESSED
        assert result.subscription.status == ArtistSubscription.CANCELLED

    def test_cancellation_for_unknown_subscription(self, seed_data, clients):
        """Acknowledged and flagged; no row is created."""
        result = process_notification("stripe", _stripe(
            "evt_cancel_x", "customer.subscription.deleted", {"id": "sub_unknown"},
        ), clients)

        assert result.outcome == Outcome.SUBSCRIPTION_NOT_FOUND
        assert ArtistSubscription.query.count() == 0
        assert AuditEvent.query.filter_by(action="subscription.unmatched").count() == 1


class TestFlagsAndEdges:
    """Warning-class outcomes."""

    def test_missing_metadata_flagged(self, seed_data, clients):
        result = process_notification("stripe", _stripe("evt_nometa", "payment_intent.succeeded", {
            "id": "pi_song_42", "metadata": {},
        }), clients)

        assert result.outcome == Outcome.MISSING_METADATA
        assert _tx(seed_data["song_tx_id"]).status == PurchaseTransaction.PENDING
        assert AuditEvent.query.filter_by(action="payment.missing_metadata").count() == 1

    def test_unmatched_flagged(self, seed_data, clients):
        result = process_notification("stripe", _stripe("evt_orphan", "payment_intent.succeeded", {
            "id": "pi_unknown", "metadata": {"transactionId": "not-a-transaction"},
        }), clients)

        assert result.outcome == Outcome.UNMATCHED
        flag = AuditEvent.query.filter_by(action="payment.unmatched").one()
        assert flag.event_id == "evt_orphan"
        assert ["payment_intent_id", "pi_unknown"] in flag.metadata_["lookup_keys"]

    def test_user_not_found_flagged(self, seed_data, make_tx, clients):
        make_tx("00000000-0000-0000-0000-000000000000", payment_intent_id="pi_ghost")
        result = process_notification("stripe", _stripe("evt_ghost", "payment_intent.succeeded", {
            "id": "pi_ghost", "metadata": {"transactionId": "x"},
        }), clients)

        assert result.outcome == Outcome.USER_NOT_FOUND
        assert AuditEvent.query.filter_by(action="entitlement.user_not_found").count() == 1

    def test_success_without_keys_touches_nothing(self, seed_data):
        result = handle_payment_success({"provider": "stripe", "event_id": "int_nokeys"})

        assert result.outcome == Outcome.UNMATCHED
        assert WebhookEvent.query.count() == 0
        assert AuditEvent.query.count() == 0

    def test_failed_without_keys_touches_nothing(self, seed_data):
        result = handle_payment_failed({"provider": "stripe"})
        assert result.outcome == Outcome.UNMATCHED

    @pytest.mark.parametrize("event_id", ["int_noprovider", None])
    def test_success_without_provider(self, seed_data, event_id):
        """Same answer with or without an event id; nothing recorded."""
        result = handle_payment_success({
            "event_id": event_id,
            "transaction_id": seed_data["song_tx_id"],
        })

        assert result.outcome == Outcome.MISSING_METADATA
        assert _tx(seed_data["song_tx_id"]).status == PurchaseTransaction.PENDING
        assert WebhookEvent.query.count() == 0

    def test_failed_without_provider(self, seed_data):
        result = handle_payment_failed({
            "event_id": "int_noprovider",
            "transaction_id": seed_data["song_tx_id"],
        })

        assert result.outcome == Outcome.MISSING_METADATA
        assert _tx(seed_data["song_tx_id"]).status == PurchaseTransaction.PENDING

    def test_internal_failure(self, seed_data):
        result = handle_payment_failed({
            "provider": "stripe",
            "transaction_id": seed_data["song_tx_id"],
            "reason": "card_declined",
        })

        assert result.outcome == Outcome.PROCESSED
        tx = _tx(seed_data["song_tx_id"])
        assert tx.status == PurchaseTransaction.FAILED
        assert tx.failure_reason == "card_declined"

    def test_ignored_event_is_recorded(self, seed_data, clients):
        payload = _stripe("evt_ignored", "customer.created", {"id": "cus_1"})

        first = process_notification("stripe", payload, clients)
        second = process_notification("stripe", payload, clients)

        assert first.outcome == Outcome.IGNORED
        assert second.outcome == Outcome.DUPLICATE
        assert is_recorded("stripe", "evt_ignored")


class TestAtomicity:
    """Ledger and effects commit together."""

    def test_failed_effect_rolls_back_everything(self, seed_data, clients):
        target = "app.services.reconciliation_service.update_user_after_purchase"
        with patch(target, side_effect=StoreUnavailable("db went away")):
            with pytest.raises(StoreUnavailable):
                process_notification("stripe", _song_succeeded(seed_data), clients)

        tx = _tx(seed_data["song_tx_id"])
        assert tx.status == PurchaseTransaction.PENDING
        assert tx.invoice_number is None
        assert not is_recorded("stripe", "evt_song_1")

        # Redelivery after the outage is processed normally.
        result = process_notification("stripe", _song_succeeded(seed_data), clients)
        assert result.outcome == Outcome.PROCESSED
        assert _tx(seed_data["song_tx_id"]).invoice_number.endswith("-000001")


class TestRedelivery:
    """Recorded events short-circuit before any provider lookup."""

    def _captured(self):
        return {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": "pay_album_7", "order_id": "order_album_7",
                "amount": 49900, "currency": "INR",
            }}},
        }

    def test_duplicate_skips_provider_lookups(self, seed_data):
        razorpay = MagicMock()
        razorpay.fetch_payment.return_value = {
            "id": "pay_album_7",
            "notes": {"itemType": "album", "itemId": "album_7",
                      "userId": seed_data["user_id"]},
        }
        clients = MagicMock()
        clients.get.return_value = razorpay

        first = process_notification("razorpay", self._captured(), clients, event_id="rzp_evt_dup")
        razorpay.fetch_payment.reset_mock()
        razorpay.fetch_payment.side_effect = AssertionError("lookup on a duplicate")
        second = process_notification("razorpay", self._captured(), clients, event_id="rzp_evt_dup")

        assert first.outcome == Outcome.PROCESSED
        assert second.outcome == Outcome.DUPLICATE
        razorpay.fetch_payment.assert_not_called()
        assert PurchaseHistoryEntry.query.count() == 1
