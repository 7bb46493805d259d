"""Event normalizer — provider payloads to PaymentEvent.

Responsible for:
- Extracting (event_id, event_type) for the idempotency ledger
- Mapping each provider's event types onto one closed set of kinds
- Building the ordered lookup keys used to find the matching transaction
- Extracting amount, currency and billing-period end
- Flagging payloads with missing or unparsable item metadata

Downstream code never branches on provider name again: everything
provider-specific lives here. Event types the engine does not act on
normalize to None.
"""

import enum
import json
import logging
from collections import namedtuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    REFUND_ISSUED = "refund_issued"


SUCCESS_KINDS = (
    EventKind.PAYMENT_SUCCEEDED,
    EventKind.SUBSCRIPTION_ACTIVATED,
    EventKind.SUBSCRIPTION_RENEWED,
)
SUBSCRIPTION_KINDS = (
    EventKind.SUBSCRIPTION_ACTIVATED,
    EventKind.SUBSCRIPTION_RENEWED,
)

# field is a PurchaseTransaction correlation column, or "transaction_id"
# for an explicit internal reference carried in provider metadata.
LookupKey = namedtuple("LookupKey", ["field", "value"])

TRANSACTION_ID = "transaction_id"


@dataclass(frozen=True)
class PaymentEvent:
    event_id: Optional[str]
    provider: str
    kind: EventKind
    event_type: str
    lookup_keys: tuple = ()
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    period_end: Optional[datetime] = None
    payment_ref: Optional[str] = None
    external_subscription_id: Optional[str] = None
    failure_reason: Optional[str] = None
    missing_metadata: bool = False
    metadata: dict = field(default_factory=dict)


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _keys(*pairs):
    """Build an ordered lookup-key tuple, skipping empty values."""
    return tuple(LookupKey(f, str(v)) for f, v in pairs if v)


def _from_epoch(ts):
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Ignoring unparsable epoch timestamp: {ts!r}")
        return None


def _from_iso(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparsable ISO timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _currency(value):
    return value.upper() if value else None


def _decimal_to_minor(value):
    """PayPal sends amounts as decimal strings ("9.99")."""
    if value in (None, ""):
        return None
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        logger.warning(f"Ignoring unparsable amount: {value!r}")
        return None


def _as_dict(value):
    # Razorpay returns [] for empty notes.
    return dict(value) if isinstance(value, dict) else {}


def _item_notes(notes):
    """Flatten purchase notes into {itemType, itemId, userId, transactionId}.

    Checkout flows store item details either as top-level keys or as a JSON
    string under "metadata"; both are accepted. Returns None if the JSON is
    malformed.
    """
    notes = _as_dict(notes)
    embedded = notes.get("metadata")
    if isinstance(embedded, str):
        try:
            embedded = json.loads(embedded)
        except ValueError:
            return None
    if isinstance(embedded, dict):
        notes = {**embedded, **notes}

    return {
        "itemType": notes.get("itemType") or notes.get("type"),
        "itemId": notes.get("itemId"),
        "userId": notes.get("userId"),
        "transactionId": notes.get("transactionId"),
    }


def _is_incomplete(notes):
    return notes is None or not all(
        notes.get(k) for k in ("itemType", "itemId", "userId")
    )


# ──────────────────────────────────────────────
# Event identity
# ──────────────────────────────────────────────

def event_identity(provider, payload, fallback_event_id=None):
    """Return (event_id, event_type) for the ledger.

    Razorpay bodies carry no event id; the webhook route passes the
    X-Razorpay-Event-Id header (or a body digest) as fallback_event_id.
    """
    payload = payload or {}
    if provider == "stripe":
        return payload.get("id") or fallback_event_id, payload.get("type")
    if provider == "razorpay":
        return fallback_event_id or payload.get("id"), payload.get("event")
    if provider == "paypal":
        return payload.get("id") or fallback_event_id, payload.get("event_type")
    raise ValueError(f"Unknown payment provider: {provider}")


# ──────────────────────────────────────────────
# Stripe
# ──────────────────────────────────────────────

def _stripe_invoice_subscription_id(invoice):
    """Subscription id of a Stripe invoice.

    Newer API versions moved it from invoice.subscription to
    invoice.parent.subscription_details.subscription; check both.
    """
    sub_id = invoice.get("subscription")
    if not sub_id:
        parent = invoice.get("parent") or {}
        sub_id = (parent.get("subscription_details") or {}).get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    return sub_id


def stripe_period_end(subscription):
    """Current period end of a Stripe subscription dict, or None.

    Newer API versions moved current_period_end from the subscription to
    items.data[0]; check both.
    """
    subscription = subscription or {}
    ts = subscription.get("current_period_end")
    if not ts:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            ts = items[0].get("current_period_end")
    return _from_epoch(ts)


def _stripe_invoice_period_end(invoice):
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        return _from_epoch((lines[0].get("period") or {}).get("end"))
    return None


def _normalize_stripe(payload, client, event_id):
    event_type = payload.get("type")
    obj = (payload.get("data") or {}).get("object") or {}
    base = {"event_id": event_id, "provider": "stripe", "event_type": event_type}

    if event_type == "payment_intent.succeeded":
        if obj.get("invoice"):
            logger.info(f"Skipping payment_intent {obj.get('id')} for subscription invoice")
            return None
        metadata = _as_dict(obj.get("metadata"))
        transaction_id = metadata.get("transactionId")
        return PaymentEvent(
            kind=EventKind.PAYMENT_SUCCEEDED,
            lookup_keys=_keys(
                ("payment_intent_id", obj.get("id")),
                (TRANSACTION_ID, transaction_id),
            ),
            amount_minor=obj.get("amount_received") or obj.get("amount"),
            currency=_currency(obj.get("currency")),
            payment_ref=obj.get("id"),
            missing_metadata=not transaction_id,
            metadata=metadata,
            **base,
        )

    if event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        return PaymentEvent(
            kind=EventKind.PAYMENT_FAILED,
            lookup_keys=_keys(("payment_intent_id", obj.get("id"))),
            amount_minor=obj.get("amount"),
            currency=_currency(obj.get("currency")),
            payment_ref=obj.get("id"),
            failure_reason=error.get("message") or error.get("code"),
            metadata=_as_dict(obj.get("metadata")),
            **base,
        )

    if event_type == "invoice.payment_succeeded":
        sub_id = _stripe_invoice_subscription_id(obj)
        period_end = _stripe_invoice_period_end(obj)
        if sub_id and period_end is None and client is not None:
            period_end = client.subscription_period_end(sub_id)
        if obj.get("billing_reason") == "subscription_create":
            kind = EventKind.SUBSCRIPTION_ACTIVATED
        else:
            kind = EventKind.SUBSCRIPTION_RENEWED
        return PaymentEvent(
            kind=kind,
            lookup_keys=_keys(("subscription_id", sub_id)),
            amount_minor=obj.get("amount_paid"),
            currency=_currency(obj.get("currency")),
            period_end=period_end,
            payment_ref=sub_id,
            external_subscription_id=sub_id,
            missing_metadata=not sub_id,
            metadata=_as_dict(obj.get("metadata")),
            **base,
        )

    if event_type == "invoice.payment_failed":
        sub_id = _stripe_invoice_subscription_id(obj)
        return PaymentEvent(
            kind=EventKind.PAYMENT_FAILED,
            lookup_keys=_keys(("subscription_id", sub_id)),
            amount_minor=obj.get("amount_due"),
            currency=_currency(obj.get("currency")),
            payment_ref=sub_id,
            external_subscription_id=sub_id,
            failure_reason="invoice payment failed",
            **base,
        )

    if event_type == "customer.subscription.deleted":
        return PaymentEvent(
            kind=EventKind.SUBSCRIPTION_CANCELLED,
            external_subscription_id=obj.get("id"),
            missing_metadata=not obj.get("id"),
            **base,
        )

    if event_type == "charge.refunded":
        return PaymentEvent(
            kind=EventKind.REFUND_ISSUED,
            lookup_keys=_keys(("payment_intent_id", obj.get("payment_intent"))),
            amount_minor=obj.get("amount_refunded"),
            currency=_currency(obj.get("currency")),
            payment_ref=obj.get("id"),
            **base,
        )

    return None


# ──────────────────────────────────────────────
# Razorpay
# ──────────────────────────────────────────────

RAZORPAY_CANCEL_EVENTS = (
    "subscription.halted",
    "subscription.completed",
    "subscription.cancelled",
)


def _normalize_razorpay(payload, client, event_id):
    event_type = payload.get("event")
    body = payload.get("payload") or {}
    base = {"event_id": event_id, "provider": "razorpay", "event_type": event_type}

    if event_type == "payment.captured":
        entity = (body.get("payment") or {}).get("entity") or {}
        payment_id = entity.get("id")
        order_id = entity.get("order_id")

        # The webhook entity omits the invoice link; the full payment has it.
        payment = {}
        subscription_id = None
        if payment_id:
            if client is None:
                raise ValueError("Razorpay client required to normalize payment.captured")
            payment = client.fetch_payment(payment_id) or {}
            if payment.get("invoice_id"):
                invoice = client.fetch_invoice(payment["invoice_id"]) or {}
                subscription_id = invoice.get("subscription_id")

        amount_minor = entity.get("amount") or payment.get("amount")
        currency = _currency(entity.get("currency") or payment.get("currency"))

        if subscription_id:
            sub_entity = (body.get("subscription") or {}).get("entity") or {}
            return PaymentEvent(
                kind=EventKind.SUBSCRIPTION_ACTIVATED,
                lookup_keys=_keys(
                    ("subscription_id", subscription_id),
                    ("order_id", order_id),
                    ("payment_id", payment_id),
                ),
                amount_minor=amount_minor,
                currency=currency,
                period_end=_from_epoch(sub_entity.get("current_end")),
                payment_ref=subscription_id,
                external_subscription_id=subscription_id,
                **base,
            )

        notes = _item_notes(payment.get("notes") or entity.get("notes"))
        return PaymentEvent(
            kind=EventKind.PAYMENT_SUCCEEDED,
            lookup_keys=_keys(
                ("order_id", order_id),
                ("payment_id", payment_id),
                (TRANSACTION_ID, (notes or {}).get("transactionId")),
            ),
            amount_minor=amount_minor,
            currency=currency,
            payment_ref=payment_id,
            missing_metadata=_is_incomplete(notes),
            metadata=notes or {},
            **base,
        )

    if event_type == "payment.failed":
        entity = (body.get("payment") or {}).get("entity") or {}
        return PaymentEvent(
            kind=EventKind.PAYMENT_FAILED,
            lookup_keys=_keys(
                ("order_id", entity.get("order_id")),
                ("payment_id", entity.get("id")),
            ),
            amount_minor=entity.get("amount"),
            currency=_currency(entity.get("currency")),
            payment_ref=entity.get("id"),
            failure_reason=entity.get("error_description") or entity.get("error_code"),
            **base,
        )

    if event_type in RAZORPAY_CANCEL_EVENTS:
        sub_id = ((body.get("subscription") or {}).get("entity") or {}).get("id")
        return PaymentEvent(
            kind=EventKind.SUBSCRIPTION_CANCELLED,
            external_subscription_id=sub_id,
            missing_metadata=not sub_id,
            **base,
        )

    if event_type == "refund.processed":
        refund = (body.get("refund") or {}).get("entity") or {}
        return PaymentEvent(
            kind=EventKind.REFUND_ISSUED,
            lookup_keys=_keys(("payment_id", refund.get("payment_id"))),
            amount_minor=refund.get("amount"),
            currency=_currency(refund.get("currency")),
            payment_ref=refund.get("id"),
            **base,
        )

    if event_type == "subscription.charged":
        # Renewal effects arrive through payment.captured for the same charge.
        sub_id = ((body.get("subscription") or {}).get("entity") or {}).get("id")
        logger.info(f"Razorpay subscription charged: {sub_id}")

    return None


# ──────────────────────────────────────────────
# PayPal
# ──────────────────────────────────────────────

PAYPAL_PAYMENT_EVENTS = ("PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.APPROVED")
PAYPAL_CANCEL_EVENTS = ("BILLING.SUBSCRIPTION.CANCELLED", "BILLING.SUBSCRIPTION.EXPIRED")


def _paypal_order_id(resource, event_type):
    """Order id for a capture/refund resource, or the resource id for an order."""
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    if related.get("order_id"):
        return related["order_id"]
    if event_type == "CHECKOUT.ORDER.APPROVED" or event_type.startswith("PAYMENT.CAPTURE."):
        return resource.get("id")
    return None


def _paypal_custom_notes(resource):
    """Parse the JSON item metadata a checkout embeds in custom_id."""
    custom_id = resource.get("custom_id")
    if not custom_id:
        units = resource.get("purchase_units") or []
        if units:
            custom_id = units[0].get("custom_id")
    if not custom_id:
        return None
    try:
        return _item_notes(json.loads(custom_id))
    except (TypeError, ValueError):
        logger.warning(f"Unparsable PayPal custom_id: {custom_id!r}")
        return None


def _paypal_amount(resource):
    amount = resource.get("amount")
    if not amount:
        units = resource.get("purchase_units") or []
        amount = units[0].get("amount") if units else None
    amount = amount or {}
    return _decimal_to_minor(amount.get("value")), _currency(amount.get("currency_code"))


def _normalize_paypal(payload, client, event_id):
    event_type = payload.get("event_type") or ""
    resource = payload.get("resource") or {}
    base = {"event_id": event_id, "provider": "paypal", "event_type": event_type}

    if event_type in ("BILLING.SUBSCRIPTION.ACTIVATED", "BILLING.SUBSCRIPTION.RENEWED"):
        sub_id = resource.get("id")
        billing_info = resource.get("billing_info") or {}
        if event_type == "BILLING.SUBSCRIPTION.ACTIVATED":
            kind = EventKind.SUBSCRIPTION_ACTIVATED
        else:
            kind = EventKind.SUBSCRIPTION_RENEWED
        last_payment = (billing_info.get("last_payment") or {}).get("amount") or {}
        return PaymentEvent(
            kind=kind,
            lookup_keys=_keys(("subscription_id", sub_id)),
            amount_minor=_decimal_to_minor(last_payment.get("value")),
            currency=_currency(last_payment.get("currency_code")),
            period_end=_from_iso(billing_info.get("next_billing_time")),
            payment_ref=sub_id,
            external_subscription_id=sub_id,
            missing_metadata=not sub_id,
            **base,
        )

    if event_type in PAYPAL_PAYMENT_EVENTS:
        notes = _paypal_custom_notes(resource)
        amount_minor, currency = _paypal_amount(resource)
        return PaymentEvent(
            kind=EventKind.PAYMENT_SUCCEEDED,
            lookup_keys=_keys(
                ("order_id", _paypal_order_id(resource, event_type)),
                (TRANSACTION_ID, (notes or {}).get("transactionId")),
            ),
            amount_minor=amount_minor,
            currency=currency,
            payment_ref=resource.get("id"),
            missing_metadata=_is_incomplete(notes),
            metadata=notes or {},
            **base,
        )

    if event_type == "PAYMENT.CAPTURE.DENIED":
        amount_minor, currency = _paypal_amount(resource)
        return PaymentEvent(
            kind=EventKind.PAYMENT_FAILED,
            lookup_keys=_keys(("order_id", _paypal_order_id(resource, event_type))),
            amount_minor=amount_minor,
            currency=currency,
            payment_ref=resource.get("id"),
            failure_reason=(resource.get("status_details") or {}).get("reason") or "capture denied",
            **base,
        )

    if event_type == "PAYMENT.CAPTURE.REFUNDED":
        amount_minor, currency = _paypal_amount(resource)
        notes = _paypal_custom_notes(resource)
        return PaymentEvent(
            kind=EventKind.REFUND_ISSUED,
            lookup_keys=_keys(
                ("order_id", _paypal_order_id(resource, event_type)),
                (TRANSACTION_ID, (notes or {}).get("transactionId")),
            ),
            amount_minor=amount_minor,
            currency=currency,
            payment_ref=resource.get("id"),
            **base,
        )

    if event_type == "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
        sub_id = resource.get("id")
        return PaymentEvent(
            kind=EventKind.PAYMENT_FAILED,
            lookup_keys=_keys(("subscription_id", sub_id)),
            payment_ref=sub_id,
            external_subscription_id=sub_id,
            failure_reason="subscription payment failed",
            **base,
        )

    if event_type in PAYPAL_CANCEL_EVENTS:
        sub_id = resource.get("id")
        return PaymentEvent(
            kind=EventKind.SUBSCRIPTION_CANCELLED,
            external_subscription_id=sub_id,
            missing_metadata=not sub_id,
            **base,
        )

    return None


_NORMALIZERS = {
    "stripe": _normalize_stripe,
    "razorpay": _normalize_razorpay,
    "paypal": _normalize_paypal,
}


def normalize(provider, payload, client=None, event_id=None):
    """Map a verified provider payload to a PaymentEvent.

    client is the provider's API client, used for supplementary lookups
    (Razorpay invoice -> subscription, Stripe subscription period).
    Returns None for event types that carry no reconciliation work.
    """
    normalizer = _NORMALIZERS.get(provider)
    if normalizer is None:
        raise ValueError(f"Unknown payment provider: {provider}")
    if event_id is None:
        event_id, _ = event_identity(provider, payload)
    return normalizer(payload or {}, client, event_id)


# ──────────────────────────────────────────────
# Internal payloads
# ──────────────────────────────────────────────

def _raw_period_end(provider, raw):
    """Best-effort billing-period end from a raw provider object."""
    raw = raw or {}
    if provider == "stripe":
        return stripe_period_end(raw)
    if provider == "razorpay":
        entity = ((raw.get("payload") or {}).get("subscription") or {}).get("entity") or {}
        return _from_epoch(entity.get("current_end"))
    if provider == "paypal":
        return _from_iso((raw.get("billing_info") or {}).get("next_billing_time"))
    return None


def event_from_payload(kind, payload):
    """Build a PaymentEvent from an internal handler payload.

    Payload keys: event_id (optional), provider, transaction_id and/or
    lookup_keys (iterable of (field, value) pairs), metadata, reason, raw.
    The explicit transaction_id is tried first.
    """
    payload = payload or {}
    provider = payload.get("provider")
    pairs = [(TRANSACTION_ID, payload.get("transaction_id"))]
    pairs.extend(tuple(pair) for pair in payload.get("lookup_keys") or ())
    metadata = _as_dict(payload.get("metadata"))

    return PaymentEvent(
        event_id=payload.get("event_id"),
        provider=provider,
        kind=EventKind(kind),
        event_type=EventKind(kind).value,
        lookup_keys=_keys(*pairs),
        period_end=_raw_period_end(provider, payload.get("raw")),
        payment_ref=payload.get("payment_ref") or payload.get("transaction_id"),
        external_subscription_id=metadata.get("externalSubscriptionId"),
        failure_reason=payload.get("reason"),
        metadata=metadata,
    )
