"""Webhooks blueprint — /webhooks/<provider>

Receives Stripe, Razorpay and PayPal notifications. Raw bodies are
required for signature verification. Once a notification is authentic,
every outcome is acknowledged with 200 so the provider stops retrying;
only store or provider-lookup failures answer 500.
"""

import hashlib
import logging

from flask import Blueprint, current_app, jsonify, request

from app.errors import ReconciliationError, SignatureVerificationError
from app.services.reconciliation_service import process_notification

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _clients():
    return current_app.extensions["payment_providers"]


def _process(provider, payload, event_id=None):
    """Reconcile a verified payload and map the result to a response."""
    try:
        result = process_notification(provider, payload, _clients(), event_id=event_id)
    except ReconciliationError as e:
        logger.error(f"{provider} webhook processing failed: {e}")
        return jsonify({"error": "processing_failed"}), 500

    return jsonify({"status": result.outcome}), 200


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """Receive Stripe events (Stripe-Signature header)."""
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Stripe webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    try:
        event = _clients().stripe.verify_webhook(payload, sig_header)
    except SignatureVerificationError as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    return _process("stripe", event)


@webhooks_bp.route("/razorpay", methods=["POST"])
def razorpay_webhook():
    """Receive Razorpay events (X-Razorpay-Signature HMAC).

    Razorpay bodies carry no event id; X-Razorpay-Event-Id is used, or the
    body digest when the header is absent.
    """
    raw_body = request.get_data()
    signature = request.headers.get("X-Razorpay-Signature")

    if not signature:
        logger.warning("Razorpay webhook received without X-Razorpay-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    try:
        event = _clients().razorpay.verify_webhook(raw_body, signature)
    except SignatureVerificationError as e:
        logger.warning(f"Razorpay signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    event_id = (
        request.headers.get("X-Razorpay-Event-Id")
        or hashlib.sha256(raw_body).hexdigest()
    )
    return _process("razorpay", event, event_id=event_id)


@webhooks_bp.route("/paypal", methods=["POST"])
def paypal_webhook():
    """Receive PayPal events (verified through PayPal's API)."""
    raw_body = request.get_data()

    try:
        event = _clients().paypal.verify_webhook(raw_body, request.headers)
    except SignatureVerificationError as e:
        logger.warning(f"PayPal signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400
    except ReconciliationError as e:
        logger.error(f"PayPal verification unavailable: {e}")
        return jsonify({"error": "verification_unavailable"}), 500

    return _process("paypal", event)
