"""Payment provider clients — webhook verification and supplementary lookups.

Responsible for:
- Verifying webhook authenticity (Stripe signature, Razorpay HMAC,
  PayPal verify-webhook-signature API)
- Razorpay payment / invoice lookups (invoice -> subscription id)
- Stripe subscription period lookups

Clients are built once per process in create_app() and stored on
app.extensions["payment_providers"]. Handlers receive them explicitly.
"""

import hashlib
import hmac
import json
import logging

import requests
import stripe

from app.errors import ProviderError, SignatureVerificationError
from app.services.normalizer import stripe_period_end

logger = logging.getLogger(__name__)


def _load_json(body):
    try:
        return json.loads(body)
    except (TypeError, ValueError) as e:
        raise SignatureVerificationError(f"Invalid payload: {e}") from e


# ──────────────────────────────────────────────
# Stripe
# ──────────────────────────────────────────────

class StripeClient:
    name = "stripe"

    def __init__(self, secret_key, webhook_secret):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def verify_webhook(self, payload, sig_header):
        """Verify the Stripe-Signature header and return the event as a dict.

        Raises SignatureVerificationError on a bad signature or payload.
        """
        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except Exception as e:
            raise SignatureVerificationError(str(e)) from e
        return _load_json(payload)

    def subscription_period_end(self, subscription_id):
        """Current period end of a Stripe subscription, or None if unavailable."""
        try:
            sub = stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.warning(f"Failed to fetch Stripe subscription {subscription_id}: {e}")
            return None
        data = sub.to_dict() if hasattr(sub, "to_dict") else dict(sub)
        return stripe_period_end(data)


# ──────────────────────────────────────────────
# Razorpay
# ──────────────────────────────────────────────

class RazorpayClient:
    name = "razorpay"

    def __init__(self, key_id, key_secret, webhook_secret,
                 api_base="https://api.razorpay.com/v1", timeout=10):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def verify_webhook(self, raw_body, signature):
        """Check the X-Razorpay-Signature HMAC and return the parsed body."""
        if not self.webhook_secret:
            raise SignatureVerificationError("Razorpay webhook secret not configured")
        expected = hmac.new(
            self.webhook_secret.encode(), raw_body, hashlib.sha256
        ).hexdigest()
        if not signature or not hmac.compare_digest(expected, signature):
            raise SignatureVerificationError("Invalid Razorpay signature")
        return _load_json(raw_body)

    def _get(self, path):
        url = f"{self.api_base}/{path}"
        try:
            resp = requests.get(
                url, auth=(self.key_id, self.key_secret), timeout=self.timeout
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Razorpay lookup failed for {path}: {e}")
            raise ProviderError(f"Razorpay lookup failed for {path}: {e}") from e

    def fetch_payment(self, payment_id):
        return self._get(f"payments/{payment_id}")

    def fetch_invoice(self, invoice_id):
        return self._get(f"invoices/{invoice_id}")


# ──────────────────────────────────────────────
# PayPal
# ──────────────────────────────────────────────

PAYPAL_BASE_URLS = {
    "live": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}

# Transmission headers PayPal signs; all are required for verification.
PAYPAL_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


class PayPalClient:
    name = "paypal"

    def __init__(self, client_id, client_secret, webhook_id, mode="sandbox", timeout=10):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.base_url = PAYPAL_BASE_URLS.get(mode, PAYPAL_BASE_URLS["sandbox"])
        self.timeout = timeout

    def _access_token(self):
        try:
            resp = requests.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()["access_token"]
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error(f"PayPal token request failed: {e}")
            raise ProviderError(f"PayPal token request failed: {e}") from e

    def verify_webhook(self, raw_body, headers):
        """Verify a PayPal webhook through the verify-webhook-signature API.

        Returns the parsed webhook event. Raises SignatureVerificationError
        if headers are missing or PayPal does not answer SUCCESS, and
        ProviderError if PayPal cannot be reached.
        """
        missing = [h for h in PAYPAL_HEADERS.values() if not headers.get(h)]
        if missing:
            raise SignatureVerificationError(f"Missing PayPal headers: {', '.join(missing)}")

        webhook_event = _load_json(raw_body)
        body = {key: headers.get(header) for key, header in PAYPAL_HEADERS.items()}
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = webhook_event

        token = self._access_token()
        try:
            resp = requests.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                headers={"Authorization": f"Bearer {token}"},
                json=body,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            verification = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"PayPal signature verification request failed: {e}")
            raise ProviderError(f"PayPal verification request failed: {e}") from e

        if verification.get("verification_status") != "SUCCESS":
            raise SignatureVerificationError("Invalid PayPal signature")
        return webhook_event


# ──────────────────────────────────────────────
# Registry
# ──────────────────────────────────────────────

class ProviderClients:
    """The per-process set of provider clients, passed to handlers explicitly."""

    def __init__(self, stripe_client, razorpay_client, paypal_client):
        self.stripe = stripe_client
        self.razorpay = razorpay_client
        self.paypal = paypal_client

    def get(self, provider):
        client = getattr(self, provider, None) if provider in ("stripe", "razorpay", "paypal") else None
        if client is None:
            raise ValueError(f"Unknown payment provider: {provider}")
        return client


def build_provider_clients(config):
    timeout = config.get("PROVIDER_HTTP_TIMEOUT", 10)
    return ProviderClients(
        stripe_client=StripeClient(
            secret_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
        ),
        razorpay_client=RazorpayClient(
            key_id=config.get("RAZORPAY_KEY_ID"),
            key_secret=config.get("RAZORPAY_KEY_SECRET"),
            webhook_secret=config.get("RAZORPAY_WEBHOOK_SECRET"),
            api_base=config.get("RAZORPAY_API_BASE", "https://api.razorpay.com/v1"),
            timeout=timeout,
        ),
        paypal_client=PayPalClient(
            client_id=config.get("PAYPAL_CLIENT_ID"),
            client_secret=config.get("PAYPAL_CLIENT_SECRET"),
            webhook_id=config.get("PAYPAL_WEBHOOK_ID"),
            mode=config.get("PAYPAL_MODE", "sandbox"),
            timeout=timeout,
        ),
    )


def init_provider_clients(app):
    app.extensions["payment_providers"] = build_provider_clients(app.config)
