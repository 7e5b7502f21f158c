"""Stripe service — all Stripe API calls and webhook signature checks.

Responsible for:
- Configuring the Stripe client (key, timeout, bounded retries)
- Creating Checkout Sessions as destination charges with an application fee
- Verifying webhook signatures over the raw request body
"""

import logging

import stripe
from flask import current_app

logger = logging.getLogger(__name__)


def _configure_stripe():
    """Point the SDK at our key with a bounded HTTP timeout."""
    config = current_app.config
    stripe.api_key = config["STRIPE_SECRET_KEY"]
    stripe.max_network_retries = config.get("STRIPE_MAX_NETWORK_RETRIES", 2)
    if stripe.default_http_client is None:
        stripe.default_http_client = stripe.RequestsClient(
            timeout=config.get("STRIPE_TIMEOUT_SECONDS", 20)
        )


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

def create_checkout_session(amount, fee_amount, destination_account,
                            success_url, cancel_url, metadata,
                            product_name="Store Purchase", customer_email=None):
    """Create a Stripe Checkout Session for a one-off destination charge.

    The buyer pays `amount`; Stripe transfers it to `destination_account`
    minus `fee_amount`, which stays with the platform. Metadata is set on
    both the session and its PaymentIntent so payment_intent.* webhooks
    can find the order too.

    Args:
        amount: Total charge in cents.
        fee_amount: Platform application fee in cents.
        destination_account: Store owner's connected account ("acct_...").
        metadata: Dict of strings (order_id, store_id, ...).

    Returns {"id": session_id, "url": session_url}.
    Raises stripe.StripeError on API failures.
    """
    _configure_stripe()
    currency = current_app.config.get("CHECKOUT_CURRENCY", "usd")

    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": product_name},
                    "unit_amount": amount,
                },
                "quantity": 1,
            },
        ],
        "payment_intent_data": {
            "application_fee_amount": fee_amount,
            "transfer_data": {"destination": destination_account},
            "metadata": metadata,
        },
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
    }
    if customer_email:
        params["customer_email"] = customer_email

    session = stripe.checkout.Session.create(**params)
    return {"id": session.id, "url": session.url}


# ──────────────────────────────────────────────
# Webhook signatures
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header, secret, tolerance=300):
    """Check a Stripe-Signature header against the raw payload.

    Returns True if the HMAC matches and the timestamp is within
    `tolerance` seconds, False otherwise. Never raises for a bad header.
    """
    if not payload or not sig_header or not secret:
        return False
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return False
    return True
