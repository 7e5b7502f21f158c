"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from popstore.errors import InvalidSignature
from popstore.extensions import db
from popstore.services.stripe_service import verify_webhook_signature
from popstore.services.webhook_service import handle_webhook_event, parse_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET; nothing is read or
       written before this passes
    3. Parse the event envelope (400 if malformed)
    4. Pass to handle_webhook_event (idempotent)
    5. Return 200 to acknowledge, 500 to make Stripe retry

    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        raise InvalidSignature("Missing signature")

    # --- Verify signature ---
    verified = verify_webhook_signature(
        payload,
        sig_header,
        current_app.config["STRIPE_WEBHOOK_SECRET"],
        tolerance=current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
    )
    if not verified:
        raise InvalidSignature()

    event = parse_event(payload)

    # --- Process event (idempotent) ---
    success, message = handle_webhook_event(db.session, event)

    if success:
        return jsonify(success=True, status=message), 200
    else:
        logger.error(f"Webhook processing failed for {event['id']}: {message}")
        return jsonify(success=False, message="Webhook processing failed"), 500
