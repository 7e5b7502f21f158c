"""Webhook service — reconciles Stripe events with orders and commissions.

Responsible for:
- Parsing the event envelope of a signature-verified payload
- Skipping events already recorded in stripe_events
- Dispatching each EventType to its handler
- Recording the event in the same transaction as its effects

Order state machine:
    checkout.session.completed      pending/cancelled -> paid (records payment intent)
    payment_intent.succeeded        paid -> settled (one Commission row)
    payment_intent.payment_failed   pending/paid -> cancelled (never once settled)
    account.updated                 syncs the owner's payout-account status

Idempotency: the stripe_events UNIQUE event id, Order.commission_processed
and the UNIQUE commissions.order_id each stop a redelivered payment from
being settled twice. Any one of them is enough on its own.
"""

import enum
import json
import logging

from sqlalchemy.exc import IntegrityError

from popstore.errors import ValidationError
from popstore.models.order import Order
from popstore.models.stripe_event import StripeEvent
from popstore.models.user import User
from popstore.services.commission_service import log_audit, settle_order

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    ACCOUNT_UPDATED = "account.updated"


def parse_event(payload):
    """Decode a verified payload into an event dict.

    Expects {"id": str, "type": str, "data": {"object": {...}}}.
    Raises ValidationError if the envelope is malformed.
    """
    try:
        event = json.loads(payload)
    except (TypeError, ValueError):
        raise ValidationError("Malformed payload")

    if not isinstance(event, dict):
        raise ValidationError("Malformed payload")
    data = event.get("data")
    if (
        not isinstance(event.get("id"), str)
        or not isinstance(event.get("type"), str)
        or not isinstance(data, dict)
        or not isinstance(data.get("object"), dict)
    ):
        raise ValidationError("Malformed payload")
    return event


def handle_webhook_event(session, event):
    """Process a verified, parsed Stripe event.

    Returns (success: bool, message: str). success=False means the
    event should be retried by Stripe (HTTP 500); everything else,
    including unknown events and missing orders, is acknowledged.
    """
    event_id = event["id"]
    raw_type = event["type"]

    # --- Idempotency check ---
    existing = (
        session.query(StripeEvent)
        .filter_by(stripe_event_id=event_id)
        .first()
    )
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    try:
        event_type = EventType(raw_type)
    except ValueError:
        event_type = None
        logger.info(f"Unhandled event type: {raw_type}")

    # --- Route to handler ---
    message = "ignored"
    if event_type is not None:
        try:
            message = _HANDLERS[event_type](session, event["data"]["object"])
            session.flush()
        except Exception as e:
            logger.error(f"Error handling {raw_type} ({event_id}): {e}", exc_info=True)
            session.rollback()
            return False, str(e)

    # --- Record event for idempotency ---
    session.add(StripeEvent(stripe_event_id=event_id, event_type=raw_type))
    try:
        session.commit()
    except IntegrityError:
        # Another worker recorded this event id first; its effects won.
        session.rollback()
        logger.info(f"Webhook event {event_id} processed concurrently, skipping")
        return True, "already_processed"
    except Exception as e:
        logger.error(f"Failed to commit webhook event {event_id}: {e}", exc_info=True)
        session.rollback()
        return False, str(e)

    return True, message


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def _payment_intent_id(value):
    """payment_intent may arrive as an ID or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _find_order_for_intent(session, intent):
    """Find the order a PaymentIntent belongs to.

    Looks up by the recorded payment intent ID first, then by the
    order_id metadata set at checkout (covers payment_intent.* events
    that arrive before checkout.session.completed).
    """
    intent_id = intent.get("id")
    order = None
    if intent_id:
        order = (
            session.query(Order)
            .filter_by(stripe_payment_intent_id=intent_id)
            .first()
        )
    if order is not None:
        return order

    order_id = (intent.get("metadata") or {}).get("order_id")
    if not order_id:
        return None
    order = session.get(Order, order_id)
    if order is not None and order.stripe_payment_intent_id not in (None, intent_id):
        logger.warning(
            f"Payment intent {intent_id} claims order {order_id}, "
            f"which belongs to {order.stripe_payment_intent_id}"
        )
        return None
    return order


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(session, checkout):
    """checkout.session.completed: record the payment intent, mark paid."""
    session_id = checkout.get("id")
    payment_intent_id = _payment_intent_id(checkout.get("payment_intent"))

    order = None
    if session_id:
        order = (
            session.query(Order)
            .filter_by(stripe_session_id=session_id)
            .first()
        )
    if order is None:
        logger.warning(f"checkout.session.completed: order not found for session {session_id}")
        return "order_not_found"

    if order.status == "paid" and order.stripe_payment_intent_id:
        logger.info(f"Order {order.id} already paid")
        return "already_paid"

    if payment_intent_id and not order.stripe_payment_intent_id:
        holder = (
            session.query(Order)
            .filter(Order.stripe_payment_intent_id == payment_intent_id, Order.id != order.id)
            .first()
        )
        if holder is not None:
            # Retrying can't fix this; acknowledge it like a missing order.
            logger.warning(
                f"checkout.session.completed: payment intent {payment_intent_id} for "
                f"session {session_id} already belongs to order {holder.id}, "
                f"leaving order {order.id} unchanged"
            )
            return "payment_intent_conflict"

    previous_status = order.status
    order.mark_paid(payment_intent_id)

    log_audit(session, "order.paid", store_id=order.store_id, metadata={
        "order_id": order.id,
        "stripe_session_id": session_id,
        "stripe_payment_intent_id": payment_intent_id,
        "previous_status": previous_status,
    })
    logger.info(f"Order {order.id} updated to paid")
    return "order_paid"


def _handle_payment_succeeded(session, intent):
    """payment_intent.succeeded: settle the commission once per order."""
    intent_id = intent.get("id")
    order = _find_order_for_intent(session, intent)
    if order is None:
        logger.warning(f"payment_intent.succeeded: order not found for payment intent {intent_id}")
        return "order_not_found"

    if order.commission_processed:
        logger.info(f"Commission already processed for order {order.id}")
        return "already_processed"

    amount_received = intent.get("amount_received")
    if amount_received is not None and amount_received != order.total_price:
        logger.warning(
            f"Payment intent {intent_id} received {amount_received}, "
            f"order {order.id} total is {order.total_price}"
        )

    if order.status != "paid":
        previous_status = order.status
        order.mark_paid(intent_id)
        log_audit(session, "order.paid", store_id=order.store_id, metadata={
            "order_id": order.id,
            "stripe_payment_intent_id": intent_id,
            "previous_status": previous_status,
        })
    else:
        order.mark_paid(intent_id)
    session.flush()

    settle_order(session, order.id)
    return "commission_settled"


def _handle_payment_failed(session, intent):
    """payment_intent.payment_failed: cancel the order unless already settled."""
    intent_id = intent.get("id")
    order = _find_order_for_intent(session, intent)
    if order is None:
        logger.warning(f"payment_intent.payment_failed: order not found for payment intent {intent_id}")
        return "order_not_found"

    if order.commission_processed:
        logger.warning(
            f"payment_intent.payment_failed for settled order {order.id}, leaving it paid"
        )
        return "already_settled"

    if order.status == "cancelled":
        return "already_cancelled"

    if intent_id and not order.stripe_payment_intent_id:
        order.stripe_payment_intent_id = intent_id
    previous_status = order.status
    order.status = "cancelled"

    failure = intent.get("last_payment_error") or {}
    log_audit(session, "order.cancelled", store_id=order.store_id, metadata={
        "order_id": order.id,
        "stripe_payment_intent_id": intent_id,
        "previous_status": previous_status,
        "failure_message": failure.get("message"),
    })
    logger.info(f"Order {order.id} marked as cancelled")
    return "order_cancelled"


def _handle_account_updated(session, account):
    """account.updated: sync the owner's Connect account status."""
    account_id = account.get("id")
    user = None
    if account_id:
        user = (
            session.query(User)
            .filter_by(stripe_account_id=account_id)
            .first()
        )
    if user is None:
        logger.warning(f"account.updated: user not found for account {account_id}")
        return "user_not_found"

    disabled_reason = (account.get("requirements") or {}).get("disabled_reason")
    if account.get("charges_enabled") and account.get("payouts_enabled"):
        status = "active"
    elif disabled_reason and disabled_reason.startswith("rejected"):
        status = "rejected"
    elif disabled_reason:
        status = "restricted"
    else:
        status = "pending"

    user.stripe_account_status = status
    user.stripe_onboarding_complete = status == "active"

    log_audit(session, "payout_account.updated", metadata={
        "user_id": user.id,
        "stripe_account_id": account_id,
        "status": status,
        "disabled_reason": disabled_reason,
    })
    logger.info(f"User {user.id} payout account status: {status}")
    return "account_updated"


_HANDLERS = {
    EventType.CHECKOUT_COMPLETED: _handle_checkout_completed,
    EventType.PAYMENT_SUCCEEDED: _handle_payment_succeeded,
    EventType.PAYMENT_FAILED: _handle_payment_failed,
    EventType.ACCOUNT_UPDATED: _handle_account_updated,
}

_unhandled = set(EventType) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(
        f"Webhook event types without a handler: {sorted(t.value for t in _unhandled)}"
    )
