"""Checkout service — opens a Stripe Checkout Session for one product.

Every precondition (product, store active and not expired, owner able to
receive payouts, plan) is checked before the Order row is created, so a
rejected checkout never leaves a dangling order. If Stripe itself fails
the pending order is rolled back as well.

The commission computed here is advisory: it becomes the application fee
Stripe withholds, while the ledger entry is computed again at settlement.
"""

import logging
import re
from collections import namedtuple
from datetime import datetime, timezone

import bleach
import stripe
from flask import current_app

from popstore.errors import (
    NotFound,
    PayoutNotConfigured,
    StoreExpired,
    StoreInactive,
    UpstreamFailure,
    ValidationError,
)
from popstore.models.order import Order
from popstore.services.catalog_service import (
    find_owner,
    find_product,
    find_store,
    is_payout_ready,
)
from popstore.services.commission_service import calculate_commission
from popstore.services.plan_service import get_plan
from popstore.services.stripe_service import create_checkout_session

logger = logging.getLogger(__name__)

# Simple email regex — not exhaustive, just sanity-check
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CheckoutResult = namedtuple(
    "CheckoutResult",
    ["order_id", "session_id", "session_url", "total_amount",
     "commission_amount", "net_amount"],
)


def _sanitize(text):
    """Strip all HTML tags from buyer-supplied text."""
    return bleach.clean(text, tags=[], strip=True).strip()


def parse_checkout_request(data, max_quantity=10):
    """Validate a checkout request body.

    Required fields: productId, buyerEmail
    Optional fields: quantity (default 1), buyerName

    Returns a dict of clean keyword arguments for initiate_checkout().
    Raises ValidationError listing every problem found.
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid request.")

    product_id = data.get("productId")
    buyer_email = data.get("buyerEmail")
    buyer_name = data.get("buyerName")
    quantity = data.get("quantity", 1)

    errors = []
    if not isinstance(product_id, str) or not product_id.strip():
        errors.append("Product ID is required.")
    if not isinstance(buyer_email, str) or not EMAIL_RE.match(buyer_email.strip()):
        errors.append("A valid buyer email is required.")
    if isinstance(quantity, str) and quantity.isdigit():
        quantity = int(quantity)
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        errors.append("Quantity must be a whole number.")
    elif not 1 <= quantity <= max_quantity:
        errors.append(f"Quantity must be between 1 and {max_quantity}.")
    if buyer_name is not None:
        if not isinstance(buyer_name, str):
            errors.append("Buyer name must be text.")
        elif len(buyer_name) > 200:
            errors.append("Buyer name is too long.")

    if errors:
        raise ValidationError(" ".join(errors))

    if buyer_name:
        buyer_name = _sanitize(buyer_name) or None

    return {
        "product_id": product_id.strip(),
        "buyer_email": buyer_email.strip().lower(),
        "quantity": quantity,
        "buyer_name": buyer_name or None,
    }


def initiate_checkout(session, product_id, buyer_email, quantity=1,
                      buyer_name=None, now=None):
    """Create a pending Order and a Stripe Checkout Session for it.

    Commits the order on success.

    Returns a CheckoutResult.
    Raises NotFound, StoreInactive, StoreExpired, PayoutNotConfigured,
    ValidationError (stock), or UpstreamFailure (Stripe error).
    """
    now = now or datetime.now(timezone.utc)

    product = find_product(session, product_id)
    if product is None:
        raise NotFound("Product not found")

    store = find_store(session, product.store_id)
    if store is None or not store.is_active:
        raise StoreInactive()
    if store.is_expired(now):
        raise StoreExpired()

    owner = find_owner(session, store.owner_id)
    if not is_payout_ready(owner):
        raise PayoutNotConfigured()

    plan = get_plan(session, store.plan_id)

    if product.quantity_available is not None and quantity > product.quantity_available:
        raise ValidationError(f"Only {product.quantity_available} left in stock.")

    total_amount = product.price * quantity
    breakdown = calculate_commission(total_amount, plan.commission_percentage)

    # --- All checks passed: create the pending order ---
    order = Order(
        store_id=store.id,
        product_id=product.id,
        buyer_email=buyer_email,
        buyer_name=buyer_name,
        quantity=quantity,
        total_price=total_amount,
        application_fee_amount=breakdown.commission_amount,
        status="pending",
        commission_processed=False,
    )
    session.add(order)
    session.flush()

    app_base_url = current_app.config["APP_BASE_URL"]
    try:
        checkout = create_checkout_session(
            amount=total_amount,
            fee_amount=breakdown.commission_amount,
            destination_account=owner.stripe_account_id,
            success_url=(
                f"{app_base_url}/checkout/success"
                f"?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            cancel_url=f"{app_base_url}/checkout/cancel",
            metadata={
                "order_id": order.id,
                "store_id": store.id,
                "product_id": product.id,
                "commission_amount": str(breakdown.commission_amount),
            },
            product_name=product.name,
            customer_email=buyer_email,
        )
    except stripe.StripeError as e:
        session.rollback()
        logger.error(f"Stripe checkout session failed for product {product_id}: {e}")
        raise UpstreamFailure()
    except Exception:
        session.rollback()
        raise

    order.stripe_session_id = checkout["id"]
    session.commit()

    logger.info(
        f"Checkout session {checkout['id']} opened for order {order.id} "
        f"(store {store.id}, total {total_amount}, fee {breakdown.commission_amount})"
    )

    return CheckoutResult(
        order_id=order.id,
        session_id=checkout["id"],
        session_url=checkout["url"],
        total_amount=total_amount,
        commission_amount=breakdown.commission_amount,
        net_amount=breakdown.net_amount,
    )
