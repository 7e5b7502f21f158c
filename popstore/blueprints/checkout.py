"""Checkout blueprint — /api/checkout/*

Routes:
- POST /api/checkout/create-session — validate, create pending order,
  open a Stripe Checkout Session, return its URL

Errors are raised as PopstoreError subclasses and rendered by the
app-level handler as {"success": false, "message": ...}.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from popstore.extensions import db, limiter
from popstore.services.checkout_service import initiate_checkout, parse_checkout_request

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.route("/create-session", methods=["POST"])
@limiter.limit("30 per minute")
def create_session():
    """Start checkout for one product.

    Body: { productId, buyerEmail, quantity?, buyerName? }
    Returns 201: { success, orderId, sessionId, sessionUrl,
                   totalAmount, commissionAmount, netAmount }
    """
    data = request.get_json(silent=True)
    params = parse_checkout_request(
        data, max_quantity=current_app.config.get("CHECKOUT_MAX_QUANTITY", 10)
    )

    result = initiate_checkout(db.session, **params)

    return jsonify(
        success=True,
        orderId=result.order_id,
        sessionId=result.session_id,
        sessionUrl=result.session_url,
        totalAmount=result.total_amount,
        commissionAmount=result.commission_amount,
        netAmount=result.net_amount,
    ), 201
