"""Commissions blueprint — /api/commissions/*

Routes:
- GET /api/commissions/analytics?period=30&storeId=<id>

Admins see every commission; store owners only their own.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from popstore.errors import ValidationError
from popstore.extensions import db
from popstore.services.commission_service import commission_analytics

commissions_bp = Blueprint("commissions", __name__, url_prefix="/api/commissions")


@commissions_bp.route("/analytics", methods=["GET"])
@login_required
def analytics():
    """Totals, daily and status breakdowns, and the ten latest commissions."""
    period = request.args.get("period", "30")
    if not period.isdigit():
        raise ValidationError("Period must be a whole number of days")

    owner_id = None if current_user.is_admin else current_user.id

    data = commission_analytics(
        db.session,
        owner_id=owner_id,
        store_id=request.args.get("storeId") or None,
        period_days=int(period),
    )
    return jsonify(success=True, data=data)
