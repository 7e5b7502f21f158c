"""Plans blueprint — /api/store-plans

Public, read-only listing of store plans for the plan picker.
"""

from flask import Blueprint, jsonify

from popstore.extensions import db
from popstore.services.plan_service import list_plans

plans_bp = Blueprint("plans", __name__, url_prefix="/api/store-plans")


@plans_bp.route("", methods=["GET"])
def get_plans():
    """All plans, shortest duration first."""
    plans = list_plans(db.session)
    return jsonify(success=True, plans=[plan.to_dict() for plan in plans])
