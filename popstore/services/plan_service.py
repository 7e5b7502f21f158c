"""Plan service — the store plan registry.

Responsible for:
- Looking up a plan by ID (checkout and settlement read commission rates here)
- Listing plans for the public plan picker
- Creating plans (admin CLI only; plans are immutable once stores use them)
"""

import logging
import math
from decimal import Decimal, InvalidOperation

from popstore.errors import NotFound, ValidationError
from popstore.models.plan import StorePlan

logger = logging.getLogger(__name__)


def get_plan(session, plan_id):
    """Return the StorePlan for plan_id.

    Raises NotFound if no such plan exists.
    """
    plan = session.get(StorePlan, plan_id) if plan_id else None
    if plan is None:
        raise NotFound(f"Store plan {plan_id} not found")
    return plan


def list_plans(session):
    """All plans, shortest first."""
    return (
        session.query(StorePlan)
        .order_by(StorePlan.duration_hours.asc())
        .all()
    )


def _percentage(value, field):
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not pct.is_finite() or pct < 0 or pct > 100:
        raise ValidationError(f"{field} must be between 0 and 100")
    return pct


def create_plan(session, title, duration_hours, base_price,
                commission_percentage, discount_percentage=0):
    """Create a new store plan.

    Args:
        title: Display name, e.g. "Weekend (48h)".
        duration_hours: How long a store on this plan stays open.
        base_price: Listing fee in cents, before discount.
        commission_percentage: Platform cut on every sale, 0-100.
        discount_percentage: Optional discount on base_price, 0-100.

    Returns the StorePlan (flushed, not committed).
    Raises ValidationError on bad input.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if not isinstance(duration_hours, int) or duration_hours <= 0:
        raise ValidationError("Duration must be a positive number of hours")
    if not isinstance(base_price, int) or base_price < 0:
        raise ValidationError("Base price must be a non-negative amount in cents")

    commission = _percentage(commission_percentage, "Commission percentage")
    discount = _percentage(discount_percentage, "Discount percentage")
    final_price = math.floor(base_price - base_price * discount / 100)

    plan = StorePlan(
        title=title,
        duration_hours=duration_hours,
        base_price=base_price,
        discount_percentage=discount,
        final_price=final_price,
        commission_percentage=commission,
    )
    session.add(plan)
    session.flush()
    logger.info(f"Created store plan {plan.id} ({title}, {commission}% commission)")
    return plan
