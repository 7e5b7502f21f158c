"""Commission service — calculator, settlement and the commission ledger.

Responsible for:
- Splitting a gross amount into platform commission and owner net
- Settling a paid order: writing exactly one Commission row per order
- Audit trail helpers for settlement and webhook state changes
- Commission analytics for owners and admins

Functions flush but do NOT commit; the caller owns the transaction.
"""

import logging
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from popstore.errors import Conflict, NotFound, ValidationError
from popstore.models.audit import AuditEvent
from popstore.models.commission import Commission
from popstore.models.order import Order
from popstore.models.store import Store
from popstore.services.catalog_service import find_store
from popstore.services.plan_service import get_plan

logger = logging.getLogger(__name__)

CommissionBreakdown = namedtuple(
    "CommissionBreakdown",
    ["gross_amount", "commission_percentage", "commission_amount", "net_amount"],
)

_ONE = Decimal(1)
_HUNDRED = Decimal(100)


# ──────────────────────────────────────────────
# Calculator
# ──────────────────────────────────────────────

def _to_decimal(value, field):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return number


def calculate_commission(gross_amount, commission_percentage):
    """Split gross_amount (integer cents) by commission_percentage (0-100).

    commission = gross * pct / 100, rounded half-up to a whole cent.
    net is derived by subtraction, so commission + net == gross exactly.

    Returns a CommissionBreakdown.
    Raises ValidationError for a negative or fractional gross amount or
    a percentage outside [0, 100].
    """
    gross = _to_decimal(gross_amount, "Gross amount")
    pct = _to_decimal(commission_percentage, "Commission percentage")

    if gross < 0 or gross != gross.to_integral_value():
        raise ValidationError("Gross amount must be a non-negative whole number of cents")
    if pct < 0 or pct > _HUNDRED:
        raise ValidationError("Commission percentage must be between 0 and 100")

    commission = (gross * pct / _HUNDRED).quantize(_ONE, rounding=ROUND_HALF_UP)
    commission_amount = int(commission)
    gross_int = int(gross)

    return CommissionBreakdown(
        gross_amount=gross_int,
        commission_percentage=pct,
        commission_amount=commission_amount,
        net_amount=gross_int - commission_amount,
    )


# ──────────────────────────────────────────────
# Audit
# ──────────────────────────────────────────────

def log_audit(session, action, store_id=None, metadata=None, actor_user_id=None):
    """Log an order/commission audit event.

    Actor is None for webhook-driven changes (system-initiated).
    """
    event = AuditEvent(
        store_id=store_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    session.add(event)
    session.flush()
    return event


# ──────────────────────────────────────────────
# Settlement
# ──────────────────────────────────────────────

def _adopt_existing_commission(session, order_id):
    """After losing a uniqueness race, return the row the winner wrote.

    The winner normally pinned the order in the same transaction; if the
    order is somehow unpinned, point it at the existing row.
    """
    existing = (
        session.query(Commission)
        .filter_by(order_id=order_id)
        .first()
    )
    if existing is None:
        # Integrity error was not the order_id uniqueness; let it surface.
        raise Conflict(f"Commission insert for order {order_id} was rejected")

    order = session.get(Order, order_id)
    if order is not None and not order.commission_processed:
        order.mark_paid()
        order.mark_commission_processed(existing)
        session.flush()
        logger.warning(f"Re-pointed order {order_id} at existing commission {existing.id}")
    return existing


def settle_order(session, order_id, now=None):
    """Compute and record the commission for a paid order, at most once.

    1. Load the order; if already processed, return its commission.
    2. Load the store, then its plan through the plan registry.
    3. Compute the split and insert the Commission row (order_id UNIQUE).
    4. Pin the order (commission_processed / commission_id).

    A concurrent settlement of the same order makes step 3 fail with an
    IntegrityError. Only the insert's SAVEPOINT is rolled back; the
    caller's other writes in the transaction survive and the existing
    row is returned.

    Returns the Commission.
    Raises NotFound (order/store/plan missing) or Conflict (order not paid).
    """
    now = now or datetime.now(timezone.utc)

    order = session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")

    if order.commission_processed:
        logger.info(f"Commission already processed for order {order_id}")
        return session.get(Commission, order.commission_id)

    if order.status != "paid":
        raise Conflict(f"Order {order_id} is {order.status}, not paid")

    store = find_store(session, order.store_id)
    if store is None:
        raise NotFound(f"Store {order.store_id} not found for order {order_id}")
    plan = get_plan(session, store.plan_id)

    breakdown = calculate_commission(order.total_price, plan.commission_percentage)

    commission = Commission(
        order_id=order.id,
        store_id=store.id,
        store_owner_id=store.owner_id,
        plan_id=plan.id,
        gross_amount=breakdown.gross_amount,
        commission_percentage=breakdown.commission_percentage,
        commission_amount=breakdown.commission_amount,
        net_amount=breakdown.net_amount,
        status="completed",  # Stripe already split the charge
        processed_at=now,
    )
    # SAVEPOINT scoped to the insert: a lost race undoes only this row.
    session.flush()
    try:
        with session.begin_nested():
            session.add(commission)
    except IntegrityError:
        logger.info(f"Concurrent settlement detected for order {order_id}, treating as processed")
        return _adopt_existing_commission(session, order_id)

    order.mark_commission_processed(commission)

    if breakdown.commission_amount != order.application_fee_amount:
        # Plan changed between checkout and settlement; Stripe kept the old fee.
        logger.warning(
            f"Commission for order {order_id} is {breakdown.commission_amount} "
            f"but checkout sent application fee {order.application_fee_amount}"
        )
        log_audit(session, "commission.fee_mismatch", store_id=store.id, metadata={
            "order_id": order.id,
            "commission_amount": breakdown.commission_amount,
            "application_fee_amount": order.application_fee_amount,
        })

    log_audit(session, "commission.settled", store_id=store.id, metadata={
        "order_id": order.id,
        "commission_id": commission.id,
        "gross_amount": breakdown.gross_amount,
        "commission_amount": breakdown.commission_amount,
        "net_amount": breakdown.net_amount,
    })

    logger.info(
        f"Commission processed for order {order_id}: "
        f"{breakdown.commission_amount} of {breakdown.gross_amount}"
    )
    return commission


# ──────────────────────────────────────────────
# Analytics
# ──────────────────────────────────────────────

def commission_analytics(session, owner_id=None, store_id=None, period_days=30, now=None):
    """Aggregate commissions created in the last period_days.

    Args:
        owner_id: Restrict to one store owner (None = all, admin view).
        store_id: Optional single-store filter.
        period_days: Look-back window, 1-365.

    Returns a dict with total, daily, status and recent sections.
    """
    if not isinstance(period_days, int) or not 1 <= period_days <= 365:
        raise ValidationError("Period must be between 1 and 365 days")

    now = now or datetime.now(timezone.utc)
    start = now - timedelta(days=period_days)

    filters = [Commission.created_at >= start]
    if owner_id:
        filters.append(Commission.store_owner_id == owner_id)
    if store_id:
        filters.append(Commission.store_id == store_id)

    totals = (
        session.query(
            func.coalesce(func.sum(Commission.commission_amount), 0),
            func.coalesce(func.sum(Commission.gross_amount), 0),
            func.coalesce(func.sum(Commission.net_amount), 0),
            func.count(Commission.id),
            func.avg(Commission.commission_percentage),
        )
        .filter(*filters)
        .one()
    )

    day = func.date(Commission.created_at)
    daily = (
        session.query(
            day.label("day"),
            func.sum(Commission.commission_amount),
            func.sum(Commission.gross_amount),
            func.count(Commission.id),
        )
        .filter(*filters)
        .group_by(day)
        .order_by(day)
        .all()
    )

    by_status = (
        session.query(
            Commission.status,
            func.count(Commission.id),
            func.sum(Commission.commission_amount),
        )
        .filter(*filters)
        .group_by(Commission.status)
        .all()
    )

    recent = (
        session.query(Commission, Store.name, Store.slug, Order.buyer_email)
        .join(Store, Store.id == Commission.store_id)
        .join(Order, Order.id == Commission.order_id)
        .filter(*filters)
        .order_by(Commission.created_at.desc())
        .limit(10)
        .all()
    )

    return {
        "period": period_days,
        "total": {
            "totalCommissions": int(totals[0]),
            "totalGross": int(totals[1]),
            "totalNet": int(totals[2]),
            "count": totals[3],
            "avgCommissionRate": round(float(totals[4] or 0), 2),
        },
        "daily": [
            {"date": str(d), "commissions": int(c), "gross": int(g), "count": n}
            for d, c, g, n in daily
        ],
        "status": [
            {"status": s, "count": n, "amount": int(a or 0)}
            for s, n, a in by_status
        ],
        "recent": [
            {
                **commission.to_dict(),
                "storeName": name,
                "storeSlug": slug,
                "buyerEmail": buyer_email,
            }
            for commission, name, slug, buyer_email in recent
        ],
    }
