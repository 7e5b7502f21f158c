"""Order model.

One row per checkout attempt. Created `pending` by the checkout
initiator, then moved through the state machine by Stripe webhooks:

    pending -> paid       (checkout.session.completed / payment_intent.succeeded)
    pending -> cancelled  (payment_intent.payment_failed)

Orders are never deleted. Once a commission has been settled the order
is pinned: commission_processed implies commission_id is set and
status == "paid", and commission_id can never be re-pointed.
"""

import uuid

from sqlalchemy.orm import validates

from popstore.errors import Conflict
from popstore.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    STATUSES = ["pending", "paid", "cancelled", "refunded"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    store_id = db.Column(
        db.String(36), db.ForeignKey("stores.id"), nullable=False
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    buyer_email = db.Column(db.String(255), nullable=False)
    buyer_name = db.Column(db.String(200), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    total_price = db.Column(db.Integer, nullable=False)  # cents
    application_fee_amount = db.Column(
        db.Integer, nullable=False, default=0
    )  # fee sent to Stripe at checkout (advisory)
    stripe_session_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # "cs_...", set right after the session is created
    stripe_payment_intent_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # "pi_...", recorded on checkout.session.completed
    status = db.Column(
        db.String(20), default="pending", nullable=False
    )  # pending | paid | cancelled | refunded
    commission_processed = db.Column(db.Boolean, default=False, nullable=False)
    commission_id = db.Column(
        db.String(36),
        db.ForeignKey("commissions.id", use_alter=True, name="fk_orders_commission_id"),
        unique=True,
        nullable=True,
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_orders_quantity"),
        db.CheckConstraint("total_price >= 0", name="ck_orders_total_price"),
    )

    # --- Relationships ---
    store = db.relationship("Store")
    product = db.relationship("Product")

    @validates("status")
    def _validate_status(self, key, value):
        if value not in self.STATUSES:
            raise ValueError(f"Invalid order status: {value}")
        if self.commission_processed and value != "paid":
            raise Conflict(f"Order {self.id} is settled and cannot become {value}")
        return value

    @validates("commission_id")
    def _validate_commission_id(self, key, value):
        if self.commission_id is not None and value != self.commission_id:
            raise Conflict(f"Order {self.id} already points at commission {self.commission_id}")
        return value

    @validates("commission_processed")
    def _validate_commission_processed(self, key, value):
        if value and (self.commission_id is None or self.status != "paid"):
            raise Conflict(f"Order {self.id} must be paid with a commission before it is settled")
        return value

    def mark_paid(self, payment_intent_id=None):
        """Record the PaymentIntent reference (if new) and set status=paid."""
        if payment_intent_id and not self.stripe_payment_intent_id:
            self.stripe_payment_intent_id = payment_intent_id
        if self.status != "paid":
            self.status = "paid"

    def mark_commission_processed(self, commission):
        """Pin the order to its commission ledger entry."""
        self.commission_id = commission.id
        self.commission_processed = True

    def __repr__(self):
        return f"<Order {self.id} ({self.status})>"
