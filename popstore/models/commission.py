"""Commission model (the commission ledger).

One immutable row per settled order: the platform's cut of the gross
amount and the owner's net. order_id is UNIQUE: the database, not the
application, guarantees a commission is written at most once per order
even when Stripe delivers the same event to several workers at once.
"""

import uuid

from popstore.extensions import db


class Commission(db.Model):
    __tablename__ = "commissions"

    STATUSES = ["pending", "completed", "failed", "refunded"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False
    )
    store_id = db.Column(
        db.String(36), db.ForeignKey("stores.id"), nullable=False
    )
    store_owner_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    plan_id = db.Column(
        db.String(36), db.ForeignKey("store_plans.id"), nullable=False
    )
    gross_amount = db.Column(db.Integer, nullable=False)  # cents
    commission_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    commission_amount = db.Column(db.Integer, nullable=False)  # cents
    net_amount = db.Column(db.Integer, nullable=False)  # cents
    stripe_transfer_id = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(20), default="pending", nullable=False
    )  # pending | completed | failed | refunded
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_commissions_order_id"),
        db.CheckConstraint(
            "commission_amount >= 0 AND net_amount >= 0",
            name="ck_commissions_non_negative",
        ),
        db.CheckConstraint(
            "commission_amount + net_amount = gross_amount",
            name="ck_commissions_split_sums_to_gross",
        ),
        db.Index("ix_commissions_owner_created", "store_owner_id", "created_at"),
    )

    # --- Relationships ---
    store = db.relationship("Store")
    plan = db.relationship("StorePlan")

    def to_dict(self):
        return {
            "id": self.id,
            "orderId": self.order_id,
            "storeId": self.store_id,
            "storeOwnerId": self.store_owner_id,
            "planId": self.plan_id,
            "grossAmount": self.gross_amount,
            "commissionPercentage": str(self.commission_percentage),
            "commissionAmount": self.commission_amount,
            "netAmount": self.net_amount,
            "status": self.status,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return f"<Commission order={self.order_id} {self.commission_amount}/{self.gross_amount}>"
