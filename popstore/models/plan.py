"""Store plan model.

A plan fixes how long a pop-up store runs and the platform's commission
percentage on every sale. Plans are created by an administrator
(`flask create-plan`) and are read-only to checkout and settlement.
"""

import uuid

from popstore.extensions import db


class StorePlan(db.Model):
    __tablename__ = "store_plans"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    duration_hours = db.Column(db.Integer, nullable=False)
    base_price = db.Column(db.Integer, nullable=False)  # cents
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    final_price = db.Column(db.Integer, nullable=False)  # cents, after discount
    commission_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.CheckConstraint("duration_hours > 0", name="ck_store_plans_duration"),
        db.CheckConstraint(
            "commission_percentage >= 0 AND commission_percentage <= 100",
            name="ck_store_plans_commission_range",
        ),
    )

    # --- Relationships ---
    stores = db.relationship("Store", back_populates="plan", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "durationHours": self.duration_hours,
            "basePrice": self.base_price,
            "discountPercentage": str(self.discount_percentage),
            "finalPrice": self.final_price,
            "commissionPercentage": str(self.commission_percentage),
        }

    def __repr__(self):
        return f"<StorePlan {self.title} ({self.commission_percentage}%)>"
