"""User model.

Store owners and admins. Flask-Login integration via UserMixin.
Also carries the owner's Stripe Connect account state, which gates
checkout (an owner must be able to receive payouts).
"""

import uuid

from flask_login import UserMixin

from popstore.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    # -- Stripe Connect account states --
    STRIPE_ACCOUNT_STATUSES = ["pending", "active", "restricted", "rejected"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    username = db.Column(db.String(100), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), default="user", nullable=False)  # user | admin
    is_active = db.Column(db.Boolean, default=True)

    stripe_account_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "acct_1Abc..."
    stripe_account_status = db.Column(
        db.String(20), nullable=True
    )  # pending | active | restricted | rejected
    stripe_onboarding_complete = db.Column(db.Boolean, default=False)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    stores = db.relationship("Store", back_populates="owner", lazy="dynamic")
    audit_events = db.relationship(
        "AuditEvent", back_populates="actor", lazy="dynamic"
    )

    @property
    def is_admin(self):
        return self.role == "admin"

    def __repr__(self):
        return f"<User {self.email}>"
