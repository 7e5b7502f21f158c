"""Store and product models.

- Store: a time-limited pop-up store owned by a user, running on a plan.
- Product: an item listed in a store. Prices are integer cents.

Both are managed by the store CRUD handlers; checkout and settlement
only read them.
"""

import uuid
from datetime import datetime, timezone

from popstore.extensions import db


class Store(db.Model):
    __tablename__ = "stores"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    plan_id = db.Column(
        db.String(36), db.ForeignKey("store_plans.id"), nullable=False
    )
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    extended_hours = db.Column(db.Integer, default=0)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    owner = db.relationship("User", back_populates="stores")
    plan = db.relationship("StorePlan", back_populates="stores")
    products = db.relationship("Product", back_populates="store", lazy="dynamic")

    def is_expired(self, now=None):
        """Check whether the store's run has ended."""
        now = now or datetime.now(timezone.utc)
        expires = self.expires_at
        # SQLite returns naive datetimes; Postgres returns aware ones.
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return now > expires

    def __repr__(self):
        return f"<Store {self.slug} (active={self.is_active})>"


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    store_id = db.Column(
        db.String(36), db.ForeignKey("stores.id"), nullable=False
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Integer, nullable=False)  # cents
    image_url = db.Column(db.String(500), nullable=True)
    quantity_available = db.Column(db.Integer, nullable=True)  # null = unlimited
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_products_price"),
    )

    # --- Relationships ---
    store = db.relationship("Store", back_populates="products")

    def __repr__(self):
        return f"<Product {self.name} ({self.price})>"
