"""Stripe event model (processed-event log).

Every webhook event that finished processing is recorded by its Stripe
event ID. A redelivery of a recorded event is acknowledged without being
processed again. This sits in front of the order/commission guards; it
does not replace them, since Stripe may also emit distinct events that
describe the same payment.
"""

import uuid

from popstore.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "payment_intent.succeeded"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
