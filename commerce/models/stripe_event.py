"""Stripe event model (idempotency ledger).

Every webhook event is recorded by its Stripe event ID before any effect
is produced. The unique key on stripe_event_id is the concurrency guard:
two deliveries of the same event cannot both insert a row.

Lifecycle of a row:
    received  -> processed=False, processing_error=None
    failed    -> processed=False, processing_error set, attempts counted
    processed -> processed=True, processing_error=None, processed_at set
    dead      -> dead_lettered_at set; only a manual replay runs it again

The raw payload is stored verbatim so an operator can replay the event.
"""

import uuid

from commerce.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"
    __table_args__ = (
        db.CheckConstraint(
            "NOT (processed AND processing_error IS NOT NULL)",
            name="ck_stripe_events_processed_without_error",
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    raw_payload = db.Column(db.Text, nullable=True)
    processed = db.Column(db.Boolean, nullable=False, default=False)
    processing_error = db.Column(db.Text, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    received_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dead_lettered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_dead_lettered(self):
        return self.dead_lettered_at is not None

    def to_dict(self):
        return {
            "event_id": self.stripe_event_id,
            "event_type": self.event_type,
            "processed": self.processed,
            "processing_error": self.processing_error,
            "attempts": self.attempts,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "dead_lettered_at": (
                self.dead_lettered_at.isoformat() if self.dead_lettered_at else None
            ),
        }

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
