"""Processed event model (idempotency ledger).

Every webhook event is recorded by its Stripe event ID and the program
(source) whose account sent it. The row is inserted before any business
processing; a unique-key collision means the event was already handled or
is in flight, and the delivery is acknowledged without reprocessing.
"""

import uuid

from tuition_sync.extensions import db


class ProcessedEvent(db.Model):
    __tablename__ = "processed_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(db.String(255), nullable=False)  # e.g. "evt_1Abc..."
    source = db.Column(db.String(20), nullable=False)  # mahad | dugsi
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "customer.subscription.updated"
    # Verified body as received, kept for operator reprocessing
    payload = db.Column(db.Text, nullable=True)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint("event_id", "source", name="uq_processed_event_source"),
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.event_id} ({self.source}, {self.event_type})>"
