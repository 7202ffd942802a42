"""Subscription history model.

Append-only audit trail: one row per successfully reconciled Stripe event.
Written by the engine, read only by people debugging billing.
"""

import uuid

from tuition_sync.extensions import db


class SubscriptionHistory(db.Model):
    __tablename__ = "subscription_history"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=True
    )  # null for checkout events that carry no subscription
    event_id = db.Column(db.String(255), nullable=False)
    source = db.Column(db.String(20), nullable=False)
    event_type = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(50), nullable=True)  # resulting status
    amount = db.Column(db.Integer, nullable=True)
    note = db.Column(db.Text, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)
    recorded_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscription = db.relationship("Subscription")

    def __repr__(self):
        return f"<SubscriptionHistory {self.event_type} ({self.status})>"
