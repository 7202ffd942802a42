"""Append-only history: one row per reconciled event."""

from tuition_sync.extensions import db
from tuition_sync.models.billing import Program
from tuition_sync.models.history import SubscriptionHistory


def record(event_id, source, event_type, occurred_at, subscription=None,
           status=None, amount=None, note=None):
    """Append a SubscriptionHistory row (flushed, not committed).

    Call after all state and allocation writes of the event succeeded so a
    failed event leaves no trace here.
    """
    entry = SubscriptionHistory(
        subscription_id=subscription.id if subscription is not None else None,
        event_id=event_id,
        source=Program.parse(source).value,
        event_type=event_type,
        status=status,
        amount=amount,
        note=note,
        occurred_at=occurred_at,
    )
    db.session.add(entry)
    db.session.flush()
    return entry
