"""Idempotency ledger: processed_events table.

begin_processing() inserts the (event_id, source) row and commits it
before any business write. The unique constraint makes the insert the
arbiter between concurrent deliveries of the same event: exactly one wins,
every other attempt sees ALREADY_HANDLED and acknowledges.

rollback() deletes the row again so a redelivery is processed. Only call it
for retryable failures, before anything outside the engine has observed
the event's effects.
"""

import enum
import logging

from sqlalchemy.exc import IntegrityError

from tuition_sync.extensions import db
from tuition_sync.models.billing import Program
from tuition_sync.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)


class LedgerOutcome(enum.Enum):
    PROCEED = "proceed"
    ALREADY_HANDLED = "already_handled"


def begin_processing(event_id, source, event_type, payload=None):
    """Claim an event for processing, keeping its verified body.

    Returns LedgerOutcome.PROCEED when this call inserted the row, or
    LedgerOutcome.ALREADY_HANDLED when the event was claimed before.
    """
    source = Program.parse(source).value
    db.session.add(ProcessedEvent(
        event_id=event_id,
        source=source,
        event_type=event_type,
        payload=payload,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Duplicate webhook event {event_id} ({source}), skipping")
        return LedgerOutcome.ALREADY_HANDLED
    return LedgerOutcome.PROCEED


def rollback(event_id, source):
    """Release a claimed event so the provider's retry is processed.

    Returns True if a row was deleted.
    """
    source = Program.parse(source).value
    deleted = ProcessedEvent.query.filter_by(
        event_id=event_id, source=source
    ).delete()
    db.session.commit()
    if deleted:
        logger.info(f"Released ledger entry {event_id} ({source}) for retry")
    return bool(deleted)


def get_entry(event_id, source):
    source = Program.parse(source).value
    return ProcessedEvent.query.filter_by(event_id=event_id, source=source).first()


def is_recorded(event_id, source):
    source = Program.parse(source).value
    return db.session.query(
        ProcessedEvent.query.filter_by(event_id=event_id, source=source).exists()
    ).scalar()
