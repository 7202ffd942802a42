"""Error classifier. Maps a failure to the caller-visible disposition.

Three outcomes:
    Accepted        event processed (or already handled): acknowledge.
    RetryRequested  transient (ordering race, write conflict): the ledger
                    entry is rolled back and the provider should redeliver.
    RejectedFatal   needs a human (bad signature, amount mismatch, broken
                    allocation): the ledger entry stays, no redelivery.

The transport maps these to HTTP statuses (200 / 500 / 400).
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from tuition_sync.services.errors import (
    AccountNotFound,
    AllocationInvariantViolation,
    AmountMismatch,
    BillingSyncError,
    InvalidPayload,
    ProgramMismatch,
    SignatureInvalid,
    StorageFailure,
    SubscriptionNotFound,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    detail: str = "processed"

    http_status = 200


@dataclass(frozen=True)
class RetryRequested:
    reason: str
    context: dict = field(default_factory=dict)

    http_status = 500


@dataclass(frozen=True)
class RejectedFatal:
    reason: str
    context: dict = field(default_factory=dict)

    http_status = 400


Disposition = Accepted | RetryRequested | RejectedFatal

FATAL_ERRORS = (
    SignatureInvalid,
    InvalidPayload,
    ProgramMismatch,
    AmountMismatch,
    AllocationInvariantViolation,
)

RETRYABLE_ERRORS = (
    SubscriptionNotFound,
    AccountNotFound,
    StorageFailure,
)

# Raised by the database while the business transaction is in flight
STORAGE_ERRORS = (
    OperationalError,
    IntegrityError,
    DBAPIError,
    StaleDataError,
    TimeoutError,
)


def classify(exc):
    """Return the Disposition for a failure raised while reconciling."""
    if isinstance(exc, FATAL_ERRORS):
        return RejectedFatal(exc.reason, dict(exc.context))
    if isinstance(exc, RETRYABLE_ERRORS):
        return RetryRequested(exc.reason, dict(exc.context))
    if isinstance(exc, STORAGE_ERRORS):
        return RetryRequested(StorageFailure.reason, {"error": str(exc)})
    if isinstance(exc, BillingSyncError):
        return RetryRequested(exc.reason, dict(exc.context))
    # Unknown outcome: the ledger deduplicates a redelivery if we did commit.
    logger.error(f"Unclassified error during reconciliation: {exc!r}")
    return RetryRequested("unexpected_error", {"error": str(exc)})


def is_retry(disposition):
    return isinstance(disposition, RetryRequested)


def is_fatal(disposition):
    return isinstance(disposition, RejectedFatal)
