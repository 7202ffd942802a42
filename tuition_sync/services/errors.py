"""Typed failures raised by the billing sync components.

Components raise these with enough context (ids, amounts, states) for the
classifier to decide a disposition. None of them decides retry vs. fatal
on its own: see tuition_sync.services.classifier.
"""


class BillingSyncError(Exception):
    """Base class. `context` is logged and surfaced with the disposition."""

    reason = "billing_sync_error"

    def __init__(self, message, **context):
        super().__init__(message)
        self.context = context


class SignatureInvalid(BillingSyncError):
    """Missing secret, missing header, malformed header or mismatch."""

    reason = "signature_invalid"


class InvalidPayload(BillingSyncError):
    """Verified body that does not fit the envelope for its event type."""

    reason = "invalid_payload"


class SubscriptionNotFound(BillingSyncError):
    """Referenced subscription not (yet) stored locally.

    Expected when an update overtakes the matching create.
    """

    reason = "subscription_not_found"


class AccountNotFound(BillingSyncError):
    """No billing account for the program-scoped Stripe customer."""

    reason = "account_not_found"


class ProgramMismatch(BillingSyncError):
    """Event for one program references a subscription of the other."""

    reason = "program_mismatch"


class AmountMismatch(BillingSyncError):
    """Stripe's charged amount disagrees with the rate calculator."""

    reason = "amount_mismatch"


class AllocationInvariantViolation(BillingSyncError):
    """Active assignment amounts exceed the subscription amount."""

    reason = "allocation_invariant_violation"


class StorageFailure(BillingSyncError):
    """Transaction timeout or write conflict; outcome unknown."""

    reason = "storage_failure"
