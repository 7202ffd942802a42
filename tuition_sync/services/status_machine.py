"""Subscription state machine.

Transitions are driven entirely by the status Stripe reports on each event;
the engine never infers one. Every Stripe status maps to exactly one
enrollment status:

    active                                 -> ENROLLED
    trialing, incomplete                   -> REGISTERED
    past_due                               -> ENROLLED (grace, never downgrade)
    paused                                 -> ON_LEAVE
    canceled, unpaid, incomplete_expired   -> WITHDRAWN
"""

import logging
from dataclasses import dataclass
from datetime import timedelta, timezone

from tuition_sync.services.enrollment_store import (
    ENROLLED,
    ON_LEAVE,
    REGISTERED,
    WITHDRAWN,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "active": ENROLLED,
    "trialing": REGISTERED,
    "incomplete": REGISTERED,
    "past_due": ENROLLED,
    "paused": ON_LEAVE,
    "canceled": WITHDRAWN,
    "unpaid": WITHDRAWN,
    "incomplete_expired": WITHDRAWN,
}

# Statuses that (re)activate funding
FUNDING_STATUSES = frozenset({"active", "trialing"})
TERMINAL_STATUSES = frozenset(
    status for status, internal in STATUS_MAP.items() if internal == WITHDRAWN
)
GRACE_STATUS = "past_due"


@dataclass(frozen=True)
class StateChange:
    previous_status: str | None
    status: str

    @property
    def changed(self):
        return self.previous_status != self.status

    @property
    def reactivated(self):
        """Back to a funding status from a terminal one."""
        return (
            self.previous_status in TERMINAL_STATUSES
            and self.status in FUNDING_STATUSES
        )

    @property
    def internal_status(self):
        return internal_status_for(self.status)


def internal_status_for(external_status):
    """Map a Stripe subscription status to the enrollment status."""
    try:
        return STATUS_MAP[external_status]
    except KeyError:
        raise ValueError(f"Unknown subscription status: {external_status!r}") from None


def as_utc(value):
    # SQLite hands timezone-aware columns back naive
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def apply_subscription_state(subscription, status, now, period_start=None,
                             period_end=None, paid_until=None,
                             replaces_subscription_id=None):
    """Write Stripe's view of the subscription onto the local row.

    Also keeps the grace bookkeeping: past_due_since is stamped when the
    subscription enters past_due and cleared as soon as it leaves it.
    Returns a StateChange. Does not flush.
    """
    internal_status_for(status)  # reject unknown statuses before writing

    change = StateChange(previous_status=subscription.status, status=status)
    subscription.status = status

    if period_start is not None:
        subscription.current_period_start = period_start
    if period_end is not None:
        subscription.current_period_end = period_end
    if paid_until is not None:
        subscription.paid_until = paid_until

    if (replaces_subscription_id
            and replaces_subscription_id != subscription.stripe_subscription_id):
        previous = list(subscription.previous_subscription_ids or [])
        if replaces_subscription_id not in previous:
            # Reassign so the JSON column is marked dirty
            subscription.previous_subscription_ids = previous + [replaces_subscription_id]

    if status == GRACE_STATUS:
        if subscription.past_due_since is None:
            subscription.past_due_since = now
    elif subscription.past_due_since is not None:
        logger.info(
            f"Subscription {subscription.stripe_subscription_id} left grace "
            f"period ({change.previous_status} -> {status})"
        )
        subscription.past_due_since = None

    return change


def grace_exceeded(subscription, now, max_grace_days):
    """True when a past_due subscription has outlived the grace policy."""
    if subscription.status != GRACE_STATUS or subscription.past_due_since is None:
        return False
    if max_grace_days is None:
        return False
    deadline = as_utc(subscription.past_due_since) + timedelta(days=max_grace_days)
    return as_utc(now) > deadline


def apply_profile_statuses(profile_ids, external_status, enrollment_store, now,
                           reason=None, program=None):
    """Move every funded profile to the status mapped from `external_status`.

    Writes only when the status differs. The end date is stamped only on a
    transition into WITHDRAWN, so re-applying a terminal status leaves the
    original end date alone. With a program, only that program's
    enrollments are touched. Returns [(profile_id, old, new), ...].
    """
    target = internal_status_for(external_status)
    transitions = []
    for profile_id in sorted(set(profile_ids)):
        enrollment = enrollment_store.get_active_enrollment(
            profile_id, program=program
        )
        if enrollment is None:
            logger.warning(f"No active enrollment for profile {profile_id}")
            continue
        old_status = enrollment.status
        if old_status == target:
            continue
        end_date = now.date() if target == WITHDRAWN else None
        enrollment_store.update_enrollment_status(
            enrollment.id, target, reason=reason, end_date=end_date
        )
        transitions.append((profile_id, old_status, target))
    return transitions
