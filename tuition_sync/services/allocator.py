"""Assignment allocator: splits one subscription across its profiles.

Responsible for:
- Computing per-profile amounts (explicit overrides, else an equal split
  whose remainder goes to the lexicographically-first profile)
- Creating missing (subscription, profile) assignments, never duplicating
  an existing pair
- Reactivating assignments when a subscription comes back to life
- Dropping profiles the subscription no longer lists and re-splitting the
  remaining shares when the amount or the profile set changes
- Moving a profile's funding: its assignment on any other subscription is
  deactivated, never deleted
- Enforcing sum(active amounts) <= subscription.amount before commit
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import func

from tuition_sync.extensions import db
from tuition_sync.models.billing import BillingAssignment
from tuition_sync.services.errors import AllocationInvariantViolation

logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    created: list[str] = field(default_factory=list)
    reactivated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)  # assignment IDs elsewhere
    resplit: bool = False

    @property
    def membership_changed(self):
        return bool(self.created or self.reactivated or self.dropped)


def split_amounts(total, profile_ids, overrides=None):
    """Distribute `total` minor units over `profile_ids`.

    Profiles with an override get exactly that amount; the rest share what
    is left equally, the remainder going to the first profile in sorted
    order so the shares add up to the total.

    Example:
        split_amounts(10000, ["b", "a", "c"])  # {"a": 3334, "b": 3333, "c": 3333}
    """
    ordered = sorted(set(profile_ids))
    if not ordered:
        raise ValueError("At least one profile ID is required")

    overrides = {
        profile_id: amount
        for profile_id, amount in (overrides or {}).items()
        if profile_id in ordered
    }
    amounts = dict(overrides)

    sharing = [p for p in ordered if p not in overrides]
    if sharing:
        remaining = max(total - sum(overrides.values()), 0)
        base, remainder = divmod(remaining, len(sharing))
        for index, profile_id in enumerate(sharing):
            amounts[profile_id] = base + (remainder if index == 0 else 0)
    return amounts


def _release_other_funding(profile_id, subscription, today):
    """Deactivate the profile's active assignments on other subscriptions."""
    released = (
        BillingAssignment.query
        .filter(
            BillingAssignment.profile_id == profile_id,
            BillingAssignment.subscription_id != subscription.id,
            BillingAssignment.is_active.is_(True),
        )
        .all()
    )
    for assignment in released:
        assignment.is_active = False
        assignment.end_date = today
        logger.info(
            f"Profile {profile_id} funding moved to "
            f"{subscription.stripe_subscription_id}; deactivated assignment "
            f"{assignment.id}"
        )
    return [a.id for a in released]


def _funded_elsewhere(profile_id, subscription):
    return db.session.query(
        BillingAssignment.query.filter(
            BillingAssignment.profile_id == profile_id,
            BillingAssignment.subscription_id != subscription.id,
            BillingAssignment.is_active.is_(True),
        ).exists()
    ).scalar()


def last_funded_profiles(subscription):
    """Profiles whose funding by `subscription` ended most recently.

    These are the assignments switched off together when the subscription
    last went terminal. Profiles that another subscription funds since
    then are left out.
    """
    inactive = BillingAssignment.query.filter_by(
        subscription_id=subscription.id, is_active=False
    ).all()
    ended = [a.end_date for a in inactive if a.end_date is not None]
    if not ended:
        return []
    last = max(ended)
    return sorted({
        a.profile_id
        for a in inactive
        if a.end_date == last and not _funded_elsewhere(a.profile_id, subscription)
    })


def allocate(subscription, profile_ids, now, overrides=None, reactivate=False,
             resplit=False, notes=None):
    """Bring the subscription's active assignments in line with an event.

    - A profile in `profile_ids` without any pair gets a new assignment.
    - Inactive pairs are switched back on only when `reactivate` is set.
      A reactivation also restores the profiles the subscription funded
      until it last went terminal, whether or not the event lists them.
    - When `profile_ids` is non-empty, active pairs for profiles it no
      longer lists are deactivated. An empty list leaves them alone.
    - Active shares are re-split over subscription.amount after a
      membership change, when `resplit` is set (the amount changed), or
      when they add up to more than the amount.

    Flushes; the caller commits.
    """
    result = AllocationResult()
    today = now.date()
    requested = set(profile_ids or ())

    pairs = BillingAssignment.query.filter_by(
        subscription_id=subscription.id
    ).all()
    active = {a.profile_id: a for a in pairs if a.is_active}

    wanted = set(requested)
    if reactivate:
        wanted.update(last_funded_profiles(subscription))

    if requested:
        for profile_id in sorted(set(active) - wanted):
            assignment = active.pop(profile_id)
            assignment.is_active = False
            assignment.end_date = today
            result.dropped.append(profile_id)

    for profile_id in sorted(wanted):
        if profile_id in active:
            result.unchanged.append(profile_id)
            continue

        previous = [a for a in pairs if a.profile_id == profile_id]
        if previous:
            if not reactivate:
                result.unchanged.append(profile_id)
                continue
            assignment = max(previous, key=lambda a: a.end_date or a.start_date)
            assignment.is_active = True
            assignment.end_date = None
            result.reactivated.append(profile_id)
        else:
            assignment = BillingAssignment(
                subscription_id=subscription.id,
                profile_id=profile_id,
                amount=0,
                is_active=True,
                start_date=today,
                notes=notes,
            )
            db.session.add(assignment)
            result.created.append(profile_id)

        result.released.extend(
            _release_other_funding(profile_id, subscription, today)
        )
        active[profile_id] = assignment

    total = subscription.amount or 0
    result.resplit = bool(active) and (
        result.membership_changed
        or resplit
        or sum(a.amount or 0 for a in active.values()) > total
    )
    if result.resplit:
        amounts = split_amounts(total, list(active), overrides)
        shared = len(amounts) > 1
        for profile_id, assignment in active.items():
            assignment.amount = amounts[profile_id]
            assignment.percentage = None
            if shared and total:
                assignment.percentage = round(amounts[profile_id] / total * 100, 2)

    db.session.flush()
    if result.membership_changed or result.resplit:
        logger.info(
            f"Allocated {subscription.stripe_subscription_id}: "
            f"created={result.created} reactivated={result.reactivated} "
            f"dropped={result.dropped} resplit={result.resplit}"
        )
    return result


def deactivate_all(subscription, now):
    """Deactivate every active assignment of the subscription.

    Returns the profile IDs that lost funding.
    """
    assignments = BillingAssignment.query.filter_by(
        subscription_id=subscription.id, is_active=True
    ).all()
    for assignment in assignments:
        assignment.is_active = False
        assignment.end_date = now.date()
    db.session.flush()
    return sorted(a.profile_id for a in assignments)


def allocated_total(subscription):
    total = (
        db.session.query(func.coalesce(func.sum(BillingAssignment.amount), 0))
        .filter(
            BillingAssignment.subscription_id == subscription.id,
            BillingAssignment.is_active.is_(True),
        )
        .scalar()
    )
    return int(total or 0)


def check_invariant(subscription):
    """Raise AllocationInvariantViolation if active shares exceed the amount."""
    db.session.flush()
    allocated = allocated_total(subscription)
    if allocated > (subscription.amount or 0):
        raise AllocationInvariantViolation(
            f"Assignments for {subscription.stripe_subscription_id} total "
            f"{allocated} but the subscription charges {subscription.amount}",
            subscription_id=subscription.stripe_subscription_id,
            allocated=allocated,
            amount=subscription.amount,
        )
    return allocated
