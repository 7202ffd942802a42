"""Account resolver: Stripe identities to internal billing records.

Maps a program-scoped Stripe customer ID and/or subscription ID to the
BillingAccount, its Subscription and the subscription's active
BillingAssignments (and through them, the funded profiles).

A subscription that is not stored yet raises SubscriptionNotFound rather
than a generic error: an `updated` event overtaking its `created` event is
a normal race and must come back as a retry.
"""

import logging
from dataclasses import dataclass, field

from tuition_sync.extensions import db
from tuition_sync.models.billing import (
    BillingAccount,
    BillingAssignment,
    Program,
    Subscription,
)
from tuition_sync.services.errors import (
    AccountNotFound,
    ProgramMismatch,
    SubscriptionNotFound,
)

logger = logging.getLogger(__name__)


@dataclass
class ResolvedAccount:
    account: BillingAccount
    subscription: Subscription | None = None
    assignments: list[BillingAssignment] = field(default_factory=list)

    @property
    def profile_ids(self):
        return sorted({a.profile_id for a in self.assignments})


def find_account(program, stripe_customer_id):
    if not stripe_customer_id:
        return None
    column = BillingAccount.customer_column(program)
    return BillingAccount.query.filter(column == stripe_customer_id).first()


def find_subscription(stripe_subscription_id, for_update=False):
    """Stored subscription by Stripe ID, or None.

    With for_update, the row is locked until the transaction ends so two
    events for one subscription reconcile its assignments one after the
    other.
    """
    if not stripe_subscription_id:
        return None
    query = Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def active_assignments(subscription):
    return (
        BillingAssignment.query
        .filter_by(subscription_id=subscription.id, is_active=True)
        .order_by(BillingAssignment.profile_id)
        .all()
    )


def get_or_create_account(program, stripe_customer_id, account_holder_id=None):
    """Get the BillingAccount for a customer, creating it when possible.

    Looks up by the program's customer ID first, then by account holder.
    Creates a new account only when an account holder is known. Flushes
    but does not commit: the caller owns the transaction.
    Raises AccountNotFound when neither lookup nor creation is possible.
    """
    program = Program.parse(program)
    account = find_account(program, stripe_customer_id)
    if account:
        return account

    if account_holder_id:
        account = BillingAccount.query.filter_by(
            account_holder_id=account_holder_id
        ).first()

    if account:
        existing = account.customer_id_for(program)
        if existing and existing != stripe_customer_id:
            logger.warning(
                f"Replacing {program.value} customer {existing} with "
                f"{stripe_customer_id} for holder {account_holder_id}"
            )
        account.set_customer_id(program, stripe_customer_id)
        db.session.flush()
        return account

    if not account_holder_id:
        raise AccountNotFound(
            f"No {program.value} billing account for customer {stripe_customer_id}",
            program=program.value,
            customer_id=stripe_customer_id,
        )

    account = BillingAccount(account_holder_id=account_holder_id)
    account.set_customer_id(program, stripe_customer_id)
    db.session.add(account)
    db.session.flush()
    logger.info(
        f"Created billing account for holder {account_holder_id} "
        f"({program.value} customer {stripe_customer_id})"
    )
    return account


def resolve(program, stripe_customer_id=None, stripe_subscription_id=None,
            for_update=False):
    """Resolve the account bundle for an event.

    With a subscription ID, loads the subscription and its active
    assignments; raises SubscriptionNotFound if it is not stored yet and
    ProgramMismatch if it belongs to the other program. Without one, looks
    the account up by customer and raises AccountNotFound if absent.
    for_update locks the subscription row for the rest of the transaction.
    """
    program = Program.parse(program)

    if stripe_subscription_id:
        subscription = find_subscription(stripe_subscription_id, for_update)
        if subscription is None:
            raise SubscriptionNotFound(
                f"Subscription {stripe_subscription_id} not found, will retry",
                program=program.value,
                subscription_id=stripe_subscription_id,
            )
        if subscription.program != program.value:
            raise ProgramMismatch(
                f"Subscription {stripe_subscription_id} belongs to "
                f"{subscription.program}, event came from {program.value}",
                subscription_id=stripe_subscription_id,
                stored_program=subscription.program,
                event_program=program.value,
            )
        if (stripe_customer_id
                and subscription.stripe_customer_id != stripe_customer_id):
            logger.warning(
                f"Subscription {stripe_subscription_id} stored for customer "
                f"{subscription.stripe_customer_id}, event says {stripe_customer_id}"
            )
        return ResolvedAccount(
            account=subscription.account,
            subscription=subscription,
            assignments=active_assignments(subscription),
        )

    account = find_account(program, stripe_customer_id)
    if account is None:
        raise AccountNotFound(
            f"No {program.value} billing account for customer {stripe_customer_id}",
            program=program.value,
            customer_id=stripe_customer_id,
        )
    return ResolvedAccount(account=account)
