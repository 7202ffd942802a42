"""Reconciliation engine: one Stripe delivery in, one disposition out.

Responsible for:
- Verifying the delivery with the program's own signing secret
- Validating the body into typed envelopes
- Claiming the event in the idempotency ledger
- Checking the charged amount against the rate calculator
- Resolving account / subscription / profiles
- Applying the state machine, allocation, enrollment statuses and history
  in one transaction
- Turning any failure into Accepted / RetryRequested / RejectedFatal, and
  releasing the ledger entry exactly when the result is a retry
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe

from tuition_sync.extensions import db
from tuition_sync.models.billing import Program, Subscription
from tuition_sync.services import allocator, history, ledger
from tuition_sync.services.classifier import (
    STORAGE_ERRORS,
    Accepted,
    Disposition,
    RejectedFatal,
    classify,
    is_retry,
)
from tuition_sync.services.clients import (
    ProgramClients,
    WebhookSecrets,
    retrieve_subscription,
)
from tuition_sync.services.enrollment_store import WITHDRAWN, SqlEnrollmentStore
from tuition_sync.services.envelopes import (
    parse_event,
    parse_payload,
    subscription_payload_from_object,
)
from tuition_sync.services.errors import (
    AmountMismatch,
    BillingSyncError,
    InvalidPayload,
    SignatureInvalid,
    SubscriptionNotFound,
)
from tuition_sync.services.rates import MetadataRateCalculator
from tuition_sync.services.resolver import (
    active_assignments,
    find_account,
    find_subscription,
    get_or_create_account,
    resolve,
)
from tuition_sync.services.signature import DEFAULT_TOLERANCE, verify_signature
from tuition_sync.services.status_machine import (
    FUNDING_STATUSES,
    apply_profile_statuses,
    apply_subscription_state,
    as_utc,
    grace_exceeded,
)

logger = logging.getLogger(__name__)

MANUAL_SYNC_EVENT = "manual.sync"


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class InboundDelivery:
    """What the transport hands over: program, untouched body, header."""

    program: Program
    raw_body: bytes
    signature_header: str | None


@dataclass(frozen=True)
class EventContext:
    program: Program
    event_id: str
    event_type: str
    occurred_at: datetime


class ReconciliationEngine:
    def __init__(self, clients, webhook_secrets, rate_calculator=None,
                 enrollment_store=None, clock=utcnow,
                 tolerance=DEFAULT_TOLERANCE, max_grace_days=30,
                 default_currency="usd"):
        self.clients = clients
        self.webhook_secrets = webhook_secrets
        self.rate_calculator = rate_calculator or MetadataRateCalculator()
        self.enrollment_store = enrollment_store or SqlEnrollmentStore()
        self.clock = clock
        self.tolerance = tolerance
        self.max_grace_days = max_grace_days
        self.default_currency = default_currency

        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.finalized": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    # ──────────────────────────────────────────────
    # Entry points
    # ──────────────────────────────────────────────

    def process(self, delivery: InboundDelivery,
                check_timestamp=True) -> Disposition:
        """Reconcile one webhook delivery. Returns a Disposition.

        check_timestamp=False skips the signature's age check so an
        operator can replay a saved delivery; the signature itself is
        still verified.
        """
        program = Program.parse(delivery.program)

        try:
            verified = verify_signature(
                program,
                delivery.raw_body,
                delivery.signature_header,
                self.webhook_secrets.for_program(program),
                self.tolerance if check_timestamp else None,
            )
        except BillingSyncError as e:
            return self._reject(program, None, e)
        return self._reconcile(program, verified.payload)

    def reprocess_stored(self, program, event_id) -> Disposition | None:
        """Run a retained ledger entry's stored body through the engine again.

        The body was verified when it was first received. The entry is
        released and claimed again by the reprocessing. Returns None when
        no entry is stored for the event.
        """
        program = Program.parse(program)
        entry = ledger.get_entry(event_id, program)
        if entry is None:
            return None
        if not entry.payload:
            return RejectedFatal(
                "payload_not_stored",
                {"event_id": event_id, "program": program.value},
            )
        payload = entry.payload
        ledger.rollback(event_id, program)
        logger.info(f"Reprocessing stored event {event_id} ({program.value})")
        return self._reconcile(program, payload)

    def _reconcile(self, program, body):
        try:
            event = parse_event(body)
            payload = parse_payload(event)
        except BillingSyncError as e:
            # Nothing claimed yet, nothing to release
            return self._reject(program, None, e)

        logger.info(f"Received {event.type} {event.id} ({program.value})")

        try:
            outcome = ledger.begin_processing(
                event.id, program, event.type, payload=body
            )
        except STORAGE_ERRORS as e:
            db.session.rollback()
            logger.warning(f"Could not claim event {event.id}: {e}")
            return classify(e)
        if outcome is ledger.LedgerOutcome.ALREADY_HANDLED:
            return Accepted("already_processed")

        if payload is None:
            logger.info(f"Unhandled event type {event.type}, acknowledged")
            return Accepted("ignored")

        ctx = EventContext(
            program=program,
            event_id=event.id,
            event_type=event.type,
            occurred_at=event.occurred_at,
        )
        try:
            detail = self._handlers[event.type](ctx, payload)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            disposition = self._fail(ctx, e)
            if is_retry(disposition):
                self._release(ctx)
            return disposition

        logger.info(f"Processed {event.type} {event.id} ({program.value}): {detail}")
        return Accepted(detail)

    def sync_subscription(self, program, subscription_id) -> Disposition:
        """Pull a subscription from Stripe and reconcile it.

        Manual repair path: no ledger entry, history type manual.sync.
        """
        program = Program.parse(program)
        ctx = EventContext(
            program=program,
            event_id=f"sync_{subscription_id}_{int(self.clock().timestamp())}",
            event_type=MANUAL_SYNC_EVENT,
            occurred_at=self.clock(),
        )
        try:
            client = self.clients.for_program(program)
            try:
                obj = retrieve_subscription(client, subscription_id)
            except stripe.InvalidRequestError as e:
                raise SubscriptionNotFound(
                    f"Stripe has no subscription {subscription_id}: {e}",
                    program=program.value,
                    subscription_id=subscription_id,
                ) from None
            payload = subscription_payload_from_object(obj)
            if find_subscription(payload.id) is None:
                detail = self._handle_subscription_created(ctx, payload)
            else:
                detail = self._handle_subscription_updated(ctx, payload)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            return self._fail(ctx, e)
        return Accepted(detail)

    def release_event(self, program, event_id):
        """Drop a retained ledger entry so the event can be processed again."""
        return ledger.rollback(event_id, program)

    # ──────────────────────────────────────────────
    # Failure handling
    # ──────────────────────────────────────────────

    def _reject(self, program, ctx, exc):
        disposition = classify(exc)
        if isinstance(exc, SignatureInvalid):
            logger.warning(f"Rejected {program.value} webhook: {exc}")
        else:
            event = f"{ctx.event_type} {ctx.event_id}" if ctx else "delivery"
            logger.error(
                f"Rejected {program.value} {event}: {disposition.reason} "
                f"{exc} {disposition.context}"
            )
        return disposition

    def _fail(self, ctx, exc):
        disposition = classify(exc)
        if isinstance(disposition, RejectedFatal):
            return self._reject(ctx.program, ctx, exc)
        if isinstance(exc, BillingSyncError) or isinstance(exc, STORAGE_ERRORS):
            logger.warning(
                f"Retry requested for {ctx.event_type} {ctx.event_id} "
                f"({ctx.program.value}): {disposition.reason} {exc}"
            )
        else:
            logger.error(
                f"Error handling {ctx.event_type} {ctx.event_id}: {exc}",
                exc_info=True,
            )
        return disposition

    def _release(self, ctx):
        try:
            ledger.rollback(ctx.event_id, ctx.program)
        except STORAGE_ERRORS as e:
            db.session.rollback()
            logger.error(
                f"Could not release ledger entry {ctx.event_id} "
                f"({ctx.program.value}); the retry will be seen as a duplicate: {e}"
            )

    # ──────────────────────────────────────────────
    # Checks
    # ──────────────────────────────────────────────

    def _check_amount(self, ctx, payload):
        expected = self.rate_calculator.expected_amount(ctx.program, payload.metadata)
        if expected is None:
            return
        if payload.amount != expected:
            raise AmountMismatch(
                f"Subscription {payload.id} charges {payload.amount}, "
                f"expected {expected}",
                subscription_id=payload.id,
                reported_amount=payload.amount,
                expected_amount=expected,
            )

    def _check_fundable(self, payload):
        if payload.profile_ids() and not (payload.amount and payload.amount > 0):
            raise InvalidPayload(
                f"Subscription {payload.id} funds profiles but has no amount",
                subscription_id=payload.id,
                profile_ids=payload.profile_ids(),
            )

    # ──────────────────────────────────────────────
    # Subscription events
    # ──────────────────────────────────────────────

    def _handle_subscription_created(self, ctx, payload):
        """customer.subscription.created

        A created event for a subscription we already store (redelivery
        under a new event ID, or a sync got there first) is applied as an
        update.
        """
        if find_subscription(payload.id, for_update=True) is not None:
            return self._handle_subscription_updated(ctx, payload)

        self._check_amount(ctx, payload)
        self._check_fundable(payload)

        # Created can overtake checkout: fall back to the holder in metadata
        account = get_or_create_account(
            ctx.program, payload.customer, payload.account_holder_id
        )
        subscription = Subscription(
            billing_account_id=account.id,
            program=ctx.program.value,
            stripe_subscription_id=payload.id,
            stripe_customer_id=payload.customer,
            previous_subscription_ids=[],
        )
        self._apply(ctx, subscription, payload, payload.status)
        return "created"

    def _handle_subscription_updated(self, ctx, payload):
        """customer.subscription.updated

        An update for a subscription we have not stored yet raises
        SubscriptionNotFound: the created event is still on its way.
        """
        self._check_amount(ctx, payload)
        self._check_fundable(payload)
        resolved = resolve(
            ctx.program, payload.customer, payload.id, for_update=True
        )
        self._apply(ctx, resolved.subscription, payload, payload.status)
        return "updated"

    def _handle_subscription_deleted(self, ctx, payload):
        """customer.subscription.deleted always ends in canceled."""
        resolved = resolve(
            ctx.program, payload.customer, payload.id, for_update=True
        )
        self._apply(ctx, resolved.subscription, payload, "canceled")
        return "canceled"

    def _apply(self, ctx, subscription, payload, status):
        """Write one subscription event: state, funding, profiles, history."""
        at = ctx.occurred_at
        paid_until = payload.period_end if status in FUNDING_STATUSES else None

        change = apply_subscription_state(
            subscription,
            status,
            now=at,
            period_start=payload.period_start,
            period_end=payload.period_end,
            paid_until=paid_until,
            replaces_subscription_id=payload.replaces_subscription_id,
        )
        previous_amount = subscription.amount
        if payload.amount is not None:
            subscription.amount = payload.amount
        elif subscription.amount is None:
            subscription.amount = 0
        subscription.currency = (
            payload.currency or subscription.currency or self.default_currency
        ).lower()
        if payload.interval:
            subscription.interval = payload.interval
        db.session.add(subscription)
        db.session.flush()

        reason = f"Stripe subscription {subscription.stripe_subscription_id} {status}"
        if change.internal_status == WITHDRAWN:
            funded = [a.profile_id for a in active_assignments(subscription)]
            apply_profile_statuses(
                funded, status, self.enrollment_store, at,
                reason=reason, program=ctx.program,
            )
            allocator.deactivate_all(subscription, at)
        else:
            allocator.allocate(
                subscription,
                payload.profile_ids(),
                at,
                overrides=payload.profile_amount_overrides(),
                reactivate=change.reactivated,
                resplit=previous_amount != subscription.amount,
            )
            funded = [a.profile_id for a in active_assignments(subscription)]
            apply_profile_statuses(
                funded, status, self.enrollment_store, at,
                reason=reason, program=ctx.program,
            )

        allocator.check_invariant(subscription)

        note = None
        if grace_exceeded(subscription, self.clock(), self.max_grace_days):
            note = (
                f"past_due since {subscription.past_due_since:%Y-%m-%d}, "
                f"over the {self.max_grace_days}-day grace period"
            )
            logger.warning(
                f"Subscription {subscription.stripe_subscription_id} "
                f"({ctx.program.value}) {note}"
            )

        history.record(
            ctx.event_id,
            ctx.program,
            ctx.event_type,
            at,
            subscription=subscription,
            status=subscription.status,
            amount=subscription.amount,
            note=note,
        )
        if change.changed:
            logger.info(
                f"Subscription {subscription.stripe_subscription_id}: "
                f"{change.previous_status} -> {change.status}"
            )

    # ──────────────────────────────────────────────
    # Invoice events
    # ──────────────────────────────────────────────

    def _handle_invoice_paid(self, ctx, payload):
        """invoice.payment_succeeded / invoice.paid / invoice.finalized

        Moves paid_until forward to the end of the invoiced period. Never
        moves it back, so a late finalized event cannot undo a payment.
        """
        if not payload.subscription:
            logger.info(f"Invoice {payload.id} has no subscription, skipping")
            return "no_subscription"

        resolved = resolve(
            ctx.program, payload.customer, payload.subscription, for_update=True
        )
        subscription = resolved.subscription

        paid_until = payload.paid_until
        current = as_utc(subscription.paid_until)
        if paid_until is not None and (current is None or paid_until > current):
            subscription.paid_until = paid_until
            db.session.flush()

        amount = payload.amount_paid
        if amount is None or ctx.event_type == "invoice.finalized":
            amount = payload.amount_due
        history.record(
            ctx.event_id,
            ctx.program,
            ctx.event_type,
            ctx.occurred_at,
            subscription=subscription,
            status=subscription.status,
            amount=amount,
        )
        return "paid_until_updated"

    def _handle_payment_failed(self, ctx, payload):
        """invoice.payment_failed

        History only. The status change (past_due, unpaid) arrives as its
        own customer.subscription.updated event.
        """
        if not payload.subscription:
            logger.info(f"Invoice {payload.id} has no subscription, skipping")
            return "no_subscription"

        resolved = resolve(
            ctx.program, payload.customer, payload.subscription, for_update=True
        )
        subscription = resolved.subscription
        note = None
        if payload.attempt_count:
            note = f"attempt {payload.attempt_count}"
        history.record(
            ctx.event_id,
            ctx.program,
            ctx.event_type,
            ctx.occurred_at,
            subscription=subscription,
            status=subscription.status,
            amount=payload.amount_due,
            note=note,
        )
        logger.warning(
            f"Payment failed for {subscription.stripe_subscription_id} "
            f"({ctx.program.value}), invoice {payload.id}"
        )
        return "payment_failed_recorded"

    # ──────────────────────────────────────────────
    # Checkout
    # ──────────────────────────────────────────────

    def _handle_checkout_completed(self, ctx, payload):
        """checkout.session.completed

        Links the program's Stripe customer to the account holder and marks
        the payment method captured. Without a holder in metadata and no
        account for the customer, the session needs manual linking.
        """
        if not payload.customer:
            logger.warning(
                f"Checkout {payload.id} has no customer, manual linking required"
            )
            return "manual_linking_required"

        holder = payload.account_holder_id
        if not holder and find_account(ctx.program, payload.customer) is None:
            logger.warning(
                f"Checkout {payload.id}: no account holder for customer "
                f"{payload.customer}, manual linking required"
            )
            return "manual_linking_required"

        account = get_or_create_account(ctx.program, payload.customer, holder)
        account.mark_payment_method_captured(ctx.program, self.clock())
        db.session.flush()

        history.record(
            ctx.event_id,
            ctx.program,
            ctx.event_type,
            ctx.occurred_at,
            subscription=find_subscription(payload.subscription),
        )
        return "payment_method_captured"


def build_engine(config):
    """Build the engine from a Flask config mapping."""
    return ReconciliationEngine(
        clients=ProgramClients.from_config(config),
        webhook_secrets=WebhookSecrets.from_config(config),
        rate_calculator=MetadataRateCalculator(),
        enrollment_store=SqlEnrollmentStore(),
        tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", DEFAULT_TOLERANCE),
        max_grace_days=config.get("BILLING_MAX_GRACE_DAYS", 30),
        default_currency=config.get("DEFAULT_CURRENCY", "usd"),
    )
