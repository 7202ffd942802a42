"""Billing models.

- BillingAccount: one payer, holding one Stripe customer ID per program.
- Subscription: local mirror of a Stripe subscription, synced from webhooks.
  subscriptions.status is the source of truth for enrollment status.
- BillingAssignment: the share of a subscription that funds one profile.
"""

import enum
import uuid

from tuition_sync.extensions import db


class Program(str, enum.Enum):
    """Programs billed through their own Stripe account."""

    MAHAD = "mahad"
    DUGSI = "dugsi"

    @classmethod
    def parse(cls, value):
        """Accept a Program or its (case-insensitive) value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown program: {value!r}") from None


class BillingAccount(db.Model):
    __tablename__ = "billing_accounts"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # Person (or guardian for family billing) who pays
    account_holder_id = db.Column(db.String(255), unique=True, nullable=False)

    stripe_customer_id_mahad = db.Column(
        db.String(255), unique=True, nullable=True
    )
    stripe_customer_id_dugsi = db.Column(
        db.String(255), unique=True, nullable=True
    )
    payment_method_captured_mahad = db.Column(db.Boolean, default=False)
    payment_method_captured_at_mahad = db.Column(
        db.DateTime(timezone=True), nullable=True
    )
    payment_method_captured_dugsi = db.Column(db.Boolean, default=False)
    payment_method_captured_at_dugsi = db.Column(
        db.DateTime(timezone=True), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    subscriptions = db.relationship(
        "Subscription", back_populates="account", lazy="dynamic"
    )

    @staticmethod
    def customer_column(program):
        """The column holding this program's Stripe customer ID."""
        program = Program.parse(program)
        if program is Program.MAHAD:
            return BillingAccount.stripe_customer_id_mahad
        return BillingAccount.stripe_customer_id_dugsi

    def customer_id_for(self, program):
        return getattr(self, f"stripe_customer_id_{Program.parse(program).value}")

    def set_customer_id(self, program, stripe_customer_id):
        setattr(
            self,
            f"stripe_customer_id_{Program.parse(program).value}",
            stripe_customer_id,
        )

    def payment_method_captured_for(self, program):
        return bool(
            getattr(self, f"payment_method_captured_{Program.parse(program).value}")
        )

    def mark_payment_method_captured(self, program, captured_at):
        suffix = Program.parse(program).value
        setattr(self, f"payment_method_captured_{suffix}", True)
        setattr(self, f"payment_method_captured_at_{suffix}", captured_at)

    def __repr__(self):
        return f"<BillingAccount holder={self.account_holder_id}>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # -- Valid statuses (synced from Stripe) --
    STATUSES = [
        "incomplete",
        "incomplete_expired",
        "trialing",
        "active",
        "past_due",
        "paused",
        "canceled",
        "unpaid",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    billing_account_id = db.Column(
        db.String(36), db.ForeignKey("billing_accounts.id"), nullable=False
    )
    program = db.Column(db.String(20), nullable=False)  # mahad | dugsi
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    stripe_customer_id = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(50), nullable=False)
    amount = db.Column(db.Integer, nullable=False, default=0)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="usd")
    interval = db.Column(db.String(20), nullable=True)  # month | year | ...
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    # Stripe IDs this subscription replaced, oldest first
    previous_subscription_ids = db.Column(db.JSON, default=list)
    # Grace bookkeeping: set on entering past_due, cleared on leaving it
    past_due_since = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    account = db.relationship("BillingAccount", back_populates="subscriptions")
    assignments = db.relationship(
        "BillingAssignment", back_populates="subscription", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Subscription {self.stripe_subscription_id} ({self.status})>"


class BillingAssignment(db.Model):
    __tablename__ = "billing_assignments"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=False
    )
    profile_id = db.Column(db.String(255), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)  # minor units
    percentage = db.Column(db.Float, nullable=True)  # shared subscriptions only
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # At most one active share per (subscription, profile)
    __table_args__ = (
        db.Index(
            "uq_billing_assignment_active",
            "subscription_id",
            "profile_id",
            unique=True,
            postgresql_where=db.text("is_active"),
            sqlite_where=db.text("is_active"),
        ),
    )

    # --- Relationships ---
    subscription = db.relationship("Subscription", back_populates="assignments")

    def __repr__(self):
        state = "active" if self.is_active else "inactive"
        return f"<BillingAssignment profile={self.profile_id} {self.amount} ({state})>"
