"""Validated envelopes for Stripe webhook payloads.

The raw event is validated once, right after signature verification, into
a ProviderEvent and then into one typed payload per category:

    customer.subscription.*   -> SubscriptionPayload
    invoice.*                 -> InvoicePayload
    checkout.session.*        -> CheckoutPayload

Everything downstream works with these models only, never with dicts.
"""

import json
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from tuition_sync.services.errors import InvalidPayload

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}
INVOICE_EVENTS = {
    "invoice.payment_succeeded",
    "invoice.paid",
    "invoice.payment_failed",
    "invoice.finalized",
}
CHECKOUT_EVENTS = {"checkout.session.completed"}

SubscriptionStatus = Literal[
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "paused",
    "canceled",
    "unpaid",
]


def _object_id(value):
    """Stripe sends either an ID string or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


StripeId = Annotated[str, BeforeValidator(_object_id)]
OptionalStripeId = Annotated[str | None, BeforeValidator(_object_id)]


# ── Event wrapper ────────────────────────────────


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")
    object: dict[str, Any]


class ProviderEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: datetime
    livemode: bool = False
    data: EventData

    @property
    def event_id(self):
        return self.id

    @property
    def event_type(self):
        return self.type

    @property
    def occurred_at(self):
        return self.created


# ── Subscription ─────────────────────────────────


class Recurring(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interval: str | None = None


class Price(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str | None = None
    unit_amount: int | None = None
    recurring: Recurring | None = None


class Plan(BaseModel):
    model_config = ConfigDict(extra="ignore")
    amount: int | None = None
    interval: str | None = None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")
    price: Price | None = None
    plan: Plan | None = None
    quantity: int = 1
    # Newer API versions moved the period bounds onto the item
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None


class ItemList(BaseModel):
    model_config = ConfigDict(extra="ignore")
    data: list[SubscriptionItem] = Field(default_factory=list)


class SubscriptionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(min_length=1)
    customer: StripeId = Field(min_length=1)
    status: SubscriptionStatus
    currency: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    items: ItemList = Field(default_factory=ItemList)
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value):
        return value or {}

    @model_validator(mode="after")
    def _check_profile_amounts(self):
        # Parse eagerly so a malformed override fails at the boundary
        self.profile_amount_overrides()
        return self

    @property
    def primary_item(self):
        return self.items.data[0] if self.items.data else None

    @property
    def amount(self):
        """Charged amount per period in minor units, or None if unpriced."""
        item = self.primary_item
        if item is None:
            return None
        unit_amount = None
        if item.price is not None:
            unit_amount = item.price.unit_amount
        if unit_amount is None and item.plan is not None:
            unit_amount = item.plan.amount
        if unit_amount is None:
            return None
        return unit_amount * max(item.quantity, 1)

    @property
    def interval(self):
        item = self.primary_item
        if item is None:
            return None
        if item.price is not None and item.price.recurring is not None:
            return item.price.recurring.interval
        if item.plan is not None:
            return item.plan.interval
        return None

    @property
    def period_start(self):
        if self.current_period_start is not None:
            return self.current_period_start
        item = self.primary_item
        return item.current_period_start if item else None

    @property
    def period_end(self):
        if self.current_period_end is not None:
            return self.current_period_end
        item = self.primary_item
        return item.current_period_end if item else None

    @property
    def account_holder_id(self):
        # Mahad checkouts tag the student, Dugsi checkouts the guardian
        return self.metadata.get("personId") or self.metadata.get("guardianPersonId")

    @property
    def replaces_subscription_id(self):
        return self.metadata.get("replacesSubscriptionId") or None

    def profile_ids(self):
        """Profiles funded by this subscription, as tagged at checkout."""
        raw = self.metadata.get("profileIds") or self.metadata.get("profileId") or ""
        seen = []
        for profile_id in (p.strip() for p in raw.split(",")):
            if profile_id and profile_id not in seen:
                seen.append(profile_id)
        return seen

    def profile_amount_overrides(self):
        """Explicit per-profile amounts from `profileAmounts=id:amount,...`."""
        raw = self.metadata.get("profileAmounts") or ""
        overrides = {}
        for pair in (p.strip() for p in raw.split(",")):
            if not pair:
                continue
            profile_id, sep, amount = pair.partition(":")
            if not sep or not profile_id.strip() or not amount.strip().isdigit():
                raise ValueError(f"Malformed profileAmounts entry: {pair!r}")
            overrides[profile_id.strip()] = int(amount)
        return overrides


# ── Invoice ──────────────────────────────────────


class LinePeriod(BaseModel):
    model_config = ConfigDict(extra="ignore")
    start: datetime | None = None
    end: datetime | None = None


class InvoiceLine(BaseModel):
    model_config = ConfigDict(extra="ignore")
    period: LinePeriod | None = None


class InvoiceLineList(BaseModel):
    model_config = ConfigDict(extra="ignore")
    data: list[InvoiceLine] = Field(default_factory=list)


class InvoicePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str | None = None
    customer: OptionalStripeId = None
    subscription: OptionalStripeId = None
    status: str | None = None
    amount_due: int | None = None
    amount_paid: int | None = None
    attempt_count: int | None = None
    period_end: datetime | None = None
    lines: InvoiceLineList = Field(default_factory=InvoiceLineList)

    @model_validator(mode="before")
    @classmethod
    def _subscription_from_parent(cls, data):
        # Newer API versions: invoice.parent.subscription_details.subscription
        if isinstance(data, dict) and not data.get("subscription"):
            parent = data.get("parent") or {}
            details = parent.get("subscription_details") or {}
            if details.get("subscription"):
                data = {**data, "subscription": details["subscription"]}
        return data

    @property
    def paid_until(self):
        """End of the service period this invoice pays for."""
        ends = [
            line.period.end
            for line in self.lines.data
            if line.period is not None and line.period.end is not None
        ]
        if ends:
            return max(ends)
        return self.period_end


# ── Checkout ─────────────────────────────────────


class CheckoutPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(min_length=1)
    mode: str | None = None
    customer: OptionalStripeId = None
    subscription: OptionalStripeId = None
    payment_intent: OptionalStripeId = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value):
        return value or {}

    @property
    def account_holder_id(self):
        return self.metadata.get("personId") or self.metadata.get("guardianPersonId")


# ── Parsing ──────────────────────────────────────


def _describe(error):
    return "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}"
        for e in error.errors()
    )


def parse_event(payload):
    """Validate a verified body into a ProviderEvent."""
    try:
        return ProviderEvent.model_validate(json.loads(payload))
    except json.JSONDecodeError as e:
        raise InvalidPayload(f"Body is not JSON: {e}") from None
    except ValidationError as e:
        raise InvalidPayload(f"Malformed event: {_describe(e)}") from None


def parse_payload(event):
    """Validate event.data.object for the event's category.

    Returns None for event types the engine does not handle.
    """
    if event.type in SUBSCRIPTION_EVENTS:
        model = SubscriptionPayload
    elif event.type in INVOICE_EVENTS:
        model = InvoicePayload
    elif event.type in CHECKOUT_EVENTS:
        model = CheckoutPayload
    else:
        return None

    try:
        return model.model_validate(event.data.object)
    except ValidationError as e:
        raise InvalidPayload(
            f"Malformed {event.type} payload: {_describe(e)}",
            event_id=event.id,
            event_type=event.type,
        ) from None


def subscription_payload_from_object(obj):
    """Validate a subscription fetched from the Stripe API."""
    try:
        return SubscriptionPayload.model_validate(obj)
    except ValidationError as e:
        raise InvalidPayload(f"Malformed subscription: {_describe(e)}") from None
