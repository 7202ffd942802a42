"""Tests for the account resolver."""

from datetime import date

import pytest

from tuition_sync.extensions import db
from tuition_sync.models.billing import BillingAccount, BillingAssignment, Subscription
from tuition_sync.services.errors import (
    AccountNotFound,
    ProgramMismatch,
    SubscriptionNotFound,
)
from tuition_sync.services.resolver import get_or_create_account, resolve


def _seed_subscription(program="mahad"):
    account = BillingAccount(
        account_holder_id="person_001", stripe_customer_id_mahad="cus_mahad_001"
    )
    db.session.add(account)
    db.session.flush()
    sub = Subscription(
        billing_account_id=account.id,
        program=program,
        stripe_subscription_id="sub_res_001",
        stripe_customer_id="cus_mahad_001",
        status="active",
        amount=20000,
        previous_subscription_ids=[],
    )
    db.session.add(sub)
    db.session.flush()
    for profile_id, active in (("profile_b", True), ("profile_a", True), ("old", False)):
        db.session.add(BillingAssignment(
            subscription_id=sub.id, profile_id=profile_id, amount=10000,
            is_active=active, start_date=date(2026, 9, 1),
        ))
    db.session.commit()
    return account, sub


class TestResolve:

    def test_by_subscription(self):
        account, sub = _seed_subscription()

        resolved = resolve("mahad", "cus_mahad_001", "sub_res_001")

        assert resolved.account.id == account.id
        assert resolved.subscription.id == sub.id
        assert resolved.profile_ids == ["profile_a", "profile_b"]

    def test_unknown_subscription(self):
        with pytest.raises(SubscriptionNotFound) as exc_info:
            resolve("mahad", "cus_mahad_001", "sub_missing")

        assert exc_info.value.context["subscription_id"] == "sub_missing"

    def test_other_program(self):
        _seed_subscription(program="mahad")

        with pytest.raises(ProgramMismatch):
            resolve("dugsi", "cus_mahad_001", "sub_res_001")

    def test_by_customer(self):
        account, _ = _seed_subscription()

        resolved = resolve("mahad", stripe_customer_id="cus_mahad_001")

        assert resolved.account.id == account.id
        assert resolved.subscription is None

    def test_customer_is_program_scoped(self):
        _seed_subscription()

        with pytest.raises(AccountNotFound):
            resolve("dugsi", stripe_customer_id="cus_mahad_001")


class TestGetOrCreateAccount:

    def test_existing_by_customer(self):
        account, _ = _seed_subscription()

        assert get_or_create_account("mahad", "cus_mahad_001").id == account.id

    def test_links_second_program_to_same_holder(self):
        account, _ = _seed_subscription()

        linked = get_or_create_account("dugsi", "cus_dugsi_001", "person_001")

        assert linked.id == account.id
        assert linked.stripe_customer_id_dugsi == "cus_dugsi_001"
        assert linked.stripe_customer_id_mahad == "cus_mahad_001"

    def test_creates_for_new_holder(self):
        account = get_or_create_account("dugsi", "cus_dugsi_002", "guardian_7")

        assert account.account_holder_id == "guardian_7"
        assert account.customer_id_for("dugsi") == "cus_dugsi_002"
        assert account.customer_id_for("mahad") is None

    def test_no_customer_match_and_no_holder(self):
        with pytest.raises(AccountNotFound):
            get_or_create_account("mahad", "cus_unknown")
