"""Shared test fixtures for the billing sync test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake Stripe keys)
- db_session: clean database per test (tables created/dropped)
- engine: ReconciliationEngine with a fixed clock and mocked Stripe clients
- sign / deliver: real Stripe-format signatures and signed deliveries
- make_event / subscription_object / invoice_object: payload builders
- seed_data: enrollments for the profiles used across tests
"""

import hashlib
import hmac
import json
import time
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from tuition_sync import create_app
from tuition_sync.extensions import db as _db
from tuition_sync.models.billing import Program
from tuition_sync.models.enrollment import Enrollment
from tuition_sync.services.clients import ProgramClients, WebhookSecrets
from tuition_sync.services.engine import InboundDelivery, ReconciliationEngine

MAHAD_WEBHOOK_SECRET = "whsec_test_mahad_fake"
DUGSI_WEBHOOK_SECRET = "whsec_test_dugsi_fake"

NOW = datetime(2026, 9, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 9, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 10, 1, tzinfo=timezone.utc)


def _ts(value):
    return int(value.timestamp())


def sign_payload(payload, secret, timestamp=None):
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def engine(app):
    """Engine with a fixed clock and MagicMock Stripe clients."""
    return ReconciliationEngine(
        clients=ProgramClients(mahad=MagicMock(), dugsi=MagicMock()),
        webhook_secrets=WebhookSecrets.from_config(app.config),
        clock=lambda: NOW,
        max_grace_days=30,
    )


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def deliver(engine):
    """Sign an event dict with the program's secret and process it.

    `secret` overrides the signing secret (for cross-program tests).
    """
    secrets = {
        Program.MAHAD: MAHAD_WEBHOOK_SECRET,
        Program.DUGSI: DUGSI_WEBHOOK_SECRET,
    }

    def _deliver(event, program="mahad", secret=None):
        program = Program.parse(program)
        body = json.dumps(event)
        header = sign_payload(body, secret or secrets[program])
        return engine.process(InboundDelivery(
            program=program,
            raw_body=body.encode("utf-8"),
            signature_header=header,
        ))

    return _deliver


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make_event(event_type, obj, event_id=None, created=NOW):
        counter["n"] += 1
        return {
            "id": event_id or f"evt_test_{counter['n']:04d}",
            "object": "event",
            "type": event_type,
            "created": _ts(created),
            "livemode": False,
            "data": {"object": obj},
        }

    return _make_event


@pytest.fixture
def subscription_object():
    def _subscription_object(sub_id="sub_mahad_001", customer="cus_mahad_001",
                             status="active", amount=15000,
                             profile_ids=("profile_a",), metadata=None,
                             quantity=1, interval="month",
                             period_start=PERIOD_START, period_end=PERIOD_END):
        meta = {"personId": "person_001"}
        if profile_ids:
            meta["profileIds"] = ",".join(profile_ids)
        meta.update(metadata or {})
        return {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "currency": "usd",
            "current_period_start": _ts(period_start),
            "current_period_end": _ts(period_end),
            "cancel_at_period_end": False,
            "items": {
                "object": "list",
                "data": [{
                    "id": "si_001",
                    "quantity": quantity,
                    "price": {
                        "id": "price_001",
                        "unit_amount": amount,
                        "recurring": {"interval": interval},
                    },
                }],
            },
            "metadata": meta,
        }

    return _subscription_object


@pytest.fixture
def invoice_object():
    def _invoice_object(subscription="sub_mahad_001", customer="cus_mahad_001",
                        amount_due=15000, amount_paid=15000,
                        period_end=PERIOD_END, attempt_count=1):
        return {
            "id": "in_001",
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "status": "paid",
            "amount_due": amount_due,
            "amount_paid": amount_paid,
            "attempt_count": attempt_count,
            "period_end": _ts(period_end),
            "lines": {
                "object": "list",
                "data": [{
                    "id": "il_001",
                    "period": {
                        "start": _ts(PERIOD_START),
                        "end": _ts(period_end),
                    },
                }],
            },
        }

    return _invoice_object


@pytest.fixture
def seed_data(app, db_session):
    """Registered enrollments for the profiles the tests fund.

    Returns enrollment IDs keyed by profile ID.
    """
    profiles = {
        "profile_a": "mahad",
        "profile_b": "mahad",
        "profile_c": "mahad",
        "profile_d": "dugsi",
    }
    enrollments = {}
    for profile_id, program in profiles.items():
        enrollment = Enrollment(
            profile_id=profile_id,
            program=program,
            status="REGISTERED",
            start_date=date(2026, 8, 1),
        )
        _db.session.add(enrollment)
        _db.session.flush()
        enrollments[profile_id] = enrollment.id
    _db.session.commit()
    return enrollments
