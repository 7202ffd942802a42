"""Webhook signature verification.

Checks that a delivery really comes from the Stripe account of the given
program, using that program's signing secret only. Fails closed: a missing
secret, a missing header and a mismatch all raise SignatureInvalid.

Must be given the byte-exact request body. Parsing and re-serializing JSON
before this step changes the bytes and breaks the signature.
"""

import logging
from dataclasses import dataclass

import stripe

from tuition_sync.models.billing import Program
from tuition_sync.services.errors import SignatureInvalid

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300  # seconds, Stripe's default


@dataclass(frozen=True)
class VerifiedBody:
    """A body whose signature checked out for `program`."""

    program: Program
    payload: str


def verify_signature(program, raw_body, signature_header, secret,
                     tolerance=DEFAULT_TOLERANCE):
    """Verify a Stripe-Signature header over the raw body.

    Returns a VerifiedBody. Raises SignatureInvalid on any failure.
    """
    program = Program.parse(program)
    if not isinstance(raw_body, (bytes, bytearray)):
        raise TypeError("raw_body must be the unmodified request bytes")

    if not secret:
        raise SignatureInvalid(
            "No webhook secret configured", program=program.value
        )
    if not signature_header:
        raise SignatureInvalid(
            "Missing Stripe-Signature header", program=program.value
        )

    try:
        payload = bytes(raw_body).decode("utf-8")
    except UnicodeDecodeError:
        raise SignatureInvalid(
            "Body is not valid UTF-8", program=program.value
        ) from None

    try:
        stripe.WebhookSignature.verify_header(
            payload, signature_header, secret, tolerance
        )
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(
            f"Signature verification failed: {e}", program=program.value
        ) from None

    return VerifiedBody(program=program, payload=payload)
