"""Rate calculator collaborator.

The expected charge for a subscription comes from outside the engine (the
price tiers live with registration). The engine only compares it against
what Stripe reports and stops hard when they disagree.
"""

from typing import Protocol

from tuition_sync.services.errors import InvalidPayload


class RateCalculator(Protocol):
    def expected_amount(self, program, metadata):
        """Expected amount in minor units, or None when there is nothing to check."""
        ...


class MetadataRateCalculator:
    """Trusts the `calculatedRate` stamped into metadata at checkout."""

    def expected_amount(self, program, metadata):
        raw = (metadata or {}).get("calculatedRate")
        if raw is None or raw == "":
            return None
        if not str(raw).strip().isdigit():
            raise InvalidPayload(
                f"calculatedRate is not an amount: {raw!r}",
                program=getattr(program, "value", program),
            )
        return int(str(raw).strip())
