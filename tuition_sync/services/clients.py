"""Per-program Stripe credentials.

Each program bills through its own Stripe account. Both API clients are
built once, explicitly, and handed to the engine; nothing here touches the
global stripe.api_key. Lookups are always by an explicit Program so one
program's credentials can never serve the other.
"""

from dataclasses import dataclass

import stripe

from tuition_sync.models.billing import Program


def _client(api_key):
    if not api_key:
        return None
    return stripe.StripeClient(api_key)


@dataclass(frozen=True)
class ProgramClients:
    mahad: stripe.StripeClient | None
    dugsi: stripe.StripeClient | None

    @classmethod
    def from_config(cls, config):
        return cls(
            mahad=_client(config.get("STRIPE_MAHAD_SECRET_KEY")),
            dugsi=_client(config.get("STRIPE_DUGSI_SECRET_KEY")),
        )

    def for_program(self, program):
        program = Program.parse(program)
        client = getattr(self, program.value)
        if client is None:
            raise RuntimeError(
                f"STRIPE_{program.value.upper()}_SECRET_KEY is not configured"
            )
        return client


@dataclass(frozen=True)
class WebhookSecrets:
    mahad: str | None
    dugsi: str | None

    @classmethod
    def from_config(cls, config):
        return cls(
            mahad=config.get("STRIPE_MAHAD_WEBHOOK_SECRET"),
            dugsi=config.get("STRIPE_DUGSI_WEBHOOK_SECRET"),
        )

    def for_program(self, program):
        # None is passed on so verification fails closed
        return getattr(self, Program.parse(program).value)


def retrieve_subscription(client, subscription_id):
    """Fetch a subscription and return it as a plain dict."""
    subscription = client.v1.subscriptions.retrieve(subscription_id)
    return subscription.to_dict()
