import os
import logging

import click
from flask import Flask

from tuition_sync.config import config_by_name
from tuition_sync.extensions import db, migrate


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from tuition_sync import models  # noqa: F401

    # --- Billing engine: one per app, both programs' clients injected ---
    from tuition_sync.services.engine import build_engine
    app.extensions["billing_engine"] = build_engine(app.config)

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def get_engine(app):
    return app.extensions["billing_engine"]


PROGRAM_CHOICE = click.Choice(["mahad", "dugsi"], case_sensitive=False)


def _echo_disposition(disposition):
    click.echo(f"{type(disposition).__name__} (HTTP {disposition.http_status})")
    for name in ("detail", "reason"):
        value = getattr(disposition, name, None)
        if value:
            click.echo(f"  {name}: {value}")
    for key, value in getattr(disposition, "context", {}).items():
        click.echo(f"  {key}: {value}")


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.group("billing")
    def billing():
        """Billing sync maintenance commands."""

    @billing.command("replay")
    @click.option("--program", type=PROGRAM_CHOICE, required=True)
    @click.option("--signature", required=True,
                  help="Stripe-Signature header of the saved delivery.")
    @click.option("--no-tolerance", is_flag=True,
                  help="Accept a signature older than the tolerance window.")
    @click.argument("body", type=click.File("rb"))
    def replay(program, signature, no_tolerance, body):
        """Run a saved webhook delivery through the engine.

        Saved deliveries are usually older than the signature tolerance;
        pass --no-tolerance to verify the signature without its age check.

        Usage:
            flask billing replay --program mahad --signature "t=...,v1=..." event.json
        """
        from tuition_sync.models.billing import Program
        from tuition_sync.services.classifier import Accepted
        from tuition_sync.services.engine import InboundDelivery

        delivery = InboundDelivery(
            program=Program.parse(program),
            raw_body=body.read(),
            signature_header=signature,
        )
        disposition = get_engine(app).process(
            delivery, check_timestamp=not no_tolerance
        )
        _echo_disposition(disposition)
        if not isinstance(disposition, Accepted):
            raise SystemExit(1)

    @billing.command("reprocess")
    @click.option("--program", type=PROGRAM_CHOICE, required=True)
    @click.confirmation_option(
        prompt="Release the ledger entry and process its stored body again?"
    )
    @click.argument("event_id")
    def reprocess(program, event_id):
        """Reprocess a retained event from the body stored in the ledger.

        Usage:
            flask billing reprocess --program dugsi evt_123 --yes
        """
        from tuition_sync.services.classifier import Accepted

        disposition = get_engine(app).reprocess_stored(program, event_id)
        if disposition is None:
            click.echo(f"No ledger entry for {event_id} ({program})")
            raise SystemExit(1)
        _echo_disposition(disposition)
        if not isinstance(disposition, Accepted):
            raise SystemExit(1)

    @billing.command("sync-subscription")
    @click.option("--program", type=PROGRAM_CHOICE, required=True)
    @click.argument("subscription_id")
    def sync_subscription(program, subscription_id):
        """Fetch a subscription from Stripe and reconcile it.

        Usage:
            flask billing sync-subscription --program dugsi sub_123
        """
        from tuition_sync.services.classifier import Accepted

        disposition = get_engine(app).sync_subscription(program, subscription_id)
        _echo_disposition(disposition)
        if not isinstance(disposition, Accepted):
            raise SystemExit(1)

    @billing.command("ledger-release")
    @click.option("--program", type=PROGRAM_CHOICE, required=True)
    @click.argument("event_id")
    def ledger_release(program, event_id):
        """Delete a retained ledger entry after a fatal rejection was fixed.

        The next delivery (or a replay) of the event is then processed.
        """
        if get_engine(app).release_event(program, event_id):
            click.echo(f"Released {event_id} ({program})")
        else:
            click.echo(f"No ledger entry for {event_id} ({program})")
