"""Entry point for the Flask CLI.

Usage:
    flask --app run db upgrade
    flask --app run billing replay --program mahad --signature "t=...,v1=..." event.json
    flask --app run billing sync-subscription --program dugsi sub_123
    flask --app run billing ledger-release --program mahad evt_123
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from tuition_sync import create_app  # noqa: E402

app = create_app()
