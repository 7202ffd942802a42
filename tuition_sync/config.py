import os


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Stripe: one account per program, never shared ---
    STRIPE_MAHAD_SECRET_KEY = os.environ.get("STRIPE_MAHAD_SECRET_KEY")
    STRIPE_MAHAD_WEBHOOK_SECRET = os.environ.get("STRIPE_MAHAD_WEBHOOK_SECRET")
    STRIPE_DUGSI_SECRET_KEY = os.environ.get("STRIPE_DUGSI_SECRET_KEY")
    STRIPE_DUGSI_WEBHOOK_SECRET = os.environ.get("STRIPE_DUGSI_WEBHOOK_SECRET")

    # Max age (seconds) of a signed webhook timestamp
    STRIPE_WEBHOOK_TOLERANCE = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE", 300))

    # --- Billing policy ---
    # past_due never downgrades access; past this many days an alert is logged.
    BILLING_MAX_GRACE_DAYS = int(os.environ.get("BILLING_MAX_GRACE_DAYS", 30))
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "usd")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_MAHAD_SECRET_KEY",
            "STRIPE_MAHAD_WEBHOOK_SECRET",
            "STRIPE_DUGSI_SECRET_KEY",
            "STRIPE_DUGSI_WEBHOOK_SECRET",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing: in-memory SQLite, fake Stripe keys."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_MAHAD_SECRET_KEY = "sk_test_mahad_fake"
    STRIPE_MAHAD_WEBHOOK_SECRET = "whsec_test_mahad_fake"
    STRIPE_DUGSI_SECRET_KEY = "sk_test_dugsi_fake"
    STRIPE_DUGSI_WEBHOOK_SECRET = "whsec_test_dugsi_fake"
    STRIPE_WEBHOOK_TOLERANCE = 300
    BILLING_MAX_GRACE_DAYS = 30
    DEFAULT_CURRENCY = "usd"

    @staticmethod
    def validate():
        """Skip validation in test mode; everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production on Railway."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
