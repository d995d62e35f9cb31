import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None
    # Pooler URL for runtime, direct URL for migrations (DDL).
    DATABASE_DIRECT_URL = os.environ.get("DATABASE_DIRECT_URL")

    # Shared secret the provider signs notifications with.
    WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET")

    # --- Webhook ingress ---
    WEBHOOK_SIGNATURE_HEADER = os.environ.get(
        "WEBHOOK_SIGNATURE_HEADER", "Payhook-Signature"
    )
    WEBHOOK_SIGNATURE_TOLERANCE = int(
        os.environ.get("WEBHOOK_SIGNATURE_TOLERANCE", 300)
    )  # seconds
    WEBHOOK_RATE_LIMIT = os.environ.get("WEBHOOK_RATE_LIMIT", "600 per minute")

    # When True, terminal processing failures (no user identifier, amount
    # mismatch) are acknowledged with 200 so the provider stops retrying.
    ACK_TERMINAL_FAILURES = _env_flag("ACK_TERMINAL_FAILURES", "true")

    # --- Billing rules ---
    RENEWAL_PERIOD_DAYS = int(os.environ.get("RENEWAL_PERIOD_DAYS", 30))
    AMOUNT_TOLERANCE = os.environ.get("AMOUNT_TOLERANCE", "0.01")
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")

    # --- Reconciler ---
    RECONCILE_INTERVAL_SECONDS = int(
        os.environ.get("RECONCILE_INTERVAL_SECONDS", 60)
    )
    RECONCILE_WINDOW_HOURS = int(os.environ.get("RECONCILE_WINDOW_HOURS", 72))
    RECONCILE_BATCH_SIZE = int(os.environ.get("RECONCILE_BATCH_SIZE", 100))

    # Replays failed events whose failure was transient from the reconciler loop.
    RETRY_FAILED_EVENTS = _env_flag("RETRY_FAILED_EVENTS", "true")
    MAX_EVENT_RETRIES = int(os.environ.get("MAX_EVENT_RETRIES", 5))

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
            "DATABASE_URL",
            "WEBHOOK_SECRET",
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
    """Testing — in-memory SQLite, rate limiting off."""

    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WEBHOOK_SECRET = "whsec_test_fake"
    WEBHOOK_SIGNATURE_HEADER = "Payhook-Signature"
    ACK_TERMINAL_FAILURES = True
    RETRY_FAILED_EVENTS = True
    RATELIMIT_ENABLED = False  # disable rate limiting in tests

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
