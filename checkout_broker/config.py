import os


def _env_int(name, default, fallback_name=None):
    raw = os.environ.get(name)
    if raw is None and fallback_name:
        raw = os.environ.get(fallback_name)
    return int(raw) if raw else default


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

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = _env_int("STRIPE_WEBHOOK_TOLERANCE", 300)
    STRIPE_MONTHLY_PRICE_ID = os.environ.get("STRIPE_MONTHLY_PRICE_ID")
    STRIPE_MONTHLY_PRO_PRICE_ID = os.environ.get("STRIPE_MONTHLY_PRO_PRICE_ID")

    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")
    CHECKOUT_SUCCESS_URL = os.environ.get(
        "CHECKOUT_SUCCESS_URL", f"{APP_BASE_URL}/payment/success"
    )
    CHECKOUT_CANCEL_URL = os.environ.get(
        "CHECKOUT_CANCEL_URL", f"{APP_BASE_URL}/payment/cancel"
    )

    # --- Product catalog ---
    # Amounts are in minor currency units (cents).
    DEFAULT_PRODUCT_ID = "monthly-plan"
    PRODUCT_CATALOG = {
        "monthly-plan": {
            "price_id": STRIPE_MONTHLY_PRICE_ID,
            "amount": 990,
            "currency": "usd",
            "type": "subscription",
            "name": "Monthly Plan",
        },
        "monthly-plan-pro": {
            "price_id": STRIPE_MONTHLY_PRO_PRICE_ID,
            "amount": 5890,
            "currency": "usd",
            "type": "subscription",
            "name": "Monthly Pro Plan",
        },
    }

    # --- Idempotency ---
    # Length of the key-derivation time bucket. PAYMENT_TIMEOUT_MS is the
    # name older deployments used for the same window.
    IDEMPOTENCY_WINDOW_MS = _env_int(
        "IDEMPOTENCY_WINDOW_MS", 60000, fallback_name="PAYMENT_TIMEOUT_MS"
    )
    IDEMPOTENCY_CLAIM_TTL_HOURS = _env_int("IDEMPOTENCY_CLAIM_TTL_HOURS", 24)
    CHECKOUT_INFLIGHT_WAIT_SECONDS = float(
        os.environ.get("CHECKOUT_INFLIGHT_WAIT_SECONDS", 5)
    )
    CHECKOUT_INFLIGHT_POLL_SECONDS = float(
        os.environ.get("CHECKOUT_INFLIGHT_POLL_SECONDS", 0.1)
    )

    # --- Downstream notifications ---
    NOTIFIER_BASE_URL = os.environ.get("NOTIFIER_BASE_URL")
    NOTIFIER_API_KEY = os.environ.get("NOTIFIER_API_KEY")
    NOTIFIER_TIMEOUT_SECONDS = float(os.environ.get("NOTIFIER_TIMEOUT_SECONDS", 10))

    # --- Rate limiting ---
    CHECKOUT_RATE_LIMIT = os.environ.get("CHECKOUT_RATE_LIMIT", "30 per minute")

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
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "STRIPE_MONTHLY_PRICE_ID",
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
    """Testing — in-memory SQLite, fake Stripe credentials."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_MONTHLY_PRICE_ID = "price_monthly_test"
    STRIPE_MONTHLY_PRO_PRICE_ID = None  # left unconfigured on purpose
    PRODUCT_CATALOG = {
        "monthly-plan": {
            "price_id": "price_monthly_test",
            "amount": 990,
            "currency": "usd",
            "type": "subscription",
            "name": "Monthly Plan",
        },
        "monthly-plan-pro": {
            "price_id": None,
            "amount": 5890,
            "currency": "usd",
            "type": "subscription",
            "name": "Monthly Pro Plan",
        },
    }
    APP_BASE_URL = "http://localhost:5000"
    CHECKOUT_SUCCESS_URL = "http://localhost:5000/payment/success"
    CHECKOUT_CANCEL_URL = "http://localhost:5000/payment/cancel"
    CHECKOUT_INFLIGHT_WAIT_SECONDS = 0  # no waiting unless a test opts in
    NOTIFIER_BASE_URL = None
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
