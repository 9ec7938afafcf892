import os


def _flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Settings common to every profile, read from the environment."""

    # --- Secrets and endpoints (validated at startup) ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Access tokens (magic links) ---
    # Falls back to SECRET_KEY when unset (see access_token_service).
    ACCESS_TOKEN_SECRET = os.environ.get("ACCESS_TOKEN_SECRET")
    ACCESS_TOKEN_TTL_DAYS = int(os.environ.get("ACCESS_TOKEN_TTL_DAYS", 7))
    ACCESS_TOKEN_ISSUER = os.environ.get("ACCESS_TOKEN_ISSUER", "commerce")
    ACCESS_TOKEN_AUDIENCE = os.environ.get("ACCESS_TOKEN_AUDIENCE", "product-access")

    # --- Webhook ledger ---
    # Failed deliveries past this count are dead-lettered for an operator.
    WEBHOOK_MAX_ATTEMPTS = int(os.environ.get("WEBHOOK_MAX_ATTEMPTS", 5))

    # --- Reliability ---
    EMAIL_MAX_CONCURRENT = int(os.environ.get("EMAIL_MAX_CONCURRENT", 5))
    EMAIL_QUEUE_TIMEOUT = float(os.environ.get("EMAIL_QUEUE_TIMEOUT", 10))
    # Comma separated list of optional features to start disabled,
    # e.g. "refund_emails,resend_emails".
    FEATURE_FLAGS_DISABLED = [
        f.strip()
        for f in os.environ.get("FEATURE_FLAGS_DISABLED", "").split(",")
        if f.strip()
    ]

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Commerce")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Raise RuntimeError listing every required variable that is unset."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development against a dev database and Stripe test mode."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled, SMTP suppressed."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    ACCESS_TOKEN_SECRET = "test-access-token-secret"
    ACCESS_TOKEN_TTL_DAYS = 7
    APP_BASE_URL = "http://localhost:5000"
    WEBHOOK_MAX_ATTEMPTS = 3
    EMAIL_MAX_CONCURRENT = 2
    FEATURE_FLAGS_DISABLED = []
    MAIL_SUPPRESS_SEND = True
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Nothing to check, every value above is fixed."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
