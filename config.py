import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as medibook.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "medibook.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "medibook_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 30 minutes
    IDLE_TIMEOUT_SECONDS = 30 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # PayHere merchant credentials (required, checked at startup)
    PAYHERE_MERCHANT_ID = os.getenv("PAYHERE_MERCHANT_ID")
    PAYHERE_MERCHANT_SECRET = os.getenv("PAYHERE_MERCHANT_SECRET")
    PAYHERE_SANDBOX = os.getenv("PAYHERE_SANDBOX", "true").lower() == "true"
    PAYHERE_SANDBOX_URL = "https://sandbox.payhere.lk/pay/checkout"
    PAYHERE_LIVE_URL = "https://www.payhere.lk/pay/checkout"
    PAYHERE_CURRENCY = os.getenv("PAYHERE_CURRENCY", "LKR")
    PAYHERE_COUNTRY = os.getenv("PAYHERE_COUNTRY", "Sri Lanka")
    PAYHERE_DEFAULT_CITY = os.getenv("PAYHERE_DEFAULT_CITY", "Colombo")

    # Public URLs used to build return/cancel/notify links
    CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")
    SERVER_URL = os.getenv("SERVER_URL", "http://localhost:5002")

    # Pending payments older than this are promoted by the bulk reconcile sweep
    PENDING_RECONCILE_MINUTES = int(os.getenv("PENDING_RECONCILE_MINUTES", "5"))

    # Where generated PDF receipts are written
    RECEIPTS_DIR = os.getenv("RECEIPTS_DIR", os.path.join(BASE_DIR, "receipts"))

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "MediBook Healthcare")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    SMTP_USE_SSL = os.getenv("SMTP_USE_SSL", "false").lower() == "true"  # implicit TLS, port 465

    # Send confirmation emails off the request thread
    EMAIL_ASYNC = os.getenv("EMAIL_ASYNC", "true").lower() == "true"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False


REQUIRED_SETTINGS = ("PAYHERE_MERCHANT_ID", "PAYHERE_MERCHANT_SECRET")


class ConfigError(RuntimeError):
    pass


def validate_config(config) -> None:
    """Fail fast when merchant credentials are missing."""
    missing = [name for name in REQUIRED_SETTINGS if not config.get(name)]
    if missing:
        raise ConfigError("Missing required settings: " + ", ".join(missing))
