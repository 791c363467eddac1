import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# Environment
ENVIRONMENT = (os.getenv("ENVIRONMENT") or os.getenv("APP_ENV") or "development").strip().lower()
IS_PRODUCTION = ENVIRONMENT in ("production", "prod")

DATABASE_URL = (os.getenv("DATABASE_URL") or "sqlite:///./photoproof.db").strip()

# Payment providers
HOTMART_WEBHOOK_SECRET = (os.getenv("HOTMART_WEBHOOK_SECRET") or os.getenv("HOTMART_HOTTOK") or "").strip()
DODO_WEBHOOK_SECRET = (
    os.getenv("DODO_WEBHOOK_SECRET")
    or os.getenv("DODO_PAYMENTS_WEBHOOK_KEY")
    or ""
).strip()
# Refuse unsigned deliveries when a secret is configured (always on in production)
WEBHOOK_STRICT_SIGNATURES = _env_flag("WEBHOOK_STRICT_SIGNATURES", IS_PRODUCTION)

# JSON object: offer id -> plan name, merged over the built-in offer table
OFFER_PLAN_MAP = (os.getenv("OFFER_PLAN_MAP") or "").strip()

# Subscription policy
SUBSCRIPTION_PERIOD_DAYS = _env_int("SUBSCRIPTION_PERIOD_DAYS", 30)
PENDING_DOWNGRADE_TOLERANCE_DAYS = _env_int("PENDING_DOWNGRADE_TOLERANCE_DAYS", 3)
MANUAL_ACTIVATION_GRACE_DAYS = _env_int("MANUAL_ACTIVATION_GRACE_DAYS", 30)
# Manual activations without a later purchase fall back to free after this many days
MANUAL_ACTIVATION_PERIOD_DAYS = _env_int("MANUAL_ACTIVATION_PERIOD_DAYS", 34)
RECENT_PAYMENT_PROTECTION_HOURS = _env_int("RECENT_PAYMENT_PROTECTION_HOURS", 24)
EXPIRING_SOON_DAYS = _env_int("EXPIRING_SOON_DAYS", 7)

# Idempotency ledger
IDEMPOTENCY_RETENTION_HOURS = _env_int("IDEMPOTENCY_RETENTION_HOURS", 24)
IDEMPOTENCY_CAPACITY = _env_int("IDEMPOTENCY_CAPACITY", 1000)

# Pending-downgrade sweep
RUN_DOWNGRADE_SWEEP = _env_flag("RUN_DOWNGRADE_SWEEP", False)
DOWNGRADE_SWEEP_INTERVAL_SEC = _env_int("DOWNGRADE_SWEEP_INTERVAL_SEC", 300)

APP_NAME = os.getenv("APP_NAME", "Photoproof")
FRONTEND_ORIGIN = (os.getenv("FRONTEND_ORIGIN", "").split(",")[0].strip() or "https://photoproof.app").rstrip("/")

MAIL_FROM = os.getenv("MAIL_FROM", "Photoproof <no-reply@your-domain.com>")
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = _env_int("SMTP_PORT", 587)
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")

ADMIN_ALLOWLIST_IPS = [ip.strip() for ip in (os.getenv("ADMIN_ALLOWLIST_IPS", "").split(",") if os.getenv("ADMIN_ALLOWLIST_IPS") else []) if ip.strip()]

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("photoproof")
