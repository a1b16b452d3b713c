import os
from decimal import Decimal


def parse_bool(raw, default=False):
    raw = (raw or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def parse_int(raw, default):
    raw = (raw or "").strip()
    if raw.lstrip("-").isdigit():
        return int(raw)
    return default


# =========================
# ENV
# =========================
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()

# polling mode (one bot, one project); webhooks read tokens from projects table
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
PROJECT_ID = os.getenv("PROJECT_ID", "").strip()

SITE_URL = os.getenv("SITE_URL", "http://localhost:8000").strip().rstrip("/")

DELIVERY_FEE = Decimal(os.getenv("DELIVERY_FEE", "4000").strip() or "4000")
STRICT_STOCK = parse_bool(os.getenv("STRICT_STOCK"), default=True)
ORDER_NUMBER_MAX_ATTEMPTS = max(parse_int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS"), 3), 1)
INIT_DATA_MAX_AGE = parse_int(os.getenv("INIT_DATA_MAX_AGE"), 86400)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
