"""
Relay Engine — Configuration
─────────────────────────────
Single place every tunable is read from the environment.
Values are plain module constants; the dataclass configs in
cache/, resilience/ and alerts/ default to them.

Environment variables (.env supported):
    REDIS_URL                = redis://localhost:6379
    MARKET_BASE_URL          = https://steamcommunity.com/market
    QUEUE_MIN_DELAY_S        = 3.5      # spacing between marketplace calls
    QUEUE_MAX_DELAY_S        = 30       # ceiling for escalated spacing
    QUEUE_CONCURRENCY        = 1
    QUEUE_MAX_RETRIES        = 3
    PRICE_UPDATE_INTERVAL_S  = 10800    # 3 hours
    ALERT_BATCH_SIZE         = 10
    ALERT_BATCH_DELAY_S      = 2
    MIN_PRICE_DROP_PERCENT   = 5
    MIN_PRICE_DROP_AMOUNT    = 1
    PRICE_ALERT_COOLDOWN_S   = 14400    # 4 hours
    PRICE_HISTORY_CAP        = 100
    SCHEDULER_ENABLED        = true
    PORT                     = 8000
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── Infrastructure ─────────────────────────────────────────────
REDIS_URL         = os.getenv("REDIS_URL", "redis://localhost:6379")
MARKET_BASE_URL   = os.getenv("MARKET_BASE_URL", "https://steamcommunity.com/market").rstrip("/")
PORT              = int(os.getenv("PORT", "8000"))
SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")

# ── Marketplace request queue ─────────────────────────────────
# ~3.5s between calls keeps the marketplace from answering 429.
QUEUE_MIN_DELAY_S  = float(os.getenv("QUEUE_MIN_DELAY_S", "3.5"))
QUEUE_MAX_DELAY_S  = float(os.getenv("QUEUE_MAX_DELAY_S", "30"))
QUEUE_CONCURRENCY  = int(os.getenv("QUEUE_CONCURRENCY", "1"))
QUEUE_MAX_RETRIES  = int(os.getenv("QUEUE_MAX_RETRIES", "3"))
RATE_LIMIT_WAIT_S  = (10.0, 30.0)   # randomized cooldown after a 429

# ── Price alert scheduler ─────────────────────────────────────
PRICE_UPDATE_INTERVAL_S = int(os.getenv("PRICE_UPDATE_INTERVAL_S", str(3 * 3600)))
ALERT_BATCH_SIZE        = int(os.getenv("ALERT_BATCH_SIZE", "10"))
ALERT_BATCH_DELAY_S     = float(os.getenv("ALERT_BATCH_DELAY_S", "2"))
MIN_PRICE_DROP_PERCENT  = float(os.getenv("MIN_PRICE_DROP_PERCENT", "5"))
MIN_PRICE_DROP_AMOUNT   = float(os.getenv("MIN_PRICE_DROP_AMOUNT", "1"))
PRICE_ALERT_COOLDOWN_S  = int(os.getenv("PRICE_ALERT_COOLDOWN_S", str(4 * 3600)))
PRICE_HISTORY_CAP       = int(os.getenv("PRICE_HISTORY_CAP", "100"))
