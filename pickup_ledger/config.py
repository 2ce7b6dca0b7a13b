"""
This module contains configuration settings for the application.
"""
import os
import logging

# Telegram Bot Token
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")

# Logging level
LOG_LEVEL = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

# Database path
PICKUP_DB_PATH = os.environ.get("PICKUP_DB_PATH", "ecopickup.db")

# Seconds a connection waits for a competing writer before giving up
SQLITE_BUSY_TIMEOUT = float(os.environ.get("SQLITE_BUSY_TIMEOUT", 5.0))

# Journal mode set on every connection; WAL lets readers run beside the writer
SQLITE_JOURNAL_MODE = os.environ.get("SQLITE_JOURNAL_MODE", "WAL")

# Minutes a Telegram link code stays redeemable
LINK_CODE_TTL_MINUTES = int(os.environ.get("LINK_CODE_TTL_MINUTES", 15))

# Claim retry settings (store contention only, never a lost race)
CLAIM_MAX_RETRIES = int(os.environ.get("CLAIM_MAX_RETRIES", 3))
CLAIM_RETRY_DELAY = float(os.environ.get("CLAIM_RETRY_DELAY", 0.2))

# Public holidays skipped when a collector accepts without a scheduled date
HOLIDAY_COUNTRY = os.environ.get("HOLIDAY_COUNTRY", "IN")
HOLIDAY_SUBDIV = os.environ.get("HOLIDAY_SUBDIV") or None

# Minimum thefuzz score for free-text waste types
WASTE_TYPE_MATCH_CUTOFF = int(os.environ.get("WASTE_TYPE_MATCH_CUTOFF", 80))

# Notification dispatcher
NOTIFICATION_CHECK_INTERVAL_SECONDS = int(
    os.environ.get("NOTIFICATION_CHECK_INTERVAL_SECONDS", 60)
)
NOTIFICATION_CHUNK_SIZE = int(os.environ.get("NOTIFICATION_CHUNK_SIZE", 30))

# Telegram bot rate limiting
TELEGRAM_RATE_LIMIT_OVERALL = int(os.environ.get("TELEGRAM_RATE_LIMIT_OVERALL", 30))
# Messages per minute to a single group chat
TELEGRAM_RATE_LIMIT_GROUP = int(os.environ.get("TELEGRAM_RATE_LIMIT_GROUP", 20))
TELEGRAM_RATE_LIMIT_MAX_RETRIES = int(os.environ.get("TELEGRAM_RATE_LIMIT_MAX_RETRIES", 0))

# Dashboard
DASHBOARD_HOST = os.environ.get("DASHBOARD_HOST", "0.0.0.0")
DASHBOARD_PORT = int(os.environ.get("DASHBOARD_PORT", 8080))

# Reward constants
GREEN_COINS_PER_RUPEE = 2
ECO_SCORE_PER_KG = 0.5
CO2_SAVED_PER_KG = 0.5
