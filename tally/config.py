"""
Runtime configuration, read once from the environment.

Environment variables:
    VOTER_KEY_ENCRYPTION_KEY  Secret used to encrypt voter keys at rest (required)
    VOTER_JWT_SECRET          HS256 secret for voter session tokens
                              (falls back to JWT_SECRET)
    VOTER_JWT_EXPIRE_DAYS     Voter session lifetime in days   (default: 7)
    VERIFICATION_TOKEN_HOURS  Voter verification token lifetime (default: 24)
    DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD
                              PostgreSQL connection for the document store
    PUSH_WEBHOOK_URL          Push gateway endpoint; empty means log-only push
"""
import os

from tally.errors import ConfigurationError

# ── Credentials ──────────────────────────────────────────────────────────────
VOTER_KEY_SECRET_ENV = "VOTER_KEY_ENCRYPTION_KEY"

VOTER_JWT_SECRET = os.getenv("VOTER_JWT_SECRET") or os.getenv("JWT_SECRET", "change-me")
VOTER_JWT_ALGORITHM = "HS256"
VOTER_JWT_EXPIRE_DAYS = int(os.getenv("VOTER_JWT_EXPIRE_DAYS", "7"))

VERIFICATION_TOKEN_HOURS = int(os.getenv("VERIFICATION_TOKEN_HOURS", "24"))

# ── Database ─────────────────────────────────────────────────────────────────
DB_HOST = os.getenv("DB_HOST", "postgres")
DB_PORT = int(os.getenv("DB_PORT", "5432"))
DB_NAME = os.getenv("DB_NAME", "tally_db")
DB_USER = os.getenv("DB_USER", "tally_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "tally_pass")

# ── Delivery channels ────────────────────────────────────────────────────────
PUSH_WEBHOOK_URL = os.getenv("PUSH_WEBHOOK_URL", "")

# ── Background jobs (seconds) ────────────────────────────────────────────────
CLEANUP_INTERVAL = 60 * 60
SCHEDULED_FLUSH_INTERVAL = 5 * 60
REMINDER_INTERVAL = 6 * 60 * 60
ACTIVATION_INTERVAL = 60


def require_voter_key_secret() -> str:
    """Return the voter-key encryption secret or fail loudly.

    Read on every call so a secret injected after import (tests, late-bound
    container env) is picked up.
    """
    secret = os.getenv(VOTER_KEY_SECRET_ENV, "")
    if not secret:
        raise ConfigurationError(f"Missing {VOTER_KEY_SECRET_ENV}")
    return secret
