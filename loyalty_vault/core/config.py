"""
Configuration for the confidential record store and its decryption oracle.
All settings come from the environment (optionally a .env file).
"""

import os
import secrets
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/loyalty_vault.db")

DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Confidential-computation context (Paillier key pair)
KEYS_PATH = os.getenv("KEYS_PATH", "./data/paillier_keys.json")
PAILLIER_KEY_BITS = int(os.getenv("PAILLIER_KEY_BITS", "2048"))

# Decryption oracle configuration
ORACLE_MODE = os.getenv("ORACLE_MODE", "auto")  # auto|manual
ORACLE_POLL_INTERVAL_SEC = float(os.getenv("ORACLE_POLL_INTERVAL_SEC", "0.5"))
ORACLE_SIGNING_KEY = os.getenv("ORACLE_SIGNING_KEY")  # hex; random per process when unset

# Decryption request policy
ALLOW_DUPLICATE_PENDING = os.getenv("ALLOW_DUPLICATE_PENDING", "false").lower() == "true"
DECRYPTION_REQUEST_TTL_SEC = int(os.getenv("DECRYPTION_REQUEST_TTL_SEC", "0"))  # 0 = never expire

# Notification stream
NOTIFICATION_LIMIT_MAX = int(os.getenv("NOTIFICATION_LIMIT_MAX", "500"))

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_oracle_mode():
    """Get oracle mode (auto|manual)."""
    return ORACLE_MODE


def get_oracle_signing_key() -> bytes:
    """Get the oracle signing key, generating an ephemeral one if none is configured."""
    if ORACLE_SIGNING_KEY:
        return bytes.fromhex(ORACLE_SIGNING_KEY)
    return secrets.token_bytes(32)


def duplicate_pending_allowed():
    """Check if a record may have more than one pending decryption request."""
    return ALLOW_DUPLICATE_PENDING


def get_request_ttl():
    """Get decryption request TTL in seconds (0 disables expiry)."""
    return DECRYPTION_REQUEST_TTL_SEC


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if ORACLE_MODE not in ["auto", "manual"]:
        issues.append(f"Invalid ORACLE_MODE: {ORACLE_MODE}")

    if ORACLE_POLL_INTERVAL_SEC <= 0:
        issues.append("ORACLE_POLL_INTERVAL_SEC must be > 0")

    if ORACLE_SIGNING_KEY:
        try:
            if len(bytes.fromhex(ORACLE_SIGNING_KEY)) < 16:
                issues.append("ORACLE_SIGNING_KEY must be at least 16 bytes")
        except ValueError:
            issues.append("ORACLE_SIGNING_KEY must be hex encoded")

    if PAILLIER_KEY_BITS < 256:
        issues.append("PAILLIER_KEY_BITS must be >= 256")

    if DECRYPTION_REQUEST_TTL_SEC < 0:
        issues.append("DECRYPTION_REQUEST_TTL_SEC must be >= 0")

    if NOTIFICATION_LIMIT_MAX < 1:
        issues.append("NOTIFICATION_LIMIT_MAX must be >= 1")

    return issues
