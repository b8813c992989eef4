"""
Configuration module for the OneMolt registry.

Centralizes all configuration with environment variable support.
Values are read once at import; tests override them by passing explicit
arguments to the component constructors.
"""

import os
from pathlib import Path
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================


def env_flag(name: str, default: bool) -> bool:
    """Read a boolean flag from the environment."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


ENV = os.getenv("ONEMOLT_ENV", "dev")  # dev|stage|prod

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Store
DB_PATH = os.getenv("ONEMOLT_DB_PATH", "data/onemolt.db")

# Registration sessions
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "900"))  # 15 minutes
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# If set, binding a new key for a human who already has an active molt
# requires the caller to confirm replacement explicitly.
REQUIRE_REPLACE_CONFIRMATION = env_flag("REQUIRE_REPLACE_CONFIRMATION", False)

# Signed forum envelopes
MESSAGE_MAX_AGE_SECONDS = int(os.getenv("MESSAGE_MAX_AGE_SECONDS", "300"))
ENFORCE_NONCE_REPLAY = env_flag("ENFORCE_NONCE_REPLAY", True)
POST_MAX_LENGTH = int(os.getenv("POST_MAX_LENGTH", "2000"))
COMMENT_MAX_LENGTH = int(os.getenv("COMMENT_MAX_LENGTH", "1000"))
UNVERIFIED_POST_INTERVAL_SECONDS = int(os.getenv("UNVERIFIED_POST_INTERVAL_SECONDS", "5"))

# Proof-of-personhood oracle
WORLDID_API_URL = os.getenv("WORLDID_API_URL", "https://developer.worldcoin.org/api/v2/verify")
WORLDID_APP_ID = os.getenv("WORLDID_APP_ID", "")
WORLDID_ACTION = os.getenv("WORLDID_ACTION", "")
WORLDID_TIMEOUT_SECONDS = float(os.getenv("WORLDID_TIMEOUT_SECONDS", "10"))


# ============================================================
# Validation
# ============================================================

def _dir_writable(path: Path) -> bool:
    # a missing directory is created on first connect
    return os.access(path, os.W_OK) if path.exists() else True


def validate_config() -> Dict[str, bool]:
    """
    Report which required settings are present.
    Returns dict of setting -> ok.
    """
    return {
        "worldid_app_id": bool(WORLDID_APP_ID),
        "worldid_action": bool(WORLDID_ACTION),
        "db_dir_writable": _dir_writable(Path(DB_PATH).parent),
    }


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return env_flag("ONEMOLT_DEBUG", False)
