"""
Campus board configuration - environment driven settings.
Module constants are read once at import and never parsed there; the getters
re-read the environment and raise on malformed values.
"""

import os
from typing import List, Set, Tuple

# Supabase project
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
DB_SCHEMA = os.getenv("BOARD_DB_SCHEMA", "public")
PROFILE_TABLE = os.getenv("BOARD_PROFILE_TABLE", "users")

# Realtime board behaviour
ECHO_TIMEOUT_SEC = os.getenv("ECHO_TIMEOUT_SEC", "5")  # parsed by get_echo_timeout()
RESEED_ON_RECONNECT = os.getenv("RESEED_ON_RECONNECT", "true").lower() == "true"
ADMIN_ROLES = os.getenv("ADMIN_ROLES", "admin")  # comma separated, case-insensitive

# Presentation API
PORTAL_API_ENABLED = os.getenv("PORTAL_API_ENABLED", "true").lower() == "true"
PORTAL_API_ORIGINS = os.getenv("PORTAL_API_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")

# Version string
VERSION = "1.0.0"


def debug_enabled() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_echo_timeout() -> float:
    """Seconds a resolved optimistic mutation waits for its realtime echo."""
    return float(os.getenv("ECHO_TIMEOUT_SEC", ECHO_TIMEOUT_SEC))


def get_admin_roles() -> Set[str]:
    """Roles that see every row regardless of target role."""
    raw = os.getenv("ADMIN_ROLES", ADMIN_ROLES)
    return {role.strip().lower() for role in raw.split(",") if role.strip()}


def reseed_on_reconnect() -> bool:
    """Whether a reconnected feed triggers a full re-fetch."""
    return os.getenv("RESEED_ON_RECONNECT", "true").lower() == "true"


def get_supabase_credentials() -> Tuple[str, str]:
    """Return (url, anon key) for the Supabase project."""
    return (
        os.getenv("SUPABASE_URL", SUPABASE_URL),
        os.getenv("SUPABASE_ANON_KEY", SUPABASE_ANON_KEY),
    )


def get_api_origins() -> List[str]:
    """Origins allowed by the presentation API CORS policy."""
    raw = os.getenv("PORTAL_API_ORIGINS", PORTAL_API_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def validate_realtime_config() -> List[str]:
    """
    Validate settings needed to run live boards.

    Returns:
        List of human readable issues, empty when the configuration is usable.
    """
    issues = []
    url, key = get_supabase_credentials()

    if not url:
        issues.append("SUPABASE_URL is not set")
    elif not url.startswith(("https://", "http://")):
        issues.append(f"SUPABASE_URL must be an http(s) URL: {url}")

    if not key:
        issues.append("SUPABASE_ANON_KEY is not set")

    try:
        timeout = get_echo_timeout()
        if timeout <= 0:
            issues.append(f"ECHO_TIMEOUT_SEC must be > 0: {timeout}")
        elif timeout > 60:
            issues.append(f"ECHO_TIMEOUT_SEC must be <= 60: {timeout}")
    except ValueError:
        issues.append(f"ECHO_TIMEOUT_SEC must be a number: {os.getenv('ECHO_TIMEOUT_SEC')}")

    if not get_admin_roles():
        issues.append("ADMIN_ROLES must name at least one role")

    return issues
