# ignite/db.py
"""
Supabase client setup and runtime configuration.

This module provides:
- Singleton Supabase client instance
- Feature flag checks for the scheduler, internal job routes and rate limits
- Application timezone used for calendar-day rules
- Health check helper for /health

Infrastructure Decision:
- Database Client: supabase-py directly (no SQLAlchemy/ORM)
- When SUPABASE_URL / SUPABASE_KEY are unset the app falls back to the
  in-memory credential store (development and tests)

Environment Variables:
- SUPABASE_URL: Project URL (https://xxx.supabase.co)
- SUPABASE_KEY: Service role key
- APP_TIMEZONE: IANA zone for "calendar day" (default: Australia/Sydney)

Feature Flags:
- SWEEP_SCHEDULER_ENABLED: Run daily sweeps in-process (default: off)
- JOBS_ENDPOINTS_ENABLED: Expose /internal/jobs/* (default: off)
- RATE_LIMIT_ENABLED: Per-IP limits on /auth routes (default: on)
"""

from __future__ import annotations

import os
import logging
from datetime import time
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

log = logging.getLogger("ignite.db")

DEFAULT_TIMEZONE = "Australia/Sydney"

# ============================================================
# Feature Flags
# ============================================================

def _flag_on(name: str, default: str = "off") -> bool:
    """Check if a feature flag is enabled."""
    val = os.getenv(name, default).lower()
    return val in ("on", "true", "1", "yes")


def is_sweep_scheduler_enabled() -> bool:
    """Check if the in-process sweep scheduler should start with the app."""
    return _flag_on("SWEEP_SCHEDULER_ENABLED")


def is_jobs_endpoints_enabled() -> bool:
    """Check if /internal/jobs/* endpoints are enabled."""
    return _flag_on("JOBS_ENDPOINTS_ENABLED")


def is_rate_limit_enabled() -> bool:
    """Per-IP rate limiting is on unless explicitly disabled."""
    return _flag_on("RATE_LIMIT_ENABLED", default="on")


# ============================================================
# Scheduling Configuration
# ============================================================

def get_app_timezone() -> ZoneInfo:
    """Timezone used for daily caps and sweep times."""
    name = os.getenv("APP_TIMEZONE", DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        log.warning("Unknown APP_TIMEZONE '%s', using %s", name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def parse_time_of_day(value: str, fallback: str) -> time:
    """Parse 'HH:MM' into a time, falling back on malformed input."""
    try:
        hour, minute = value.strip().split(":", 1)
        return time(int(hour), int(minute))
    except (ValueError, AttributeError):
        log.warning("Invalid time of day '%s', using %s", value, fallback)
        hour, minute = fallback.split(":", 1)
        return time(int(hour), int(minute))


def get_sweep_times() -> tuple:
    """(expire_at, purge_at) local times for the daily sweeps."""
    return (
        parse_time_of_day(os.getenv("SWEEP_EXPIRE_AT", "02:00"), "02:00"),
        parse_time_of_day(os.getenv("SWEEP_PURGE_AT", "02:30"), "02:30"),
    )


# ============================================================
# Supabase Client
# ============================================================

def _get_supabase_url() -> str:
    """Get Supabase URL from environment."""
    return os.getenv("SUPABASE_URL", "").strip()


def _get_supabase_key() -> str:
    """Get Supabase key from environment."""
    return os.getenv("SUPABASE_KEY", "").strip()


def is_supabase_configured() -> bool:
    return bool(_get_supabase_url() and _get_supabase_key())


@lru_cache(maxsize=1)
def get_supabase_client():
    """
    Get singleton Supabase client instance.

    Returns:
        Supabase client or None if not configured.

    Note:
        Uses lru_cache for singleton pattern.
    """
    url = _get_supabase_url()
    key = _get_supabase_key()

    if not url or not key:
        log.warning("Supabase credentials not configured")
        return None

    from supabase import create_client

    client = create_client(url, key)
    log.info("Supabase client initialized successfully")
    return client


# ============================================================
# Table Names (Constants)
# ============================================================

TABLE_SIGNUPS = "user_signups"
TABLE_PROFILES = "profiles"
TABLE_OTPS = "user_otps"


# ============================================================
# Health Check
# ============================================================

def check_db_health(store) -> dict:
    """
    Check credential store connectivity for /health endpoint.

    Args:
        store: CredentialStore in use by the app.

    Returns:
        Dict with database status and optional error message.
    """
    try:
        store.ping()
        return {"database": "ok", "backend": store.backend_name}
    except Exception as e:
        error_msg = str(e)[:100]  # Truncate for safety
        log.warning("Database health check failed: %s", error_msg)
        return {"database": "degraded", "backend": store.backend_name, "error": error_msg}
