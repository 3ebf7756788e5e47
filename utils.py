"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if not raw:
        return None
    try:
        return as_utc(datetime.datetime.fromisoformat(raw))
    except (ValueError, TypeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


# ---------------------------------------------------------------------------
# JSON responses
# ---------------------------------------------------------------------------

def api_success(data=None, message: Optional[str] = None) -> dict:
    response = {"success": True, "data": data}
    if message:
        response["message"] = message
    return response


def api_error(message: str, details=None) -> dict:
    response = {"success": False, "error": message}
    if details:
        response["details"] = details
    return response
