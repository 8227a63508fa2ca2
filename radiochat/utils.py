"""Small helpers shared by the services."""

import secrets
import time
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[float]:
    """
    Convert a datetime read from the durable store to epoch seconds.

    SQLite hands back naive datetimes; they are stored as UTC, so a
    missing tzinfo is read as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: float) -> datetime:
    """Epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value, tz=timezone.utc)


def new_message_id() -> str:
    """
    Opaque, globally unique message id that sorts roughly by creation time.

    Format: ``msg_<hex nanoseconds><8 hex random>``.
    """
    return f"msg_{time.time_ns():x}{secrets.token_hex(4)}"
