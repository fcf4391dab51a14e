"""
chipsettle/core/time.py

Timestamps for proofs, warnings and audit trails.

Wire format: YYYY-MM-DDTHH:MM:SS.mmmZ (UTC, milliseconds, explicit Z).
Components take a `clock` callable returning an aware datetime so tests can
pin time; utc_now is the default.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    ms = moment.microsecond // 1000
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Inverse of format_timestamp. Raises ValueError on bad input."""
    if not isinstance(value, str) or not value.endswith("Z"):
        raise ValueError(f"Not a UTC timestamp: {value!r}")
    return datetime.fromisoformat(value[:-1]).replace(tzinfo=timezone.utc)


def settle_timestamp(clock: Clock = utc_now) -> str:
    return format_timestamp(clock())
