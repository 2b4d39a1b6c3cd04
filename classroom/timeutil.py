"""
Datetime helpers.

Everything is stored as naive UTC in the database and sent out as ISO strings
with a trailing "Z".
"""
from __future__ import annotations
from datetime import datetime, timezone


def now_utc_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def utc_z(dt: datetime | None) -> str | None:
    # naive values are UTC already
    return (dt.isoformat() + "Z") if dt else None

def parse_dt_to_utc_naive(value: str | datetime | None) -> datetime | None:
    """
    Form/JSON input to a naive UTC datetime.
    "2026-03-02T09:30:00", "...Z", "...+02:00" and datetime objects all work;
    values without an offset are taken as UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
