from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def to_utc_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def parse_utc_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def expires_at_from(expires_in: object, *, now: datetime | None = None) -> str | None:
    """Turn a provider `expires_in` (seconds) into an absolute UTC timestamp."""
    if expires_in is None or expires_in == "":
        return None
    try:
        seconds = int(float(str(expires_in)))
    except (TypeError, ValueError):
        return None
    base = now or now_utc()
    return to_utc_iso(base + timedelta(seconds=seconds))


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short, no external deps
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def new_state_token() -> str:
    return secrets.token_urlsafe(32)
