from __future__ import annotations

from datetime import datetime, timezone

from app.models.common import utcnow


def _coerce(value: datetime | str) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_relative_time(value: datetime | str, now: datetime | None = None) -> str:
    when = _coerce(value)
    if when is None:
        return "Invalid date"

    seconds = int(((now or utcnow()) - when).total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if minutes < 1:
        return "Just now"
    if hours < 1:
        return f"{minutes}m ago"
    if days < 1:
        return f"{hours}h ago"
    if days < 7:
        return f"{days}d ago"
    return when.date().isoformat()
