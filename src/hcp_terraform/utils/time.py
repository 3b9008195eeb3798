"""Time helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_elapsed(elapsed: timedelta) -> str:
    """Render a duration as ``1m5.25s`` / ``850ms`` for event payloads."""
    total = elapsed.total_seconds()
    if total < 1:
        return f"{int(round(total * 1000))}ms"
    minutes, seconds = divmod(total, 60)
    if minutes >= 1:
        return f"{int(minutes)}m{seconds:.2f}s"
    return f"{seconds:.2f}s"
