"""Timezone-aware datetime helpers (stdlib only)."""
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def utc_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return utc_now().isoformat()


def format_duration(seconds: float) -> str:
    """Format a duration for log lines (ms below one second)."""
    seconds = max(0.0, seconds)
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{seconds / 60:.1f}m"
