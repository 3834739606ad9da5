from __future__ import annotations

import math
import re
from datetime import UTC, datetime

ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
DESCRIPTION_PREVIEW_CHARS = 200


def parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def format_duration(total_seconds: int | None) -> str:
    """`m:ss` below an hour, `h:mm:ss` otherwise; unknown durations render as `0:00`."""
    if total_seconds is None or total_seconds < 0:
        return "0:00"
    hours, remainder = divmod(total_seconds, 3_600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def display_duration_seconds(display_duration: str) -> int:
    """Seconds in an `m:ss` or `h:mm:ss` string; anything else counts as zero."""
    parts = display_duration.strip().split(":")
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        return 0
    if len(numbers) == 2:
        minutes, seconds = numbers
        return minutes * 60 + seconds
    if len(numbers) == 3:
        hours, minutes, seconds = numbers
        return hours * 3_600 + minutes * 60 + seconds
    return 0


def duration_minutes(display_duration: str) -> int:
    return round(display_duration_seconds(display_duration) / 60)


def format_view_count(count: int | None) -> str:
    if count is None:
        return "0"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def _days_since(published_at: str | None, now: datetime | None) -> int | None:
    if not published_at:
        return None
    try:
        published = datetime.fromisoformat(published_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    if published.tzinfo is None:
        published = published.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    delta_seconds = abs((reference - published).total_seconds())
    return math.ceil(delta_seconds / 86_400)


def format_upload_date(published_at: str | None, *, now: datetime | None = None) -> str:
    days = _days_since(published_at, now)
    if days is None:
        return "unknown"
    if days <= 1:
        return "1 day ago"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        weeks = days // 7
        return f"{weeks} week{'s' if weeks > 1 else ''} ago"
    if days < 365:
        months = days // 30
        return f"{months} month{'s' if months > 1 else ''} ago"
    years = days // 365
    return f"{years} year{'s' if years > 1 else ''} ago"


def recency_label(published_at: str | None, *, now: datetime | None = None) -> str:
    days = _days_since(published_at, now)
    if days is None:
        return "unknown age"
    if days <= 90:
        return "very recent (last 3 months)"
    if days <= 365:
        return "recent (last year)"
    if days <= 730:
        return "moderately recent (1-2 years)"
    return "older content (2+ years)"


def description_preview(description: str | None) -> str:
    if not description:
        return ""
    if len(description) <= DESCRIPTION_PREVIEW_CHARS:
        return description
    return f"{description[:DESCRIPTION_PREVIEW_CHARS]}..."
