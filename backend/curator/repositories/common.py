from __future__ import annotations

import secrets
from datetime import UTC, datetime


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(9)}"


def optional_text(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
