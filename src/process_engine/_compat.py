from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from typing_extensions import Self

UTC = timezone.utc


class StrEnum(str, Enum):  # noqa: UP042
    """Python 3.10-compatible StrEnum."""

    pass


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


__all__ = ["Self", "UTC", "StrEnum", "parse_iso", "to_iso"]
