"""Data models for the GitHub timeline client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class RateLimitInfo:
    remaining: int | None = None
    reset: datetime | None = None


@dataclass
class TimelinePage:
    """One page of repository activity.

    ``cursor`` is opaque to callers: pass it back unchanged to fetch the
    next page. ``total_count`` is an estimate used for progress only.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    cursor: str | None = None
    has_next_page: bool = False
    total_count: int | None = None
    rate_limit: RateLimitInfo = field(default_factory=RateLimitInfo)
