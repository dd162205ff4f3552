"""Data models for the canonicalization engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

EVENT_TYPES = (
    "pr_opened",
    "pr_closed",
    "pr_merged",
    "review_submitted",
    "commit",
    "issue_opened",
    "issue_closed",
    "issue_comment",
)


@dataclass(frozen=True)
class ActorRef:
    gh_login: str
    gh_id: int | None = None
    gh_node_id: str | None = None
    name: str | None = None
    avatar_url: str | None = None


@dataclass(frozen=True)
class RepoRef:
    full_name: str
    owner: str | None = None
    name: str | None = None
    gh_id: int | None = None
    gh_node_id: str | None = None
    url: str | None = None


@dataclass
class CanonicalEvent:
    """Provider-agnostic representation of one activity item.

    ``metrics`` keys are ``additions``, ``deletions`` and ``filesChanged``;
    only numeric values are kept. ``content_hash`` is derived from
    ``canonical_text``, ``source_url`` and ``metrics``.
    """

    type: str
    actor: ActorRef
    repo: RepoRef
    occurred_at: datetime
    canonical_text: str
    source_url: str
    content_hash: str
    metrics: dict[str, int] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    gh_id: str | None = None
    gh_node_id: str | None = None


@dataclass
class PersistResult:
    """Outcome of persisting one canonical event."""

    status: str  # inserted | duplicate | skipped
    event_id: Any = None
    content_hash: str | None = None
    reason: str | None = None
