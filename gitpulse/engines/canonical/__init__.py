"""Canonicalization engine: raw GitHub payloads to hashed canonical facts."""

from gitpulse.engines.canonical.canonicalizer import (
    TEXT_LIMIT,
    canonicalize,
    canonicalize_push,
    normalize_url,
)
from gitpulse.engines.canonical.content_hash import compute_content_hash, stable_json
from gitpulse.engines.canonical.models import (
    EVENT_TYPES,
    ActorRef,
    CanonicalEvent,
    PersistResult,
    RepoRef,
)

__all__ = [
    "EVENT_TYPES",
    "TEXT_LIMIT",
    "ActorRef",
    "CanonicalEvent",
    "PersistResult",
    "RepoRef",
    "canonicalize",
    "canonicalize_push",
    "compute_content_hash",
    "normalize_url",
    "stable_json",
]
