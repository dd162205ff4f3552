"""Deterministic content hashing for canonical events."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def _prune(value: Any) -> Any:
    """Drop None values from mappings, recursively."""
    if isinstance(value, Mapping):
        return {str(k): _prune(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_prune(v) for v in value]
    return value


def stable_json(value: Any) -> str:
    """Serialize *value* with sorted keys at every depth and no whitespace."""
    if value is None:
        return ""
    return json.dumps(
        _prune(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def compute_content_hash(
    canonical_text: str,
    source_url: str | None,
    metrics: Mapping[str, Any] | None = None,
) -> str:
    """SHA-256 hex digest over text, URL and metrics.

    Key insertion order in *metrics* never affects the result; any change to
    the text, the URL or a metric value does.
    """
    payload = stable_json(
        {
            "canonical_text": (canonical_text or "").strip(),
            "source_url": (source_url or "").strip(),
            "metrics": dict(metrics) if metrics else None,
        }
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
