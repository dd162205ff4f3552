"""Environment-backed configuration helpers.

Every tunable threshold in GitPulse is read through these helpers with the
``GITPULSE_`` prefix, e.g. ``GITPULSE_MIN_SYNC_BUDGET=250``. Values are read
when a config object is built, not at import time.
"""

from __future__ import annotations

import os

ENV_PREFIX = "GITPULSE_"


def _key(name: str) -> str:
    return name if name.startswith(ENV_PREFIX) else f"{ENV_PREFIX}{name}"


def env_str(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(_key(name))
    if value is None or value.strip() == "":
        return default
    return value.strip()


def env_float(name: str, default: float) -> float:
    value = env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{_key(name)} must be a number, got {value!r}") from exc


def env_int(name: str, default: int) -> int:
    value = env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{_key(name)} must be an integer, got {value!r}") from exc


def database_url() -> str:
    return env_str("DATABASE_URL", "postgresql+asyncpg://localhost/gitpulse")  # type: ignore[return-value]


def github_token() -> str | None:
    return env_str("GITHUB_TOKEN") or os.environ.get("GITHUB_TOKEN")
