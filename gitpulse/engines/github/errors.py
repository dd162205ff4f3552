"""Typed GitHub API errors raised at the httpx boundary."""

from __future__ import annotations

from datetime import datetime


class GitHubAPIError(Exception):
    """Non-success response from the GitHub API.

    ``rate_limited`` is the typed classification consumed by the adaptive
    limiter; ``retry_after`` is in seconds when the provider supplied one.
    """

    rate_limited: bool = False
    permanent: bool = False

    def __init__(
        self,
        status_code: int | None,
        message: str,
        *,
        retry_after: float | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        self.reset_at = reset_at
        super().__init__(message)


class GitHubRateLimitError(GitHubAPIError):
    """Primary or secondary rate limit hit (403 with exhausted budget, or 429)."""

    rate_limited = True


class GitHubAuthError(GitHubAPIError):
    """Installation token is invalid, expired, or lacks permission (401)."""

    permanent = True


class RepositoryUnavailableError(GitHubAPIError):
    """Repository is gone or no longer accessible (404 / 410 / 451)."""

    permanent = True
