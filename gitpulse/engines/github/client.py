"""Async GitHub API client: paginated repository timeline with typed errors."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from gitpulse.core.config import github_token
from gitpulse.engines.github.errors import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubRateLimitError,
    RepositoryUnavailableError,
)
from gitpulse.engines.github.models import RateLimitInfo, TimelinePage

log = structlog.get_logger("gitpulse.github")

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')
_LAST_PAGE_RE = re.compile(r'<[^>]*[?&]page=(\d+)[^>]*>;\s*rel="last"')

_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds
_PER_PAGE = 100
_UNAVAILABLE_STATUSES = frozenset({404, 410, 451})


class GitHubClient:
    """Thin async wrapper around the GitHub REST API.

    Rate limiting is *not* handled here: throttling responses surface as
    :class:`GitHubRateLimitError` so the per-installation limiter can back
    off and the orchestrator can block the job. Only 5xx responses and
    transport timeouts are retried in place.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
        per_page: int = _PER_PAGE,
    ) -> None:
        resolved_token = token or github_token()
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "gitpulse-sync",
        }
        if resolved_token:
            headers["Authorization"] = f"Bearer {resolved_token}"
        self._per_page = per_page
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=30.0,
            transport=transport,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    async def fetch_timeline_page(
        self,
        repo_full_name: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        cursor: str | None = None,
    ) -> TimelinePage:
        """Fetch one page of issue / pull-request activity for a repository.

        Items are ordered by ``updated_at`` ascending so pagination only ever
        moves forward. Items updated after *until* are dropped and end the
        pagination. The returned cursor is the ``rel="next"`` URL.
        """
        if cursor:
            url, params = cursor, None
        else:
            url = f"/repos/{repo_full_name}/issues"
            params = {
                "state": "all",
                "sort": "updated",
                "direction": "asc",
                "per_page": self._per_page,
            }
            if since is not None:
                params["since"] = _isoformat(since)

        response = await self._request_with_retry(url, params)
        data = response.json()
        raw_items: list[dict[str, Any]] = data if isinstance(data, list) else []

        items = raw_items
        past_window = False
        if until is not None:
            items = []
            for item in raw_items:
                updated = _parse_datetime(item.get("updated_at"))
                if updated is not None and updated > until:
                    past_window = True
                    break
                items.append(item)

        link = response.headers.get("Link", "")
        next_url = None if past_window else self._parse_next_link(link)
        last_page = self._parse_last_page(link)

        page = TimelinePage(
            items=items,
            cursor=next_url,
            has_next_page=next_url is not None,
            total_count=last_page * self._per_page if last_page else None,
            rate_limit=self._parse_rate_limit(response),
        )
        log.debug(
            "github.timeline_page",
            repo=repo_full_name,
            items=len(items),
            has_next_page=page.has_next_page,
            remaining=page.rate_limit.remaining,
        )
        return page

    # ── internal ───────────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """GET with exponential backoff on 5xx and timeouts; 4xx map to typed errors."""
        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                resp = await self._client.get(url, params=params)

                if resp.status_code < 400:
                    return resp
                if resp.status_code < 500:
                    raise self._to_error(resp)

                log.warning(
                    "github.server_error",
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )
                last_exc = GitHubAPIError(resp.status_code, f"GitHub server error {resp.status_code}")
            except httpx.TimeoutException as exc:
                log.warning(
                    "github.timeout",
                    url=url,
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )
                last_exc = GitHubAPIError(None, f"timeout talking to GitHub: {exc}")
            except httpx.TransportError as exc:
                log.warning("github.network_error", url=url, error=str(exc), attempt=attempt + 1)
                last_exc = GitHubAPIError(None, f"network error talking to GitHub: {exc}")

            if attempt < _MAX_RETRIES - 1:
                delay = _RETRY_BASE_DELAY * (2**attempt)
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    def _to_error(self, resp: httpx.Response) -> GitHubAPIError:
        status = resp.status_code
        message = _error_message(resp)
        rate = self._parse_rate_limit(resp)

        if status == 429 or (status == 403 and self._is_rate_limited(resp)):
            retry_after = self._parse_header_int(resp.headers.get("Retry-After"))
            log.warning(
                "github.rate_limit",
                url=str(resp.request.url),
                retry_after=retry_after,
                reset=rate.reset.isoformat() if rate.reset else None,
            )
            return GitHubRateLimitError(
                status,
                f"GitHub API rate limit exceeded: {message}",
                retry_after=float(retry_after) if retry_after is not None else None,
                reset_at=rate.reset,
            )
        if status == 401:
            return GitHubAuthError(status, f"GitHub authentication failed (401): {message}")
        if status in _UNAVAILABLE_STATUSES or status == 403:
            return RepositoryUnavailableError(status, f"repository unavailable ({status}): {message}")
        return GitHubAPIError(status, f"GitHub API error {status}: {message}")

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        """Check if a 403 response is due to rate limiting."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                if int(remaining) == 0:
                    return True
            except (ValueError, TypeError):
                pass
        # Secondary (abuse) limits carry Retry-After instead.
        return "Retry-After" in response.headers

    @classmethod
    def _parse_rate_limit(cls, response: httpx.Response) -> RateLimitInfo:
        remaining = cls._parse_header_int(response.headers.get("X-RateLimit-Remaining"))
        reset_ts = cls._parse_header_int(response.headers.get("X-RateLimit-Reset"))
        reset = datetime.fromtimestamp(reset_ts, tz=timezone.utc) if reset_ts is not None else None
        return RateLimitInfo(remaining=remaining, reset=reset)

    @staticmethod
    def _parse_header_int(value: str | None) -> int | None:
        """Safely parse an integer header value."""
        if value is None:
            return None
        try:
            return int(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _parse_next_link(link_header: str) -> str | None:
        """Extract the ``next`` URL from a GitHub ``Link`` header."""
        match = _NEXT_LINK_RE.search(link_header)
        return match.group(1) if match else None

    @staticmethod
    def _parse_last_page(link_header: str) -> int | None:
        match = _LAST_PAGE_RE.search(link_header)
        return int(match.group(1)) if match else None


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or str(resp.status_code)
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return resp.reason_phrase or str(resp.status_code)


def _isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 datetime string, returning None on failure."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
