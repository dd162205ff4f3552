"""GitHub engine: REST timeline client without DB access."""

from gitpulse.engines.github.client import GitHubClient
from gitpulse.engines.github.errors import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubRateLimitError,
    RepositoryUnavailableError,
)
from gitpulse.engines.github.models import RateLimitInfo, TimelinePage

__all__ = [
    "GitHubAPIError",
    "GitHubAuthError",
    "GitHubClient",
    "GitHubRateLimitError",
    "RateLimitInfo",
    "RepositoryUnavailableError",
    "TimelinePage",
]
