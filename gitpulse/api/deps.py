"""Dependency injection — session, caller identity, and service singletons."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

import structlog
from fastapi import Header
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gitpulse.core.config import database_url, github_token
from gitpulse.dao.actor_dao import ActorDAO
from gitpulse.dao.embedding_task_dao import EmbeddingTaskDAO
from gitpulse.dao.event_dao import EventDAO
from gitpulse.dao.ingestion_job_dao import IngestionJobDAO
from gitpulse.dao.installation_dao import InstallationDAO
from gitpulse.dao.repository_dao import RepositoryDAO
from gitpulse.dao.sync_batch_dao import SyncBatchDAO
from gitpulse.engines.github.client import GitHubClient
from gitpulse.engines.ingestion.models import OrchestratorConfig
from gitpulse.engines.ingestion.orchestrator import IngestionJobOrchestrator
from gitpulse.engines.rate_limit.adaptive_limiter import RateLimiterConfig, RateLimiterRegistry
from gitpulse.engines.sync_policy.policy import SyncPolicyConfig
from gitpulse.services import AuthenticationError
from gitpulse.services.canonical_fact_service import CanonicalFactService
from gitpulse.services.sync_service import SyncService
from gitpulse.services.sync_status_service import SyncStatusService

log = structlog.get_logger("gitpulse.api")

# ---------------------------------------------------------------------------
# DAO singletons
# ---------------------------------------------------------------------------
_installation_dao = InstallationDAO()
_batch_dao = SyncBatchDAO()
_job_dao = IngestionJobDAO()
_actor_dao = ActorDAO()
_repository_dao = RepositoryDAO()
_event_dao = EventDAO()
_embedding_task_dao = EmbeddingTaskDAO()

# ---------------------------------------------------------------------------
# Service singletons
# ---------------------------------------------------------------------------
_policy = SyncPolicyConfig.from_env()
_fact_service = CanonicalFactService(_actor_dao, _repository_dao, _event_dao, _embedding_task_dao)
_orchestrator = IngestionJobOrchestrator(
    _installation_dao, _batch_dao, _job_dao, _fact_service, OrchestratorConfig.from_env()
)
_sync_service = SyncService(_installation_dao, _batch_dao, _job_dao, _orchestrator, _policy)
_status_service = SyncStatusService(_installation_dao, _batch_dao, _job_dao, _policy)
_limiters = RateLimiterRegistry(RateLimiterConfig.from_env())

# ---------------------------------------------------------------------------
# Engine / session factory / GitHub client (initialised by app lifespan)
# ---------------------------------------------------------------------------
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_github_client: GitHubClient | None = None


def init_session_factory(url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the async engine and session factory. Called once at startup."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = create_async_engine(
        url or database_url(),
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _session_factory


async def dispose_engine() -> None:
    """Dispose the async engine and close the GitHub client."""
    global _engine, _github_client  # noqa: PLW0603
    if _github_client is not None:
        await _github_client.close()
        _github_client = None
    if _engine is not None:
        await _engine.dispose()
        _engine = None


def set_session_factory(factory: async_sessionmaker[AsyncSession]) -> None:
    """Override session factory (for testing)."""
    global _session_factory  # noqa: PLW0603
    _session_factory = factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("call init_session_factory() before handling requests")
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a per-request session with automatic commit/rollback."""
    async with get_session_factory()() as session:
        async with session.begin():
            yield session


def get_github_client() -> GitHubClient:
    """Shared GitHub client, created on first use."""
    global _github_client  # noqa: PLW0603
    if _github_client is None:
        _github_client = GitHubClient(github_token())
    return _github_client


# ---------------------------------------------------------------------------
# Caller identity (set by the upstream auth proxy)
# ---------------------------------------------------------------------------


async def get_current_user_id(x_user_id: str | None = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("missing X-User-Id header")
    return x_user_id.strip()


# ---------------------------------------------------------------------------
# Service getters (for Depends())
# ---------------------------------------------------------------------------


def get_sync_service() -> SyncService:
    return _sync_service


def get_status_service() -> SyncStatusService:
    return _status_service


def get_orchestrator() -> IngestionJobOrchestrator:
    return _orchestrator


def get_limiters() -> RateLimiterRegistry:
    return _limiters


# ---------------------------------------------------------------------------
# Background work
# ---------------------------------------------------------------------------


async def run_batch_in_background(job_id: uuid.UUID, installation_id: uuid.UUID) -> None:
    """Drive a freshly started batch after the request transaction committed."""
    try:
        await _orchestrator.run_batch(
            get_session_factory(), job_id, get_github_client(), _limiters.get(installation_id)
        )
    except Exception:
        # The resume sweep reclaims the job once its heartbeat is stale.
        log.exception("sync.background_run_failed", job_id=str(job_id))
