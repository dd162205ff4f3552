"""CanonicalFactService — idempotent persistence of canonical events."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.actor_dao import ActorDAO
from gitpulse.dao.embedding_task_dao import EmbeddingTaskDAO
from gitpulse.dao.event_dao import EventDAO
from gitpulse.dao.repository_dao import RepositoryDAO
from gitpulse.engines.canonical.content_hash import compute_content_hash
from gitpulse.engines.canonical.models import CanonicalEvent, PersistResult

log = structlog.get_logger("gitpulse.services")


class CanonicalFactService:
    """Stateless service that writes each canonical fact at most once.

    The content hash is the identity of a fact: a second write of the same
    hash is reported as ``duplicate`` and touches nothing. A newly inserted
    fact is queued for embedding; a queueing failure is logged and the fact
    stays committed.
    """

    def __init__(
        self,
        actor_dao: ActorDAO,
        repository_dao: RepositoryDAO,
        event_dao: EventDAO,
        embedding_task_dao: EmbeddingTaskDAO,
    ) -> None:
        self._actor_dao = actor_dao
        self._repository_dao = repository_dao
        self._event_dao = event_dao
        self._embedding_dao = embedding_task_dao

    async def persist_canonical_event(
        self, session: AsyncSession, event: CanonicalEvent
    ) -> PersistResult:
        content_hash = event.content_hash or compute_content_hash(
            event.canonical_text, event.source_url, event.metrics
        )

        actor_id = None
        if event.actor is not None and event.actor.gh_login:
            actor_id = await self._actor_dao.upsert(session, event.actor)
        repository_id = None
        if event.repo is not None and event.repo.full_name:
            repository_id = await self._repository_dao.upsert(session, event.repo)
        if actor_id is None or repository_id is None:
            return PersistResult(
                status="skipped",
                content_hash=content_hash,
                reason="missing_actor" if actor_id is None else "missing_repository",
            )

        existing = await self._event_dao.get_by_content_hash(session, content_hash)
        if existing is not None:
            return PersistResult(status="duplicate", event_id=existing.id, content_hash=content_hash)

        event_id = await self._event_dao.insert_if_absent(
            session,
            {
                "type": event.type,
                "actor_id": actor_id,
                "repository_id": repository_id,
                "occurred_at": event.occurred_at,
                "canonical_text": event.canonical_text,
                "source_url": event.source_url,
                "metrics": event.metrics,
                "details": event.metadata or None,
                "content_hash": content_hash,
                "gh_id": event.gh_id,
                "gh_node_id": event.gh_node_id,
            },
        )
        if event_id is None:
            # lost the race to a concurrent writer
            return PersistResult(status="duplicate", content_hash=content_hash)

        await self._enqueue_embedding(session, event_id, content_hash)
        return PersistResult(status="inserted", event_id=event_id, content_hash=content_hash)

    async def _enqueue_embedding(self, session: AsyncSession, event_id, content_hash: str) -> None:
        try:
            async with session.begin_nested():
                await self._embedding_dao.enqueue(session, event_id, content_hash)
        except Exception:
            log.warning(
                "canonical.enqueue_failed",
                event_id=str(event_id),
                content_hash=content_hash,
                exc_info=True,
            )
