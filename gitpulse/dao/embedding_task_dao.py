"""EmbeddingTaskDAO — embedding_tasks table operations."""

import uuid

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.base import BaseDAO
from gitpulse.models.embedding_task import EmbeddingTask


class EmbeddingTaskDAO(BaseDAO[EmbeddingTask]):
    model = EmbeddingTask

    async def enqueue(self, session: AsyncSession, event_id: uuid.UUID, content_hash: str) -> bool:
        """Queue an event for embedding. False if the hash is already queued."""
        stmt = (
            insert(EmbeddingTask)
            .values(event_id=event_id, content_hash=content_hash)
            .on_conflict_do_nothing(constraint="uq_embedding_tasks_content_hash")
            .returning(EmbeddingTask.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None
