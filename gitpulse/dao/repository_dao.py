"""RepositoryDAO — repositories table operations."""

import uuid

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.base import BaseDAO
from gitpulse.engines.canonical.models import RepoRef
from gitpulse.models.repository import Repository


class RepositoryDAO(BaseDAO[Repository]):
    model = Repository

    async def upsert(self, session: AsyncSession, repo: RepoRef) -> uuid.UUID:
        """Insert or refresh a repository by ``owner/name``."""
        owner, _, name = repo.full_name.partition("/")
        stmt = insert(Repository).values(
            full_name=repo.full_name,
            owner=repo.owner or owner,
            name=repo.name or name,
            gh_id=repo.gh_id,
            gh_node_id=repo.gh_node_id,
            url=repo.url,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Repository.full_name],
            set_={
                "gh_id": func.coalesce(stmt.excluded.gh_id, Repository.gh_id),
                "gh_node_id": func.coalesce(stmt.excluded.gh_node_id, Repository.gh_node_id),
                "url": func.coalesce(stmt.excluded.url, Repository.url),
                "updated_at": func.now(),
            },
        ).returning(Repository.id)
        result = await session.execute(stmt)
        return result.scalar_one()
