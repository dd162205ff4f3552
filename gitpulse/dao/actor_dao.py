"""ActorDAO — actors table operations."""

import uuid

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.base import BaseDAO
from gitpulse.engines.canonical.models import ActorRef
from gitpulse.models.actor import Actor


class ActorDAO(BaseDAO[Actor]):
    model = Actor

    async def upsert(self, session: AsyncSession, actor: ActorRef) -> uuid.UUID:
        """Insert or refresh an actor by login. Known fields are never blanked."""
        stmt = insert(Actor).values(
            gh_login=actor.gh_login,
            gh_id=actor.gh_id,
            gh_node_id=actor.gh_node_id,
            name=actor.name,
            avatar_url=actor.avatar_url,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Actor.gh_login],
            set_={
                "gh_id": func.coalesce(stmt.excluded.gh_id, Actor.gh_id),
                "gh_node_id": func.coalesce(stmt.excluded.gh_node_id, Actor.gh_node_id),
                "name": func.coalesce(stmt.excluded.name, Actor.name),
                "avatar_url": func.coalesce(stmt.excluded.avatar_url, Actor.avatar_url),
                "updated_at": func.now(),
            },
        ).returning(Actor.id)
        result = await session.execute(stmt)
        return result.scalar_one()
