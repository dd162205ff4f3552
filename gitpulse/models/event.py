"""events table."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    desc,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from gitpulse.core.database import Base, TimestampMixin


class Event(TimestampMixin, Base):
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    type: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("actors.id", ondelete="CASCADE"),
        nullable=False,
    )
    repository_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    canonical_text: Mapped[str] = mapped_column(Text, nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    metrics: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSONB)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    gh_id: Mapped[Optional[str]] = mapped_column(Text)
    gh_node_id: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("content_hash", name="uq_events_content_hash"),
        CheckConstraint(
            "type IN ('pr_opened','pr_closed','pr_merged','review_submitted',"
            "'commit','issue_opened','issue_closed','issue_comment')",
            name="type",
        ),
        Index("idx_events_repository_time", "repository_id", desc("occurred_at")),
        Index("idx_events_actor_time", "actor_id", desc("occurred_at")),
    )
