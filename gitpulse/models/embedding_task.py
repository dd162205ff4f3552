"""embedding_tasks table (downstream embedding queue, keyed by content hash)."""

import uuid
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from gitpulse.core.database import Base, TimestampMixin


class EmbeddingTask(TimestampMixin, Base):
    __tablename__ = "embedding_tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'pending'"))
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("content_hash", name="uq_embedding_tasks_content_hash"),
        CheckConstraint("status IN ('pending','done','failed')", name="status"),
        Index("idx_embedding_tasks_pending", "created_at", postgresql_where="status = 'pending'"),
    )
