"""sync_batches table."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from gitpulse.core.database import Base, TimestampMixin

BATCH_TRIGGERS = ("manual", "cron", "webhook", "maintenance", "recovery")
BATCH_STATUSES = ("running", "completed", "failed")


class SyncBatch(TimestampMixin, Base):
    __tablename__ = "sync_batches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    installation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("installations.id", ondelete="CASCADE"),
        nullable=False,
    )
    trigger: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'running'"))
    total_repos: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_repos: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    failed_repos: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    events_ingested: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "trigger IN ('manual','cron','webhook','maintenance','recovery')", name="trigger"
        ),
        CheckConstraint("status IN ('running','completed','failed')", name="status"),
        CheckConstraint("completed_repos + failed_repos <= total_repos", name="repo_counts"),
        CheckConstraint(
            "status <> 'completed' OR completed_repos + failed_repos = total_repos",
            name="completed_when_done",
        ),
        # one running batch per installation: the atomic guard for batch creation
        Index(
            "uq_sync_batches_running_installation",
            "installation_id",
            unique=True,
            postgresql_where="status = 'running'",
        ),
        Index("idx_sync_batches_installation", "installation_id", "created_at"),
    )
