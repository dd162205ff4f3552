"""ingestion_jobs table."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Text, func, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from gitpulse.core.database import Base, TimestampMixin

JOB_STATUSES = ("pending", "running", "blocked", "completed", "failed")
ACTIVE_JOB_STATUSES = ("running", "blocked")
TERMINAL_JOB_STATUSES = ("completed", "failed")


class IngestionJob(TimestampMixin, Base):
    __tablename__ = "ingestion_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sync_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    installation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("installations.id", ondelete="CASCADE"),
        nullable=False,
    )
    repo_full_name: Mapped[str] = mapped_column(Text, nullable=False)
    since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # resumption point
    cursor: Mapped[Optional[str]] = mapped_column(Text)
    repos_remaining: Mapped[list[str]] = mapped_column(
        ARRAY(Text), nullable=False, server_default=text("'{}'")
    )

    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'pending'"))
    progress: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    total_count: Mapped[Optional[int]] = mapped_column(Integer)
    events_ingested: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    blocked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    rate_limit_remaining: Mapped[Optional[int]] = mapped_column(Integer)
    rate_limit_reset: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','running','blocked','completed','failed')", name="status"
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="progress"),
        # at most one active job per (installation, repository)
        Index(
            "uq_ingestion_jobs_active_repo",
            "installation_id",
            "repo_full_name",
            unique=True,
            postgresql_where="status IN ('running','blocked')",
        ),
        Index("idx_ingestion_jobs_batch", "batch_id", "created_at"),
        Index(
            "idx_ingestion_jobs_blocked",
            "blocked_until",
            postgresql_where="status = 'blocked'",
        ),
        Index("idx_ingestion_jobs_installation_status", "installation_id", "status"),
    )
