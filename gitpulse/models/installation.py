"""installations table."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, Integer, Text, func, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from gitpulse.core.database import Base, TimestampMixin


class Installation(TimestampMixin, Base):
    __tablename__ = "installations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    github_installation_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    account_login: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'active'"))
    repositories: Mapped[list[str]] = mapped_column(
        ARRAY(Text), nullable=False, server_default=text("'{}'")
    )

    # cached projection, recomputed by the status reconciliation pass
    sync_status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'idle'"))
    last_sync_error: Mapped[Optional[str]] = mapped_column(Text)

    rate_limit_remaining: Mapped[Optional[int]] = mapped_column(Integer)
    rate_limit_reset: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_manual_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_recovery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    recovery_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )

    __table_args__ = (
        CheckConstraint("status IN ('active','suspended','removed')", name="status"),
        CheckConstraint("sync_status IN ('idle','syncing','error')", name="sync_status"),
        Index("idx_installations_user", "user_id"),
        Index(
            "idx_installations_last_synced",
            "last_synced_at",
            postgresql_where="status = 'active'",
        ),
    )
