"""actors table."""

import uuid
from typing import Optional

from sqlalchemy import BigInteger, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from gitpulse.core.database import Base, TimestampMixin


class Actor(TimestampMixin, Base):
    __tablename__ = "actors"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    gh_login: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    gh_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    gh_node_id: Mapped[Optional[str]] = mapped_column(Text)
    name: Mapped[Optional[str]] = mapped_column(Text)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)
