"""Sync request/status schemas."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SyncRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    started: bool
    message: str
    reason: str
    batch_id: uuid.UUID | None = None
    job_id: uuid.UUID | None = None
    cooldown_ms: int | None = None
    blocked_until: datetime | None = None


class SyncStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    installation_id: uuid.UUID
    account_login: str
    state: str
    can_sync_now: bool
    cooldown_ms: int | None = None
    blocked_until: datetime | None = None
    active_job_progress: int | None = None
    active_repo: str | None = None
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    batch_total: int | None = None
    batch_completed: int | None = None
    batch_failed: int | None = None
    events_ingested: int | None = None
    needs_attention: bool = False
