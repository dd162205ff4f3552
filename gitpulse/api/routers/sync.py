"""Sync router — request a sync, read sync status."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.api.deps import (
    get_current_user_id,
    get_session,
    get_status_service,
    get_sync_service,
    run_batch_in_background,
)
from gitpulse.api.schemas.sync import SyncRequestResponse, SyncStatusResponse
from gitpulse.services.sync_service import SyncService
from gitpulse.services.sync_status_service import SyncStatusService

router = APIRouter()


@router.post("/installations/{installation_id}/sync", response_model=SyncRequestResponse)
async def request_sync(
    installation_id: uuid.UUID,
    background: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    _user_id: str = Depends(get_current_user_id),
    svc: SyncService = Depends(get_sync_service),
) -> SyncRequestResponse:
    result = await svc.request_manual_sync(session, installation_id)
    if result.started and result.job_id is not None:
        background.add_task(run_batch_in_background, result.job_id, installation_id)
    return SyncRequestResponse.model_validate(result)


@router.get("/installations/{installation_id}/status", response_model=SyncStatusResponse)
async def get_status(
    installation_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
    _user_id: str = Depends(get_current_user_id),
    svc: SyncStatusService = Depends(get_status_service),
) -> SyncStatusResponse:
    status = await svc.status(session, installation_id)
    return SyncStatusResponse.model_validate(status)


@router.get("/status", response_model=list[SyncStatusResponse])
async def get_status_for_user(
    session: AsyncSession = Depends(get_session),
    user_id: str = Depends(get_current_user_id),
    svc: SyncStatusService = Depends(get_status_service),
) -> list[SyncStatusResponse]:
    statuses = await svc.status_for_user(session, user_id)
    return [SyncStatusResponse.model_validate(s) for s in statuses]
