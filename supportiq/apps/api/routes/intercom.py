from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_current_user, get_db
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import SyncLog, User
from supportiq.persistence.repos import sync_logs as sync_repo
from supportiq.services import intercom_sync
from supportiq.services.sync_queue import SyncJobPayload, enqueue_sync


router = APIRouter(prefix="/intercom", tags=["intercom"])


class SyncRequest(BaseModel):
    max_pages: int | None = Field(default=None, ge=1, le=100)


def sync_log_payload(log: SyncLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "sync_type": log.sync_type,
        "status": log.status,
        "records_processed": log.records_processed,
        "error_message": log.error_message,
        "started_at": log.started_at.isoformat() if log.started_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
    }


@router.get("/status")
async def intercom_status(
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
) -> dict[str, Any]:
    return intercom_sync.connection_status(user)


@router.post("/disconnect")
async def intercom_disconnect(
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        await intercom_sync.disconnect(db, user)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while disconnecting Intercom") from exc
    return {"success": True, "connected": False}


@router.post("/sync", status_code=202)
async def intercom_sync_start(
    payload: SyncRequest | None = None,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("sync")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        log = await intercom_sync.start_sync(db, user)
        # The worker (or inline runner) reads the log from its own session.
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while starting sync") from exc
    job_id = await enqueue_sync(
        SyncJobPayload(user_id=user.id, sync_id=log.id, max_pages=payload.max_pages if payload else None)
    )
    try:
        await db.refresh(log)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading sync status") from exc
    return {"job_id": job_id, "sync": sync_log_payload(log)}


@router.get("/sync/status")
async def intercom_sync_status(
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        logs = await sync_repo.latest_logs(db, user.id, limit=10)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading sync status") from exc
    running = next((log for log in logs if log.status == "in_progress"), None)
    return {
        "in_progress": running is not None,
        "current": sync_log_payload(running) if running else None,
        "last_sync": sync_log_payload(logs[0]) if logs else None,
        "history": [sync_log_payload(log) for log in logs],
    }


@router.post("/sync/{sync_id}/stop")
async def intercom_sync_stop(
    sync_id: str,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        log = await intercom_sync.stop_sync(db, user.id, sync_id)
        if log is None:
            raise HTTPException(status_code=404, detail={"code": "SYNC_NOT_FOUND", "message": "Sync not found"})
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while stopping sync") from exc
    return {"success": True, "sync": sync_log_payload(log)}
