from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError
from supportiq.domain.models import utc_now
from supportiq.persistence.db import SessionLocal
from supportiq.persistence.repos import oauth_states as oauth_repo
from supportiq.persistence.repos import sync_logs as sync_repo
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.persistence.repos import users as users_repo
from supportiq.providers.llm.base import LLMProvider
from supportiq.services import trial as trial_service
from supportiq.services.dashboard import DashboardDataService
from supportiq.services.insights import MIN_TICKETS, generate_insights
from supportiq.services.intercom_sync import sync_conversations
from supportiq.services.ticket_analysis import analyze_batch


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()

DAILY_ANALYSIS_BATCH = 50
INSIGHT_WINDOW_DAYS = 30


class SyncJobPayload(BaseModel):
    # Job schema shared by the API and the worker.
    user_id: str
    sync_id: str
    max_pages: int | None = None


@dataclass
class DailyAnalysisResult:
    accounts: int = 0
    analyzed_tickets: int = 0
    insights_generated: int = 0
    errors: int = 0
    failed_accounts: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "accounts": self.accounts,
            "analyzed_tickets": self.analyzed_tickets,
            "insights_generated": self.insights_generated,
            "errors": self.errors,
        }


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.sync_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def enqueue_sync(payload: SyncJobPayload) -> str:
    """Run an Intercom sync inline or hand it to the arq worker."""
    settings = get_settings()
    if settings.sync_execution_mode.lower() == "inline":
        await process_sync_job(payload)
        return payload.sync_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "sync_intercom",
        payload.model_dump(),
        _job_id=payload.sync_id,
        _queue_name=settings.sync_queue_name,
    )
    # arq returns None when the job id already exists; keep tracing with the sync id.
    return job.job_id if job else payload.sync_id


async def process_sync_job(payload: SyncJobPayload) -> str:
    # Worker and inline mode share this path; the sync log records the outcome.
    async with SessionLocal() as session:
        user = await users_repo.get_user(session, payload.user_id)
        log = await sync_repo.get_log(session, payload.user_id, payload.sync_id)
        if user is None or log is None:
            logger.warning("sync_job_missing_target user_id=%s sync_id=%s", payload.user_id, payload.sync_id)
            return "missing"
        if log.status != "in_progress":
            return log.status
        log = await sync_conversations(session, user, log, max_pages=payload.max_pages)
        status = log.status
    DashboardDataService.invalidate(payload.user_id)
    return status


async def run_trial_expiration() -> int:
    async with SessionLocal() as session:
        expired = await trial_service.expire_overdue_trials(session)
        await session.commit()
    logger.info("trial_expiration_completed expired=%s", expired)
    return expired


async def _analyze_account(user_id: str, *, llm: LLMProvider | None, result: DailyAnalysisResult) -> None:
    async with SessionLocal() as session:
        pending = await tickets_repo.list_unanalyzed(session, user_id, limit=DAILY_ANALYSIS_BATCH)
        batch = await analyze_batch(session, pending, llm=llm)
        result.analyzed_tickets += len(batch.analyzed)
        since = utc_now() - timedelta(days=INSIGHT_WINDOW_DAYS)
        recent = await tickets_repo.list_since(session, user_id, since)
        if len(recent) >= MIN_TICKETS:
            records = await generate_insights(session, user_id, recent)
            result.insights_generated += len(records)
        await session.commit()
    DashboardDataService.invalidate(user_id)


async def run_daily_analysis(*, llm: LLMProvider | None) -> DailyAnalysisResult:
    """Analyze pending tickets and refresh insights for connected accounts.

    Each account runs in its own session so one failure does not block the
    rest of the batch.
    """
    result = DailyAnalysisResult()
    async with SessionLocal() as session:
        user_ids = [user.id for user in await users_repo.list_connected_users(session)]
        await oauth_repo.purge_expired(session, utc_now())
        await session.commit()
    for user_id in user_ids:
        result.accounts += 1
        try:
            await _analyze_account(user_id, llm=llm, result=result)
        except (SupportIQError, SQLAlchemyError) as exc:
            result.errors += 1
            result.failed_accounts.append(user_id)
            logger.warning("daily_analysis_account_failed user_id=%s error=%s", user_id, exc)
    logger.info(
        "daily_analysis_completed accounts=%s analyzed=%s insights=%s errors=%s",
        result.accounts,
        result.analyzed_tickets,
        result.insights_generated,
        result.errors,
    )
    return result
