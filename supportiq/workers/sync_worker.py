from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from supportiq.core.config import get_settings
from supportiq.core.logging import configure_logging
from supportiq.providers.llm.factory import close_llm_providers, get_shared_llm_provider
from supportiq.services.sync_queue import (
    SyncJobPayload,
    process_sync_job,
    run_daily_analysis,
    run_trial_expiration,
)


logger = logging.getLogger(__name__)


async def sync_intercom(ctx, payload: dict) -> str:
    # Validate payloads in the worker to enforce the job contract.
    job_payload = SyncJobPayload.model_validate(payload)
    logger.info("sync_job_started sync_id=%s attempt=%s", job_payload.sync_id, ctx.get("job_try", 1))
    return await process_sync_job(job_payload)


async def expire_trials(ctx) -> int:
    return await run_trial_expiration()


async def daily_analysis(ctx) -> dict:
    result = await run_daily_analysis(llm=get_shared_llm_provider())
    return result.as_dict()


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("sync_worker_started queue=%s", get_settings().sync_queue_name)


async def _shutdown(ctx) -> None:
    await close_llm_providers()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = 1
    functions = [sync_intercom]
    cron_jobs = [
        cron(expire_trials, minute=0, run_at_startup=False),
        cron(daily_analysis, hour=2, minute=0),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
