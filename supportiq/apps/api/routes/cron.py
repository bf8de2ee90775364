from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from supportiq.apps.api.deps import get_llm
from supportiq.core.config import get_settings
from supportiq.domain.models import utc_now
from supportiq.providers.llm.base import LLMProvider
from supportiq.services.sync_queue import run_daily_analysis, run_trial_expiration


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


async def require_cron_secret(request: Request) -> None:
    # Scheduler calls authenticate with "Authorization: Bearer <CRON_SECRET>".
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(
            status_code=503, detail={"code": "CRON_NOT_CONFIGURED", "message": "Cron secret is not configured"}
        )
    header = request.headers.get("Authorization", "")
    if not hmac.compare_digest(header.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        raise HTTPException(status_code=401, detail={"code": "AUTH_UNAUTHORIZED", "message": "Unauthorized"})


@router.post("/trial-expiration")
async def trial_expiration(_auth: None = Depends(require_cron_secret)) -> dict[str, Any]:
    try:
        expired = await run_trial_expiration()
    except SQLAlchemyError as exc:
        logger.exception("trial_expiration_failed")
        raise HTTPException(status_code=500, detail="Trial expiration check failed") from exc
    return {
        "success": True,
        "message": "Trial expiration check completed",
        "expired": expired,
        "timestamp": utc_now().isoformat(),
    }


@router.post("/daily-analysis")
async def daily_analysis(
    _auth: None = Depends(require_cron_secret),
    llm: LLMProvider | None = Depends(get_llm),
) -> dict[str, Any]:
    try:
        result = await run_daily_analysis(llm=llm)
    except SQLAlchemyError as exc:
        logger.exception("daily_analysis_failed")
        raise HTTPException(status_code=500, detail="Daily analysis failed") from exc
    return {
        "success": True,
        "message": "Daily analysis completed",
        "results": result.as_dict(),
        "timestamp": utc_now().isoformat(),
    }
