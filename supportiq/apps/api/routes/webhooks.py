from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_db, get_llm
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError
from supportiq.persistence.db import SessionLocal
from supportiq.persistence.repos import webhook_logs as webhook_logs_repo
from supportiq.providers.intercom.client import IntercomClient
from supportiq.providers.llm.base import LLMProvider
from supportiq.services import intercom_sync
from supportiq.services.billing import handle_stripe_event, verify_stripe_signature
from supportiq.services.dashboard import DashboardDataService


logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

INTERCOM_SIGNATURE_HEADER = "X-Hub-Signature-256"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"


def _parse_event(body: bytes) -> dict[str, Any]:
    try:
        event = json.loads(body or b"null")
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail={"code": "INVALID_PAYLOAD", "message": "Webhook body is not valid JSON"}
        ) from exc
    if not isinstance(event, dict) or not (event.get("type") or event.get("topic")):
        raise HTTPException(
            status_code=400, detail={"code": "INVALID_PAYLOAD", "message": "Webhook payload missing event type"}
        )
    return event


async def _record_failure(
    *, provider: str, event_type: str, event: dict[str, Any], user_id: str | None, message: str
) -> None:
    # Failure rows are written outside the rolled-back request transaction.
    async with SessionLocal() as session:
        try:
            await webhook_logs_repo.record_webhook(
                session,
                provider=provider,
                event_type=event_type,
                event_data=event,
                status="error",
                user_id=user_id,
                error_message=message,
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("webhook_log_write_failed provider=%s", provider)


@router.get("/webhooks/intercom", response_model=None)
async def intercom_webhook_verify(
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse | dict[str, str]:
    # Intercom verifies the endpoint by asking for the challenge to be echoed.
    if challenge:
        return PlainTextResponse(challenge)
    return {"message": "Intercom webhook endpoint"}


@router.post("/webhooks/intercom")
async def intercom_webhook(
    request: Request,
    _rl: None = Depends(rate_limit("webhook")),
    db: AsyncSession = Depends(get_db),
    llm: LLMProvider | None = Depends(get_llm),
) -> dict[str, Any]:
    """Receive an Intercom webhook, upsert the ticket and run deflection."""
    body = await request.body()
    secret = get_settings().intercom_webhook_secret
    if secret:
        intercom_sync.verify_intercom_signature(body, request.headers.get(INTERCOM_SIGNATURE_HEADER), secret)
    event = _parse_event(body)
    event_type = str(event.get("topic") or event.get("type"))

    try:
        user = await intercom_sync.resolve_webhook_user(db, event)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while resolving webhook user") from exc
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "USER_NOT_FOUND", "message": "User not found"})
    if not user.intercom_access_token:
        raise HTTPException(
            status_code=400, detail={"code": "INTERCOM_NOT_CONNECTED", "message": "Intercom not configured"}
        )
    user_id = user.id

    client: IntercomClient | None
    try:
        client = intercom_sync.client_for_user(user)
    except SupportIQError as exc:
        # Tickets are still stored; replies and slim-payload fetches are skipped.
        logger.warning("intercom_webhook_client_unavailable user_id=%s error=%s", user_id, exc.message)
        client = None

    try:
        outcome = await intercom_sync.handle_webhook_event(db, user, event, llm=llm, client=client)
        await webhook_logs_repo.record_webhook(
            db,
            provider="intercom",
            event_type=event_type,
            event_data=event,
            status="success" if outcome.handled else "ignored",
            user_id=user_id,
        )
        await db.commit()
    except (SupportIQError, SQLAlchemyError) as exc:
        await db.rollback()
        message = exc.message if isinstance(exc, SupportIQError) else "Database error"
        logger.warning("intercom_webhook_failed user_id=%s topic=%s error=%s", user_id, event_type, message)
        await _record_failure(
            provider="intercom", event_type=event_type, event=event, user_id=user_id, message=message
        )
        raise HTTPException(
            status_code=500, detail={"code": "WEBHOOK_FAILED", "message": "Webhook processing failed"}
        ) from exc
    finally:
        if client is not None:
            await client.aclose()

    if outcome.handled:
        DashboardDataService.invalidate(user_id)
    return {
        "success": True,
        "handled": outcome.handled,
        "ticket_id": outcome.ticket_id,
        "created": outcome.created,
        "deflection": outcome.deflection_reason,
    }


@router.post("/stripe/webhooks")
async def stripe_webhook(
    request: Request,
    _rl: None = Depends(rate_limit("webhook")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    settings = get_settings()
    body = await request.body()
    signature = request.headers.get(STRIPE_SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=400, detail={"code": "MISSING_SIGNATURE", "message": "Missing signature"})
    verify_stripe_signature(
        body, signature, settings.stripe_webhook_secret, tolerance_s=settings.stripe_signature_tolerance_s
    )
    event = _parse_event(body)
    event_type = str(event.get("type"))

    try:
        result = await handle_stripe_event(db, event)
        await webhook_logs_repo.record_webhook(
            db,
            provider="stripe",
            event_type=event_type,
            event_data=event,
            status="success" if result.handled else "ignored",
            user_id=result.user_id,
            error_message=None if result.handled else result.message,
        )
        await db.commit()
    except (SupportIQError, SQLAlchemyError) as exc:
        await db.rollback()
        message = exc.message if isinstance(exc, SupportIQError) else "Database error"
        logger.warning("stripe_webhook_failed type=%s error=%s", event_type, message)
        await _record_failure(provider="stripe", event_type=event_type, event=event, user_id=None, message=message)
        raise HTTPException(
            status_code=500, detail={"code": "WEBHOOK_FAILED", "message": "Webhook processing failed"}
        ) from exc
    return {"received": True, "handled": result.handled}
