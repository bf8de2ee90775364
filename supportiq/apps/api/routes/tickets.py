from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from supportiq.apps.api.deps import get_current_user, get_db, get_llm
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.core.errors import SupportIQError
from supportiq.domain.models import Ticket, User, as_utc, utc_now
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.providers.intercom.client import IntercomClient
from supportiq.providers.llm.base import LLMProvider
from supportiq.services import intercom_sync
from supportiq.services import trial as trial_service
from supportiq.services.classifier import calculate_ticket_metrics
from supportiq.services.csv_import import CsvFormatError, import_tickets, parse_ticket_csv
from supportiq.services.dashboard import DashboardDataService
from supportiq.services.deflection import TicketDeflectionEngine
from supportiq.services.ticket_analysis import DeflectionTriage, analyze_batch, triage_for_deflection


logger = logging.getLogger(__name__)

router = APIRouter(tags=["tickets"])

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
MAX_ANALYZE_IDS = 100
TRIAGE_DEFAULT_BATCH = 10
TRIAGE_LOOKBACK_DAYS = 7
TICKET_STATUSES = ("open", "closed", "snoozed", "pending", "auto_resolved")


class AnalyzeRequest(BaseModel):
    ticket_ids: list[str] | None = Field(default=None, max_length=MAX_ANALYZE_IDS)
    force_reanalysis: bool = False


class DeflectionTriageRequest(BaseModel):
    ticket_id: str | None = None
    ticket_ids: list[str] | None = Field(default=None, max_length=MAX_ANALYZE_IDS)
    dry_run: bool = False


def ticket_payload(ticket: Ticket, *, detail: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": ticket.id,
        "source": ticket.source,
        "external_id": ticket.external_id,
        "subject": ticket.subject,
        "content": ticket.content,
        "customer_email": ticket.customer_email,
        "status": ticket.status,
        "priority": ticket.priority,
        "category": ticket.category,
        "sentiment": ticket.sentiment,
        "deflection_potential": ticket.deflection_potential,
        "confidence": ticket.confidence,
        "deflected": ticket.deflected,
        "response_time_minutes": ticket.response_time_minutes,
        "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
        "analyzed_at": ticket.analyzed_at.isoformat() if ticket.analyzed_at else None,
    }
    if detail:
        payload.update(
            {
                "subcategory": ticket.subcategory,
                "sentiment_score": ticket.sentiment_score,
                "keywords": list(ticket.keywords or []),
                "intent": ticket.intent,
                "tags": list(ticket.tags or []),
                "requires_human": ticket.requires_human,
                "estimated_resolution_time": ticket.estimated_resolution_time,
                "satisfaction_score": ticket.satisfaction_score,
                "agent_name": ticket.agent_name,
                "similar_tickets": list(ticket.similar_tickets or []),
                "deflection_response": ticket.deflection_response,
                "deflection_confidence": ticket.deflection_confidence,
                "synced_at": ticket.synced_at.isoformat() if ticket.synced_at else None,
            }
        )
    return payload


async def _read_csv_upload(request: Request) -> str:
    # Accept a raw text/csv body or a multipart form with a "file" part.
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise HTTPException(status_code=400, detail={"code": "NO_FILE", "message": "No file uploaded"})
        filename = (upload.filename or "").lower()
        if filename and not filename.endswith(".csv"):
            raise HTTPException(
                status_code=415, detail={"code": "INVALID_FILE_TYPE", "message": "Only CSV files are supported"}
            )
        raw = await upload.read(MAX_UPLOAD_BYTES + 1)
    elif content_type.startswith(("text/csv", "text/plain", "application/csv")):
        raw = await request.body()
    else:
        raise HTTPException(
            status_code=415, detail={"code": "INVALID_FILE_TYPE", "message": "Only CSV files are supported"}
        )
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413, detail={"code": "FILE_TOO_LARGE", "message": "CSV file exceeds 5 MB"}
        )
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(
            status_code=400, detail={"code": "INVALID_ENCODING", "message": "CSV must be UTF-8 encoded"}
        ) from exc


@router.get("/tickets")
async def list_tickets(
    status: str | None = Query(default=None),
    category: str | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if status is not None and status not in TICKET_STATUSES:
        raise HTTPException(
            status_code=422, detail={"code": "VALIDATION_ERROR", "message": f"Unknown ticket status: {status}"}
        )
    try:
        tickets, total = await tickets_repo.list_tickets(
            db, user.id, status=status, category=category, search=search, limit=limit, offset=offset
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing tickets") from exc
    return {
        "tickets": [ticket_payload(ticket) for ticket in tickets],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/tickets/{ticket_id}")
async def get_ticket(
    ticket_id: str,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        ticket = await tickets_repo.get_ticket(db, user.id, ticket_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching ticket") from exc
    if ticket is None:
        raise HTTPException(status_code=404, detail={"code": "TICKET_NOT_FOUND", "message": "Ticket not found"})
    return {"ticket": ticket_payload(ticket, detail=True)}


@router.post("/tickets/upload")
async def upload_tickets(
    request: Request,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    text = await _read_csv_upload(request)
    try:
        parsed = parse_ticket_csv(text)
    except CsvFormatError as exc:
        raise HTTPException(status_code=400, detail={"code": "INVALID_CSV", "message": str(exc)}) from exc
    if not parsed.rows:
        raise HTTPException(
            status_code=400,
            detail={"code": "NO_VALID_ROWS", "message": "No valid tickets found in CSV", "errors": parsed.errors[:10]},
        )
    try:
        await trial_service.enforce_trial_limit(db, user.id, "tickets_processed")
        log = await import_tickets(db, user, parsed)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while importing tickets") from exc
    DashboardDataService.invalidate(user.id)
    return {
        "success": True,
        "sync_id": log.id,
        "imported": log.records_processed,
        "truncated": len(parsed.rows) - log.records_processed,
        "skipped": parsed.skipped,
        "errors": parsed.errors[:10],
    }


@router.post("/tickets/deflect")
async def triage_tickets_for_deflection(
    payload: DeflectionTriageRequest,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("analysis")),
    db: AsyncSession = Depends(get_db),
    llm: LLMProvider | None = Depends(get_llm),
) -> dict[str, Any]:
    """Draft deflection replies for tickets that have not been deflected yet."""
    ids = [payload.ticket_id] if payload.ticket_id else payload.ticket_ids
    try:
        if ids:
            tickets = await tickets_repo.list_by_ids(db, user.id, ids)
        else:
            # Without ids, only recent unanalyzed tickets are considered.
            since = utc_now() - timedelta(days=TRIAGE_LOOKBACK_DAYS)
            recent = await tickets_repo.list_unanalyzed(db, user.id, limit=MAX_ANALYZE_IDS)
            tickets = [ticket for ticket in recent if as_utc(ticket.created_at) >= since][:TRIAGE_DEFAULT_BATCH]
        pending = [ticket for ticket in tickets if not ticket.deflected]
        results: list[DeflectionTriage] = []
        for ticket in pending:
            results.append(await triage_for_deflection(db, ticket, llm=llm, dry_run=payload.dry_run))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while triaging tickets") from exc
    if results and not payload.dry_run:
        DashboardDataService.invalidate(user.id)
    if not results:
        return {"message": "No tickets to analyze", "analyzed_count": 0, "deflected_count": 0, "results": []}
    return {
        "analyzed_count": len(results),
        "deflected_count": sum(1 for item in results if item.response.can_deflect and item.applied),
        "dry_run": payload.dry_run,
        "results": [_triage_payload(item) for item in results],
    }


def _triage_payload(item: DeflectionTriage) -> dict[str, Any]:
    response = item.response
    return {
        "ticket_id": item.ticket.id,
        "analysis": {
            "category": item.analysis.category,
            "priority": item.analysis.priority,
            "sentiment": item.analysis.sentiment,
            "deflection_potential": item.analysis.deflection_potential,
            "requires_human": item.analysis.requires_human,
            "confidence": item.analysis.confidence,
            "source": item.analysis.source,
        },
        "deflection_response": {
            "can_deflect": response.can_deflect,
            "response": response.response,
            "confidence": response.confidence,
            "suggested_actions": response.suggested_actions,
            "follow_up_required": response.follow_up_required,
            "escalation_triggers": response.escalation_triggers,
            "fallback_message": response.fallback_message,
        },
        "deflected": response.can_deflect and item.applied,
    }


@router.post("/tickets/{ticket_id}/deflect")
async def deflect_ticket(
    ticket_id: str,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("analysis")),
    db: AsyncSession = Depends(get_db),
    llm: LLMProvider | None = Depends(get_llm),
) -> dict[str, Any]:
    try:
        ticket = await tickets_repo.get_ticket(db, user.id, ticket_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching ticket") from exc
    if ticket is None:
        raise HTTPException(status_code=404, detail={"code": "TICKET_NOT_FOUND", "message": "Ticket not found"})

    client: IntercomClient | None = None
    if user.intercom_access_token and ticket.source == "intercom":
        try:
            client = intercom_sync.client_for_user(user)
        except SupportIQError as exc:
            logger.warning("deflect_client_unavailable user_id=%s error=%s", user.id, exc.message)
    try:
        engine = TicketDeflectionEngine(db, user, llm=llm, intercom=client)
        result = await engine.process_ticket(ticket)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deflecting ticket") from exc
    finally:
        if client is not None:
            await client.aclose()
    DashboardDataService.invalidate(user.id)
    response = result.response
    return {
        "ticket_id": ticket.id,
        "should_respond": result.should_respond,
        "reason": result.reason,
        "response_id": result.response_id,
        "sent_to_intercom": result.sent_to_intercom,
        "response": (
            {
                "content": response.response_content,
                "type": response.response_type,
                "confidence": response.confidence_score,
                "reasoning": response.reasoning,
                "tokens_used": response.tokens_used,
                "cost_usd": response.cost_usd,
            }
            if response
            else None
        ),
        "ticket_status": ticket.status,
    }


@router.post("/analyze")
async def analyze_tickets(
    payload: AnalyzeRequest,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("analysis")),
    db: AsyncSession = Depends(get_db),
    llm: LLMProvider | None = Depends(get_llm),
) -> dict[str, Any]:
    """Classify the requested tickets, or the oldest unanalyzed ones."""
    try:
        if payload.ticket_ids:
            tickets = await tickets_repo.list_by_ids(db, user.id, payload.ticket_ids)
        else:
            tickets = await tickets_repo.list_unanalyzed(db, user.id, limit=MAX_ANALYZE_IDS)
        batch = await analyze_batch(db, tickets, llm=llm, force=payload.force_reanalysis)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while analyzing tickets") from exc
    if batch.analyzed:
        DashboardDataService.invalidate(user.id)
    return {
        "success": True,
        "analyzed": len(batch.analyzed),
        "skipped": batch.skipped,
        "tickets": [ticket_payload(ticket, detail=True) for ticket in batch.analyzed],
        "metrics": calculate_ticket_metrics(tickets),
    }
