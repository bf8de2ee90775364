from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import hashlib
import hmac
import logging
import secrets
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.core.errors import IntercomAuthError, IntercomError, SupportIQError, WebhookSignatureError
from supportiq.domain.models import SyncLog, Ticket, User, as_utc, utc_now
from supportiq.persistence.repos import oauth_states as oauth_repo
from supportiq.persistence.repos import sync_logs as sync_repo
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.persistence.repos import users as users_repo
from supportiq.providers.intercom.client import IntercomClient, conversation_to_ticket_fields
from supportiq.providers.llm.base import LLMProvider
from supportiq.services import trial as trial_service
from supportiq.services.crypto import decrypt, encrypt
from supportiq.services.deflection import TicketDeflectionEngine
from supportiq.services.ticket_analysis import analyze_and_store


logger = logging.getLogger(__name__)

TICKET_EVENTS = (
    "conversation.user.created",
    "conversation.user.replied",
    "conversation.admin.replied",
    "ticket.created",
    "ticket.updated",
)


@dataclass(frozen=True)
class WebhookOutcome:
    handled: bool
    ticket_id: str | None = None
    created: bool = False
    deflection_reason: str | None = None


@dataclass(frozen=True)
class OAuthResult:
    user_id: str
    workspace_id: str | None
    return_url: str | None


def build_intercom_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_intercom_signature(body: bytes, header: str | None, secret: str | None) -> None:
    # Accept both raw hex and "sha256=<hex>" header formats.
    if not secret:
        raise WebhookSignatureError("Intercom webhook secret is not configured", status_code=503)
    if not header:
        raise WebhookSignatureError("Missing Intercom signature")
    provided = header.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = build_intercom_signature(secret, body)
    if not hmac.compare_digest(expected, provided):
        raise WebhookSignatureError("Invalid Intercom signature")


def client_for_user(user: User) -> IntercomClient:
    if not user.intercom_access_token:
        raise SupportIQError("Intercom is not connected", code="INTERCOM_NOT_CONNECTED", status_code=400)
    try:
        token = decrypt(user.intercom_access_token)
    except ValueError as exc:
        raise IntercomAuthError("Stored Intercom token could not be read; reconnect Intercom") from exc
    return IntercomClient(token)


async def resolve_webhook_user(session: AsyncSession, event: dict[str, Any]) -> User | None:
    data = event.get("data") or {}
    metadata = (data.get("item") or {}).get("metadata") or {}
    user_id = metadata.get("supportiq_user_id")
    if user_id:
        user = await users_repo.get_user(session, str(user_id))
        if user is not None:
            return user
    workspace_id = data.get("workspace_id") or event.get("app_id")
    if workspace_id:
        return await users_repo.get_by_workspace(session, str(workspace_id))
    return None


def _has_body(item: dict[str, Any]) -> bool:
    source = item.get("source") or {}
    return bool(source.get("body") or item.get("body"))


async def _process_new_ticket(
    session: AsyncSession,
    user: User,
    ticket: Ticket,
    *,
    llm: LLMProvider | None,
    client: IntercomClient | None,
) -> str | None:
    await analyze_and_store(session, ticket, llm=llm)
    await trial_service.track_usage(session, user.id, "tickets_processed")
    engine = TicketDeflectionEngine(session, user, llm=llm, intercom=client)
    result = await engine.process_ticket(ticket)
    return result.reason


async def handle_webhook_event(
    session: AsyncSession,
    user: User,
    event: dict[str, Any],
    *,
    llm: LLMProvider | None,
    client: IntercomClient | None = None,
) -> WebhookOutcome:
    """Apply one Intercom webhook event to the user's tickets.

    Conversation and ticket events upsert the ticket by its Intercom id. Newly
    created tickets are analyzed and offered to the deflection engine.
    """
    event_type = event.get("topic") or event.get("type") or ""
    if event_type not in TICKET_EVENTS:
        logger.info("intercom_webhook_ignored user_id=%s topic=%s", user.id, event_type)
        return WebhookOutcome(handled=False)
    item = dict((event.get("data") or {}).get("item") or {})
    external_id = item.get("id")
    if not external_id:
        logger.warning("intercom_webhook_missing_item user_id=%s topic=%s", user.id, event_type)
        return WebhookOutcome(handled=False)

    if not _has_body(item) and client is not None:
        # Slim webhook payloads carry ids only; fetch the full conversation.
        try:
            item = await client.get_conversation(str(external_id))
        except IntercomError as exc:
            logger.warning("intercom_conversation_fetch_failed id=%s error=%s", external_id, exc)

    fields = conversation_to_ticket_fields(item)
    ticket, created = await tickets_repo.upsert_external(
        session, user_id=user.id, source="intercom", external_id=str(external_id), fields=fields
    )
    reason = None
    if created:
        reason = await _process_new_ticket(session, user, ticket, llm=llm, client=client)
    logger.info(
        "intercom_webhook_processed user_id=%s topic=%s ticket_id=%s created=%s",
        user.id,
        event_type,
        ticket.id,
        created,
    )
    return WebhookOutcome(handled=True, ticket_id=ticket.id, created=created, deflection_reason=reason)


async def start_sync(session: AsyncSession, user: User) -> SyncLog:
    if not user.intercom_access_token:
        raise SupportIQError("Intercom is not connected", code="INTERCOM_NOT_CONNECTED", status_code=400)
    running = await sync_repo.in_progress_for_user(session, user.id, "tickets")
    if running is not None:
        raise SupportIQError(
            "A sync is already in progress",
            code="SYNC_IN_PROGRESS",
            status_code=409,
            context={"sync_id": running.id},
        )
    return await sync_repo.start_log(session, user_id=user.id, sync_type="tickets")


async def sync_conversations(
    session: AsyncSession,
    user: User,
    log: SyncLog,
    *,
    client: IntercomClient | None = None,
    max_pages: int | None = None,
) -> SyncLog:
    """Page through Intercom conversations and upsert them as tickets.

    Commits after every page so progress and stop requests are visible to
    other sessions. The log ends as ``success``, ``error`` or ``stopped``.
    """
    settings = get_settings()
    owns_client = client is None
    processed = 0
    user_id, sync_id = user.id, log.id
    # Persist the in_progress log before any remote calls.
    await session.commit()
    try:
        if client is None:
            client = client_for_user(user)
        cursor: str | None = None
        page = 0
        while True:
            await session.refresh(log)
            if log.status == "stopped":
                logger.info("intercom_sync_stopped user_id=%s sync_id=%s", user.id, log.id)
                break
            conversations, cursor = await client.list_conversations(
                per_page=settings.sync_batch_size, starting_after=cursor
            )
            for conversation in conversations:
                if not conversation.get("id"):
                    continue
                await tickets_repo.upsert_external(
                    session,
                    user_id=user.id,
                    source="intercom",
                    external_id=str(conversation["id"]),
                    fields=conversation_to_ticket_fields(conversation),
                )
                processed += 1
            log.records_processed = processed
            await session.commit()
            page += 1
            if not cursor or processed >= settings.max_tickets_per_sync:
                break
            if max_pages is not None and page >= max_pages:
                break
    except SupportIQError as exc:
        logger.warning("intercom_sync_failed user_id=%s sync_id=%s error=%s", user_id, sync_id, exc.message)
        return await _fail_sync(session, log, processed, exc.message)
    except Exception as exc:  # noqa: BLE001 - the log must never stay in_progress
        logger.exception("intercom_sync_crashed user_id=%s sync_id=%s", user_id, sync_id)
        return await _fail_sync(session, log, processed, f"Unexpected sync failure: {type(exc).__name__}")
    finally:
        if owns_client and client is not None:
            await client.aclose()

    if log.status != "stopped":
        await sync_repo.finish_log(session, log, status="success", records_processed=processed)
    await session.commit()
    logger.info("intercom_sync_completed user_id=%s sync_id=%s records=%s", user_id, sync_id, processed)
    return log


async def _fail_sync(session: AsyncSession, log: SyncLog, processed: int, message: str) -> SyncLog:
    await session.rollback()
    await session.refresh(log)
    await sync_repo.finish_log(session, log, status="error", records_processed=processed, error_message=message)
    await session.commit()
    return log


async def stop_sync(session: AsyncSession, user_id: str, sync_id: str) -> SyncLog | None:
    log = await sync_repo.get_log(session, user_id, sync_id)
    if log is None:
        return None
    if log.status != "in_progress":
        raise SupportIQError("Sync is not running", code="SYNC_NOT_RUNNING", status_code=409)
    await sync_repo.finish_log(
        session, log, status="stopped", records_processed=log.records_processed, error_message="Stopped by user"
    )
    return log


async def start_oauth(session: AsyncSession, user: User, *, return_url: str | None = None) -> str:
    settings = get_settings()
    state = secrets.token_urlsafe(24)
    now = utc_now()
    await oauth_repo.purge_expired(session, now)
    await oauth_repo.create_state(
        session,
        state=state,
        user_id=user.id,
        return_url=return_url,
        expires_at=now + timedelta(seconds=settings.intercom_oauth_state_ttl_s),
    )
    return IntercomClient().authorize_url(state)


async def complete_oauth(
    session: AsyncSession,
    *,
    code: str,
    state: str,
    client: IntercomClient | None = None,
) -> OAuthResult:
    record = await oauth_repo.pop_state(session, state)
    if record is None or as_utc(record.expires_at) < utc_now():
        raise SupportIQError("OAuth state is invalid or expired", code="INVALID_STATE", status_code=400)
    user = await users_repo.get_user(session, record.user_id)
    if user is None:
        raise SupportIQError("OAuth state is invalid or expired", code="INVALID_STATE", status_code=400)

    owns_client = client is None
    client = client or IntercomClient()
    try:
        token_payload = await client.exchange_code(code)
        access_token = str(token_payload["access_token"])
        me = await client.get_me()
    finally:
        if owns_client:
            await client.aclose()

    workspace_id = (me.get("app") or {}).get("id_code") or me.get("workspace_id")
    user.intercom_access_token = encrypt(access_token)
    user.intercom_workspace_id = str(workspace_id) if workspace_id else None
    user.intercom_admin_id = str(me["id"]) if me.get("id") else None
    await session.flush()
    logger.info("intercom_connected user_id=%s workspace_id=%s", user.id, user.intercom_workspace_id)
    return OAuthResult(user_id=user.id, workspace_id=user.intercom_workspace_id, return_url=record.return_url)


async def disconnect(session: AsyncSession, user: User) -> None:
    user.intercom_access_token = None
    user.intercom_workspace_id = None
    user.intercom_admin_id = None
    await session.flush()
    logger.info("intercom_disconnected user_id=%s", user.id)


def connection_status(user: User) -> dict[str, Any]:
    return {
        "connected": bool(user.intercom_access_token),
        "workspace_id": user.intercom_workspace_id,
        "configured": bool(get_settings().intercom_client_id),
    }
