from __future__ import annotations

import html
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from supportiq.core.config import get_settings
from supportiq.core.errors import IntercomAuthError, IntercomError, IntercomRateLimitError, ProviderConfigError
from supportiq.services.resilience import RetryPolicy, retry_async
from supportiq.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_STATUS_MAP = {"open": "open", "closed": "closed", "snoozed": "snoozed", "pending": "pending"}


class IntercomClient:
    """Thin async wrapper over the Intercom REST API and OAuth endpoints."""

    def __init__(
        self,
        access_token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = get_settings()
        self._access_token = access_token
        self._client = client
        self._transport = transport

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.ext_call_timeout_ms / 1000.0,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def authorize_url(self, state: str) -> str:
        settings = self._settings
        if not settings.intercom_client_id:
            raise ProviderConfigError("INTERCOM_CLIENT_ID is required for OAuth")
        redirect_uri = settings.intercom_redirect_uri or f"{settings.app_url.rstrip('/')}/api/auth/intercom/callback"
        params = {
            "client_id": settings.intercom_client_id,
            "state": state,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": settings.intercom_scopes,
        }
        return f"{settings.intercom_oauth_base}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        # Bounded attempts (three by default); every failure is retried until the last one.
        settings = self._settings
        if not settings.intercom_client_id or not settings.intercom_client_secret:
            raise ProviderConfigError("Intercom OAuth client credentials are not configured")
        payload = {
            "client_id": settings.intercom_client_id,
            "client_secret": settings.intercom_client_secret,
            "code": code,
            "grant_type": "authorization_code",
        }
        client = self._get_client()

        async def _call() -> dict[str, Any]:
            response = await client.post(
                settings.intercom_token_url,
                json=payload,
                headers={"Accept": "application/json"},
            )
            if response.status_code >= 400:
                raise IntercomAuthError(f"Intercom token exchange failed: {response.status_code}")
            try:
                data = response.json()
            except ValueError as exc:
                raise IntercomAuthError("Intercom token exchange returned a non-JSON body") from exc
            if not isinstance(data, dict) or (not data.get("access_token") and not data.get("token")):
                raise IntercomAuthError("Intercom token exchange returned no access token")
            return data

        policy = RetryPolicy(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.intercom_token_exchange_attempts,
            backoff_ms=settings.intercom_token_exchange_backoff_ms,
            jitter=False,
        )
        start = time.monotonic()
        try:
            data = await retry_async(
                _call,
                policy=policy,
                retryable=lambda exc: isinstance(exc, (IntercomError, httpx.HTTPError, TimeoutError)),
                name="intercom.oauth",
            )
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration="intercom.oauth", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise IntercomAuthError("Intercom token exchange failed") from exc
        except IntercomError:
            record_external_call(
                integration="intercom.oauth", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise
        record_external_call(
            integration="intercom.oauth", latency_ms=(time.monotonic() - start) * 1000.0, success=True
        )
        # Older apps return "token" instead of "access_token".
        data["access_token"] = data.get("access_token") or data.get("token")
        self._access_token = data["access_token"]
        return data

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self._access_token:
            raise IntercomAuthError("Intercom is not connected")
        client = self._get_client()
        url = f"{self._settings.intercom_api_base.rstrip('/')}{path}"
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
            "Intercom-Version": "2.11",
        }
        start = time.monotonic()
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="intercom.api", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise IntercomError(f"Intercom request failed: {method} {path}") from exc
        latency_ms = (time.monotonic() - start) * 1000.0
        record_external_call(integration="intercom.api", latency_ms=latency_ms, success=response.status_code < 400)
        if response.status_code in {401, 403}:
            raise IntercomAuthError("Intercom rejected the access token")
        if response.status_code == 429:
            raise IntercomRateLimitError("Intercom rate limit exceeded")
        if response.status_code >= 400:
            error = IntercomError(f"Intercom API error: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error
        try:
            data = response.json()
        except ValueError as exc:
            raise IntercomError(f"Intercom returned a non-JSON body: {method} {path}") from exc
        if not isinstance(data, dict):
            raise IntercomError(f"Intercom returned an unexpected body: {method} {path}")
        return data

    async def get_me(self) -> dict[str, Any]:
        return await self._request("GET", "/me")

    async def list_admins(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/admins")
        return list(data.get("admins") or [])

    async def list_conversations(
        self, *, per_page: int = 50, starting_after: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        params: dict[str, Any] = {"per_page": min(max(per_page, 1), 150)}
        if starting_after:
            params["starting_after"] = starting_after
        data = await self._request("GET", "/conversations", params=params)
        conversations = list(data.get("conversations") or [])
        next_page = ((data.get("pages") or {}).get("next") or {})
        cursor = next_page.get("starting_after") if isinstance(next_page, dict) else None
        return conversations, cursor

    async def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/conversations/{conversation_id}")

    async def reply_to_conversation(self, conversation_id: str, body: str, *, admin_id: str) -> dict[str, Any]:
        payload = {"message_type": "comment", "type": "admin", "admin_id": admin_id, "body": body}
        return await self._request("POST", f"/conversations/{conversation_id}/reply", json=payload)


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    return _WS_RE.sub(" ", html.unescape(_TAG_RE.sub(" ", value))).strip()


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def conversation_to_ticket_fields(conversation: dict[str, Any]) -> dict[str, Any]:
    """Map an Intercom conversation (or webhook item) to ticket columns.

    Accepts both the REST conversation shape (``source``/``state``) and the
    flattened webhook item shape (``body``/``status``/``author``).
    """
    source = conversation.get("source") or {}
    author = source.get("author") or conversation.get("author") or {}
    subject = conversation.get("title") or source.get("subject") or conversation.get("subject")
    body = strip_html(source.get("body") or conversation.get("body"))
    status = conversation.get("state") or conversation.get("status") or "open"
    raw_priority = conversation.get("priority")
    priority = "priority" if raw_priority in ("priority", "urgent") else (raw_priority or None)
    if priority == "not_priority":
        priority = None

    raw_tags = conversation.get("tags") or []
    if isinstance(raw_tags, dict):
        raw_tags = raw_tags.get("tags") or []
    tags = [tag.get("name") if isinstance(tag, dict) else str(tag) for tag in raw_tags]

    created_at = _from_epoch(conversation.get("created_at"))
    stats = conversation.get("statistics") or {}
    first_reply = _from_epoch(stats.get("first_admin_reply_at"))
    response_minutes = None
    if created_at and first_reply and first_reply >= created_at:
        response_minutes = round((first_reply - created_at).total_seconds() / 60.0, 2)

    assignee = conversation.get("admin_assignee_id") or (conversation.get("assignee") or {}).get("id")
    rating = (conversation.get("conversation_rating") or {}).get("rating")
    fields: dict[str, Any] = {
        "subject": strip_html(subject) or None,
        "content": body or strip_html(subject) or "(no content)",
        "customer_email": author.get("email"),
        "status": _STATUS_MAP.get(str(status).lower(), "open"),
        "priority": priority,
        "tags": [tag for tag in tags if tag],
        "response_time_minutes": response_minutes,
        "agent_name": str(assignee) if assignee else None,
        "satisfaction_score": float(rating) if rating is not None else None,
        "synced_at": datetime.now(timezone.utc),
    }
    if created_at is not None:
        fields["created_at"] = created_at
    return fields
