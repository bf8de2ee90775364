from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import (
    Principal,
    extract_session_token,
    get_current_principal,
    get_current_user,
    get_db,
    invalidate_cached_principals,
)
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError
from supportiq.domain.models import User
from supportiq.persistence.repos import sessions as sessions_repo
from supportiq.persistence.repos import users as users_repo
from supportiq.services import intercom_sync
from supportiq.services.auth import hash_session_token, issue_session


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class SessionCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    full_name: str | None = Field(default=None, max_length=200)
    company: str | None = Field(default=None, max_length=200)


class SessionCreateResponse(BaseModel):
    token: str
    user_id: str
    email: str
    role: str
    expires_at: str | None
    created: bool


def _app_redirect(path: str, **params: str) -> RedirectResponse:
    base = get_settings().app_url.rstrip("/")
    separator = "&" if "?" in path else "?"
    query = f"{separator}{urlencode(params)}" if params else ""
    return RedirectResponse(url=f"{base}{path}{query}", status_code=302)


def _safe_return_url(value: str | None) -> str | None:
    # Only same-app paths are accepted to avoid open redirects after OAuth.
    if not value:
        return None
    if value.startswith("/") and not value.startswith("//"):
        return value
    return None


@router.post("/sessions", response_model=SessionCreateResponse)
async def create_session(
    payload: SessionCreateRequest,
    response: Response,
    _rl: None = Depends(rate_limit("auth")),
    db: AsyncSession = Depends(get_db),
) -> SessionCreateResponse:
    """Create (or reuse) a user by email and mint a bearer session token.

    Disabled when AUTH_BOOTSTRAP_ENABLED is false; production deployments put
    an identity provider in front of this endpoint.
    """
    settings = get_settings()
    if not settings.auth_bootstrap_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "AUTH_BOOTSTRAP_DISABLED", "message": "Session bootstrap is disabled"},
        )
    try:
        user, created = await users_repo.get_or_create_by_email(
            db, payload.email, full_name=payload.full_name, company=payload.company
        )
        raw_token, record = await issue_session(db, user)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating session") from exc
    expires_at = record.expires_at.isoformat() if record.expires_at else None
    response.set_cookie(
        settings.session_cookie_name,
        raw_token,
        httponly=True,
        samesite="lax",
        secure=settings.app_url.startswith("https://"),
        max_age=settings.session_ttl_days * 86400 if settings.session_ttl_days > 0 else None,
    )
    logger.info("session_created user_id=%s created=%s", user.id, created)
    return SessionCreateResponse(
        token=raw_token,
        user_id=user.id,
        email=user.email,
        role=user.role,
        expires_at=expires_at,
        created=created,
    )


@router.delete("/sessions")
async def revoke_current_session(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    raw_token = extract_session_token(request)
    try:
        revoked = await sessions_repo.revoke_session(db, hash_session_token(raw_token or ""))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while revoking session") from exc
    await invalidate_cached_principals(principal.user_id)
    response.delete_cookie(get_settings().session_cookie_name)
    return {"revoked": revoked}


@router.get("/intercom")
async def intercom_authorize(
    return_url: str | None = Query(default=None),
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("auth")),
    db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    try:
        url = await intercom_sync.start_oauth(db, user, return_url=_safe_return_url(return_url))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while starting OAuth") from exc
    return RedirectResponse(url=url, status_code=302)


@router.get("/intercom/callback")
async def intercom_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    # Every outcome redirects back to the app; errors travel as query params.
    if error:
        logger.warning("intercom_oauth_denied error=%s", error)
        return _app_redirect("/dashboard", error="intercom_oauth_failed", message=error)
    if not code or not state:
        return _app_redirect("/dashboard", error="intercom_no_code")
    try:
        result = await intercom_sync.complete_oauth(db, code=code, state=state)
        await db.commit()
    except SupportIQError as exc:
        await db.rollback()
        logger.warning("intercom_oauth_failed code=%s message=%s", exc.code, exc.message)
        return _app_redirect("/dashboard", error=exc.code.lower())
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("intercom_oauth_db_error")
        return _app_redirect("/dashboard", error="intercom_token_failed")
    return _app_redirect(result.return_url or "/dashboard", success="intercom_connected")
