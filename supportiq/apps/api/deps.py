from __future__ import annotations

import asyncio
import time
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.domain.models import User, as_utc, utc_now
from supportiq.persistence.db import SessionLocal, get_session
from supportiq.persistence.repos import sessions as sessions_repo
from supportiq.persistence.repos import users as users_repo
from supportiq.providers.llm.base import LLMProvider
from supportiq.providers.llm.factory import get_shared_llm_provider
from supportiq.services.auth import hash_session_token


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated caller identity used for tenant scoping and admin checks.
    user_id: str
    email: str
    role: str
    session_id: str
    auth_method: str = "session"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def _get_cached_principal(token_hash: str, ttl_s: int) -> Principal | None:
    # Cache principals briefly to reduce auth DB load between requests.
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(token_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(token_hash, None)
            return None
        return principal


async def _set_cached_principal(token_hash: str, principal: Principal, ttl_s: int) -> None:
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[token_hash] = (time.time() + ttl_s, principal)


async def invalidate_cached_principals(user_id: str) -> None:
    # Drop cached entries after role or session changes for a user.
    async with _auth_cache_lock:
        for key in [key for key, (_, principal) in _auth_cache.items() if principal.user_id == user_id]:
            _auth_cache.pop(key, None)


def reset_auth_cache() -> None:
    _auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def extract_session_token(request: Request) -> str | None:
    # Bearer header wins over the browser session cookie.
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if token:
        return token
    return request.cookies.get(get_settings().session_cookie_name) or None


async def _touch_last_used(session_id: str) -> None:
    # Record last use outside the request transaction.
    async with SessionLocal() as session:
        try:
            await sessions_repo.touch_last_used(session, session_id)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    raw_token = extract_session_token(request)
    if not raw_token:
        raise _auth_error("Unauthorized")
    token_hash = hash_session_token(raw_token)

    cached = await _get_cached_principal(token_hash, settings.auth_cache_ttl_s)
    if cached is not None:
        request.state.principal = cached
        return cached

    try:
        row = await sessions_repo.get_active_by_hash(db, token_hash)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while authenticating") from exc
    if row is None:
        raise _auth_error("Invalid or revoked session")
    api_session, user = row
    expires_at = as_utc(api_session.expires_at)
    if expires_at is not None and expires_at <= utc_now():
        raise _auth_error("Session expired")

    principal = Principal(
        user_id=user.id,
        email=user.email,
        role=user.role,
        session_id=api_session.id,
    )
    await _set_cached_principal(token_hash, principal, settings.auth_cache_ttl_s)
    await _touch_last_used(api_session.id)
    request.state.principal = principal
    return principal


async def get_current_user(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    # Load the live user row into the request session for mutations.
    try:
        user = await users_repo.get_user(db, principal.user_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading user") from exc
    if user is None:
        raise _auth_error("User no longer exists")
    return user


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise _forbidden_error("Admin access required")
    return principal


def get_llm() -> LLMProvider | None:
    # Overridden in tests to inject a fake provider.
    return get_shared_llm_provider()
