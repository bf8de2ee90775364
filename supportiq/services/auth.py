from __future__ import annotations

import secrets
from datetime import timedelta
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.domain.models import ApiSession, User, utc_now
from supportiq.persistence.repos import sessions as sessions_repo
from supportiq.services.crypto import hash_token


ROLES = ("user", "admin")


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def hash_session_token(raw_token: str) -> str:
    return hash_token(raw_token)


def generate_session_token() -> tuple[str, str, str]:
    # Embed a short id so operators can correlate tokens without the secret.
    raw_token = f"siq_{uuid4().hex[:12]}_{secrets.token_urlsafe(32)}"
    return raw_token, raw_token[:16], hash_session_token(raw_token)


async def issue_session(session: AsyncSession, user: User, *, ttl_days: int | None = None) -> tuple[str, ApiSession]:
    # Return the raw token once; only the hash is persisted.
    raw_token, prefix, token_hash = generate_session_token()
    days = get_settings().session_ttl_days if ttl_days is None else ttl_days
    expires_at = utc_now() + timedelta(days=days) if days > 0 else None
    record = await sessions_repo.create_session(
        session,
        user_id=user.id,
        token_prefix=prefix,
        token_hash=token_hash,
        expires_at=expires_at,
    )
    return raw_token, record
