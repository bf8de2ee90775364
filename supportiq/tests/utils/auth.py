from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from supportiq.domain.models import Ticket, Trial, User
from supportiq.persistence.db import SessionLocal
from supportiq.services.auth import issue_session
from supportiq.services.crypto import encrypt
from supportiq.services.trial import default_limits, empty_usage


def _utc_now() -> datetime:
    # Keep timestamps consistent for test-generated records.
    return datetime.now(timezone.utc)


async def create_test_user(
    *,
    email: str | None = None,
    role: str = "user",
    intercom_token: str | None = None,
    workspace_id: str | None = None,
    admin_id: str | None = None,
    with_trial: bool = False,
    trial_usage: dict[str, int] | None = None,
) -> tuple[User, dict[str, str]]:
    # Provision a user plus a live session and return bearer headers for API calls.
    async with SessionLocal() as session:
        user = User(
            email=email or f"user-{uuid4().hex[:8]}@example.com",
            role=role,
            deflection_settings={},
            intercom_access_token=encrypt(intercom_token) if intercom_token else None,
            intercom_workspace_id=workspace_id,
            intercom_admin_id=admin_id,
        )
        session.add(user)
        await session.flush()
        if with_trial:
            usage = empty_usage()
            usage.update(trial_usage or {})
            session.add(
                Trial(
                    user_id=user.id,
                    started_at=_utc_now(),
                    expires_at=_utc_now() + timedelta(days=14),
                    status="active",
                    limits=default_limits(),
                    usage=usage,
                )
            )
            user.subscription_status = "trialing"
        raw_token, _record = await issue_session(session, user)
        await session.commit()
    return user, {"Authorization": f"Bearer {raw_token}"}


async def seed_tickets(user_id: str, rows: list[dict[str, Any]]) -> list[str]:
    # Insert tickets directly so read paths can be tested without importing CSVs.
    ids: list[str] = []
    async with SessionLocal() as session:
        for row in rows:
            fields = {"content": "Customer needs help with the product.", **row}
            ticket = Ticket(user_id=user_id, **fields)
            session.add(ticket)
            await session.flush()
            ids.append(ticket.id)
        await session.commit()
    return ids
