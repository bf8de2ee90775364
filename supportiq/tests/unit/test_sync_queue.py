from __future__ import annotations

from datetime import timedelta
from typing import Any

import httpx
import pytest
from sqlalchemy import select

from supportiq.core.errors import IntercomAuthError
from supportiq.domain.models import SyncLog, Ticket, Trial, User, utc_now
from supportiq.persistence.db import SessionLocal
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.providers.llm.fake import FakeLLMProvider
from supportiq.providers.intercom.client import IntercomClient
from supportiq.services import intercom_sync
from supportiq.services.sync_queue import (
    SyncJobPayload,
    enqueue_sync,
    process_sync_job,
    run_daily_analysis,
    run_trial_expiration,
)
from supportiq.tests.utils.auth import create_test_user, seed_tickets


class FakeIntercomClient:
    def __init__(self, pages: list[list[dict[str, Any]]], *, fail: bool = False) -> None:
        self.pages = pages
        self.fail = fail
        self.cursors: list[str | None] = []
        self.closed = False

    async def list_conversations(self, *, per_page: int = 50, starting_after: str | None = None):
        if self.fail:
            raise IntercomAuthError("Intercom rejected the access token")
        self.cursors.append(starting_after)
        index = len(self.cursors) - 1
        cursor = f"page-{index + 1}" if index + 1 < len(self.pages) else None
        return self.pages[index], cursor

    async def aclose(self) -> None:
        self.closed = True


def _conversation(conversation_id: str, body: str) -> dict[str, Any]:
    return {"id": conversation_id, "state": "open", "source": {"subject": "Help", "body": f"<p>{body}</p>"}}


# Start a sync the way the API does and return the job payload.
async def _start_sync(user_id: str) -> SyncJobPayload:
    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        log = await intercom_sync.start_sync(session, user)
        await session.commit()
    return SyncJobPayload(user_id=user_id, sync_id=log.id)


async def _load_log(sync_id: str) -> SyncLog:
    async with SessionLocal() as session:
        return await session.get(SyncLog, sync_id)


@pytest.mark.asyncio
async def test_process_sync_job_reports_missing_targets() -> None:
    assert await process_sync_job(SyncJobPayload(user_id="nobody", sync_id="none")) == "missing"


@pytest.mark.asyncio
async def test_inline_sync_pages_through_conversations(monkeypatch) -> None:
    owner, _headers = await create_test_user(intercom_token="intercom-token")
    fake = FakeIntercomClient(
        [
            [_conversation("c1", "First question"), _conversation("c2", "Second question")],
            [_conversation("c3", "Third question"), {"id": None}],
        ]
    )
    monkeypatch.setattr(intercom_sync, "client_for_user", lambda user: fake)

    payload = await _start_sync(owner.id)
    assert await enqueue_sync(payload) == payload.sync_id

    log = await _load_log(payload.sync_id)
    assert log.status == "success"
    assert log.records_processed == 3
    assert fake.cursors == [None, "page-1"]
    assert fake.closed is True
    async with SessionLocal() as session:
        stored = await tickets_repo.get_by_external_id(session, owner.id, "intercom", "c3")
    assert stored is not None
    assert stored.content == "Third question"

    # Finished logs are not re-run.
    assert await process_sync_job(payload) == "success"


@pytest.mark.asyncio
async def test_sync_failure_marks_log_as_error(monkeypatch) -> None:
    owner, _headers = await create_test_user(intercom_token="intercom-token")
    monkeypatch.setattr(intercom_sync, "client_for_user", lambda user: FakeIntercomClient([], fail=True))

    payload = await _start_sync(owner.id)
    assert await process_sync_job(payload) == "error"
    log = await _load_log(payload.sync_id)
    assert log.error_message == "Intercom rejected the access token"


@pytest.mark.asyncio
async def test_sync_with_non_json_intercom_body_ends_in_error(monkeypatch) -> None:
    owner, _headers = await create_test_user(intercom_token="intercom-token")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
    monkeypatch.setattr(
        intercom_sync, "client_for_user", lambda user: IntercomClient("intercom-token", transport=transport)
    )

    payload = await _start_sync(owner.id)
    assert await process_sync_job(payload) == "error"
    log = await _load_log(payload.sync_id)
    assert log.status == "error"
    assert "non-JSON" in log.error_message


class ExplodingIntercomClient(FakeIntercomClient):
    async def list_conversations(self, *, per_page: int = 50, starting_after: str | None = None):
        raise KeyError("conversations")


@pytest.mark.asyncio
async def test_unexpected_sync_failure_releases_the_user_for_new_syncs(monkeypatch) -> None:
    owner, _headers = await create_test_user(intercom_token="intercom-token")
    exploding = ExplodingIntercomClient([])
    monkeypatch.setattr(intercom_sync, "client_for_user", lambda user: exploding)

    payload = await _start_sync(owner.id)
    assert await process_sync_job(payload) == "error"
    log = await _load_log(payload.sync_id)
    assert log.error_message == "Unexpected sync failure: KeyError"
    assert exploding.closed is True

    # A crashed sync must not leave the account locked behind SYNC_IN_PROGRESS.
    retry = await _start_sync(owner.id)
    assert retry.sync_id != payload.sync_id


@pytest.mark.asyncio
async def test_run_trial_expiration_expires_overdue_trials() -> None:
    owner, _headers = await create_test_user(with_trial=True)
    async with SessionLocal() as session:
        trial = (await session.execute(select(Trial).where(Trial.user_id == owner.id))).scalar_one()
        trial.expires_at = utc_now() - timedelta(days=1)
        await session.commit()

    assert await run_trial_expiration() == 1
    async with SessionLocal() as session:
        user = await session.get(User, owner.id)
    assert user.subscription_status == "expired"


@pytest.mark.asyncio
async def test_daily_analysis_covers_connected_accounts_only() -> None:
    connected, _ = await create_test_user(intercom_token="intercom-token")
    unconnected, _ = await create_test_user()
    await seed_tickets(connected.id, [{"subject": f"Question {i}"} for i in range(5)])
    await seed_tickets(unconnected.id, [{"subject": "Ignored"}])

    result = await run_daily_analysis(llm=FakeLLMProvider())
    assert result.accounts == 1
    assert result.analyzed_tickets == 5
    assert result.insights_generated >= 1
    assert result.errors == 0

    async with SessionLocal() as session:
        pending = (
            await session.execute(select(Ticket).where(Ticket.analyzed_at.is_(None)))
        ).scalars().all()
    assert [ticket.user_id for ticket in pending] == [unconnected.id]
