from __future__ import annotations

from datetime import timedelta

import pytest

from supportiq.core.config import get_settings
from supportiq.domain.models import Ticket, utc_now
from supportiq.persistence.db import SessionLocal
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.services import ticket_analysis
from supportiq.tests.utils.auth import create_test_user, seed_tickets


def _categorized(count: int) -> list[dict]:
    now = utc_now()
    return [
        {
            "subject": f"Billing {i}",
            "category": "Billing",
            "embedding": [1.0, 0.0],
            "created_at": now - timedelta(minutes=i),
        }
        for i in range(count)
    ]


@pytest.mark.asyncio
async def test_candidates_are_capped_at_one_hundred() -> None:
    owner, _ = await create_test_user()
    other, _ = await create_test_user()
    ids = await seed_tickets(owner.id, _categorized(105))
    await seed_tickets(owner.id, [{"subject": "No vector", "category": "Billing"}, {"subject": "Uncategorized"}])
    await seed_tickets(other.id, _categorized(3))

    async with SessionLocal() as session:
        candidates = await tickets_repo.list_similarity_candidates(session, owner.id, exclude_id=ids[0])

    assert len(candidates) == 100
    assert all(ticket.user_id == owner.id for ticket in candidates)
    assert all(ticket.embedding is not None and ticket.category for ticket in candidates)
    assert ids[0] not in {ticket.id for ticket in candidates}
    # Newest tickets come first.
    assert candidates[0].id == ids[1]


@pytest.mark.asyncio
async def test_analysis_fetches_candidates_with_configured_limit(monkeypatch) -> None:
    monkeypatch.setenv("SIMILARITY_CANDIDATE_LIMIT", "3")
    get_settings.cache_clear()
    owner, _ = await create_test_user()
    await seed_tickets(owner.id, _categorized(10))
    [target_id] = await seed_tickets(owner.id, [{"subject": "Refund", "content": "Please refund my invoice."}])

    seen: list[int] = []
    original = tickets_repo.list_similarity_candidates

    async def recording_candidates(session, user_id, *, exclude_id=None, limit=100):
        rows = await original(session, user_id, exclude_id=exclude_id, limit=limit)
        seen.append(len(rows))
        assert limit == 3
        return rows

    monkeypatch.setattr(tickets_repo, "list_similarity_candidates", recording_candidates)
    async with SessionLocal() as session:
        ticket = await session.get(Ticket, target_id)
        await ticket_analysis.analyze_and_store(session, ticket, llm=None)
        await session.commit()

    assert seen == [3]
