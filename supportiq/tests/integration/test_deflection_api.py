from __future__ import annotations

import pytest

from supportiq.apps.api.deps import get_llm
from supportiq.providers.llm.fake import FakeLLMProvider
from supportiq.tests.utils.auth import create_test_user, seed_tickets


@pytest.mark.asyncio
async def test_settings_default_then_merge(client) -> None:
    _user, headers = await create_test_user()

    defaults = await client.get("/api/deflection/settings", headers=headers)
    settings = defaults.json()["settings"]
    assert settings["auto_response_enabled"] is True
    assert settings["confidence_threshold"] == 0.8
    assert "urgent" in settings["escalation_keywords"]

    updated = await client.put(
        "/api/deflection/settings", json={"excluded_categories": ["Billing"]}, headers=headers
    )
    assert updated.status_code == 200
    again = await client.put("/api/deflection/settings", json={"confidence_threshold": 0.9}, headers=headers)
    merged = again.json()["settings"]
    assert merged["excluded_categories"] == ["Billing"]
    assert merged["confidence_threshold"] == 0.9


@pytest.mark.asyncio
async def test_settings_reject_inverted_thresholds(client) -> None:
    _user, headers = await create_test_user()
    response = await client.put(
        "/api/deflection/settings",
        json={"confidence_threshold": 0.4, "escalation_threshold": 0.6},
        headers=headers,
    )
    assert response.status_code == 422
    equal = await client.put(
        "/api/deflection/settings",
        json={"confidence_threshold": 0.7, "escalation_threshold": 0.7},
        headers=headers,
    )
    assert equal.status_code == 422
    assert equal.json()["code"] == "VALIDATION_ERROR"
    # The stored defaults still apply after the rejected updates.
    current = await client.get("/api/deflection/settings", headers=headers)
    assert current.json()["settings"]["confidence_threshold"] == 0.8
    unknown = await client.put("/api/deflection/settings", json={"tone": "friendly"}, headers=headers)
    assert unknown.status_code == 422


@pytest.mark.asyncio
async def test_disabled_auto_response_skips_generation(client, fake_llm) -> None:
    owner, headers = await create_test_user()
    await client.put("/api/deflection/settings", json={"auto_response_enabled": False}, headers=headers)
    [ticket_id] = await seed_tickets(owner.id, [{"subject": "Export"}])

    response = await client.post(f"/api/tickets/{ticket_id}/deflect", headers=headers)
    assert response.json()["should_respond"] is False
    assert response.json()["reason"] == "Auto-response disabled"
    assert fake_llm.calls == []


@pytest.mark.asyncio
async def test_low_confidence_escalates_and_feeds_metrics(app, client) -> None:
    owner, headers = await create_test_user()
    app.dependency_overrides[get_llm] = lambda: FakeLLMProvider(
        function_arguments={
            "response_content": "An agent will follow up shortly.",
            "response_type": "auto_resolve",
            "confidence_score": 0.42,
            "reasoning": "Unclear request.",
        }
    )
    [escalated_id, resolved_id] = await seed_tickets(owner.id, [{"subject": "Odd"}, {"subject": "Export"}])

    escalated = await client.post(f"/api/tickets/{escalated_id}/deflect", headers=headers)
    assert escalated.json()["reason"] == "Low confidence (42%) - escalating to human"
    assert escalated.json()["ticket_status"] == "open"

    app.dependency_overrides[get_llm] = lambda: FakeLLMProvider()
    resolved = await client.post(f"/api/tickets/{resolved_id}/deflect", headers=headers)
    assert resolved.json()["should_respond"] is True

    feedback = await client.post(
        "/api/deflection/feedback", json={"ticket_id": resolved_id, "satisfied": True}, headers=headers
    )
    assert feedback.status_code == 200

    metrics = (await client.get("/api/deflection/metrics", headers=headers)).json()["metrics"]
    assert metrics["total_responses"] == 2
    assert metrics["auto_resolved"] == 1
    assert metrics["escalated"] == 1
    assert metrics["deflection_rate"] == 50.0
    assert metrics["satisfaction_rate"] == 100.0
    assert metrics["estimated_savings_usd"] == 25.0


@pytest.mark.asyncio
async def test_feedback_without_response_is_not_found(client) -> None:
    owner, headers = await create_test_user()
    [ticket_id] = await seed_tickets(owner.id, [{"subject": "Untouched"}])
    response = await client.post(
        "/api/deflection/feedback", json={"ticket_id": ticket_id, "satisfied": False}, headers=headers
    )
    assert response.status_code == 404
    assert response.json()["code"] == "RESPONSE_NOT_FOUND"
