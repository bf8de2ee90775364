from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import select

from supportiq.core.errors import LLMError
from supportiq.domain.models import AiResponse, KnowledgeBaseArticle, Ticket, User
from supportiq.persistence.db import SessionLocal
from supportiq.providers.llm.fake import FakeLLMProvider
from supportiq.services.deflection import (
    DeflectionSettings,
    TicketDeflectionEngine,
    deflection_metrics,
    is_business_hours,
    learn_from_feedback,
    parse_function_arguments,
    preflight_checks,
)
from supportiq.tests.utils.auth import create_test_user


WEEKDAY_NOON = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


def _ticket(**overrides: Any) -> Ticket:
    fields: dict[str, Any] = {
        "subject": "Password help",
        "content": "How do I reset my password for the dashboard?",
        "category": "Account",
        "priority": None,
        "source": "manual",
    }
    fields.update(overrides)
    return Ticket(**fields)


class FakeIntercom:
    def __init__(self) -> None:
        self.replies: list[tuple[str, str, str]] = []

    async def list_admins(self) -> list[dict[str, Any]]:
        return [{"id": "admin-1"}]

    async def reply_to_conversation(self, conversation_id: str, body: str, *, admin_id: str) -> dict[str, Any]:
        self.replies.append((conversation_id, body, admin_id))
        return {"id": "part-1"}

    async def aclose(self) -> None:
        return None


def test_business_hours_window() -> None:
    assert is_business_hours(WEEKDAY_NOON)
    assert not is_business_hours(datetime(2024, 1, 3, 18, 0, tzinfo=timezone.utc))
    assert not is_business_hours(datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc))


def test_settings_merge_stored_overrides_with_defaults() -> None:
    settings = DeflectionSettings.from_stored({"confidence_threshold": 0.9, "unknown": True, "custom_instructions": None})
    assert settings.confidence_threshold == 0.9
    assert settings.escalation_threshold == 0.5
    assert "urgent" in settings.escalation_keywords
    assert DeflectionSettings.from_stored(None) == DeflectionSettings.defaults()


@pytest.mark.parametrize(
    ("overrides", "settings_overrides", "reason"),
    [
        ({}, {"auto_response_enabled": False}, "Auto-response disabled"),
        ({"category": "Billing"}, {"excluded_categories": ["Billing"]}, 'Category "Billing" is excluded'),
        ({"content": "This is URGENT, please fix my login"}, {}, "Contains escalation keyword"),
        ({"priority": "priority"}, {}, "High priority ticket - human escalation required"),
        ({"content": "help"}, {}, "Ticket content too short"),
        ({"content": "x" * 5001}, {}, "Ticket content too long"),
    ],
)
def test_preflight_rejections(overrides: dict, settings_overrides: dict, reason: str) -> None:
    settings = DeflectionSettings.from_stored(settings_overrides)
    result = preflight_checks(_ticket(**overrides), settings, WEEKDAY_NOON)
    assert result.should_process is False
    assert result.reason == reason


def test_preflight_business_hours_and_pass() -> None:
    settings = DeflectionSettings.from_stored({"business_hours_only": True})
    weekend = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)
    assert preflight_checks(_ticket(), settings, weekend).reason == "Outside business hours"
    passed = preflight_checks(_ticket(), settings, WEEKDAY_NOON)
    assert passed.should_process is True
    assert passed.reason == "All checks passed"


def test_parse_function_arguments_validates_shape() -> None:
    content, response_type, confidence, reasoning = parse_function_arguments(
        {"response_content": " Try this ", "response_type": "follow_up", "confidence_score": 1.7, "reasoning": "ok"}
    )
    assert (content, response_type, confidence, reasoning) == ("Try this", "follow_up", 1.0, "ok")
    for bad in (None, {"response_content": "x", "response_type": "other", "confidence_score": 0.5}):
        with pytest.raises(LLMError):
            parse_function_arguments(bad)


async def _load(session, user_id: str, **ticket_fields: Any) -> tuple[User, Ticket]:
    user = await session.get(User, user_id)
    ticket = _ticket(user_id=user_id, **ticket_fields)
    session.add(ticket)
    await session.flush()
    return user, ticket


@pytest.mark.asyncio
async def test_engine_auto_resolves_confident_responses() -> None:
    owner, _headers = await create_test_user()
    async with SessionLocal() as session:
        session.add(
            KnowledgeBaseArticle(
                user_id=owner.id,
                title="Resetting your password",
                content="Use the forgot password link on the login page.",
                category="Account",
                tags=["password"],
            )
        )
        user, ticket = await _load(session, owner.id)
        llm = FakeLLMProvider()
        result = await TicketDeflectionEngine(session, user, llm=llm).process_ticket(ticket, now=WEEKDAY_NOON)
        await session.commit()

        assert result.should_respond is True
        assert result.sent_to_intercom is False
        assert ticket.status == "auto_resolved"
        assert ticket.deflected is True
        assert llm.calls[0]["function"] == "generate_support_response"
        assert "Resetting your password" in llm.calls[0]["messages"][1]["content"]

        stored = (await session.execute(select(AiResponse))).scalars().all()
        assert len(stored) == 1
        assert stored[0].response_type == "auto_resolve"
        assert stored[0].cost_usd == pytest.approx(150 * 0.000002)
        assert len(stored[0].article_ids) == 1


@pytest.mark.asyncio
async def test_engine_escalates_low_confidence_responses() -> None:
    owner, _headers = await create_test_user()
    llm = FakeLLMProvider(
        function_arguments={
            "response_content": "Maybe try clearing your cache.",
            "response_type": "follow_up",
            "confidence_score": 0.42,
            "reasoning": "Unclear issue",
        }
    )
    async with SessionLocal() as session:
        user, ticket = await _load(session, owner.id)
        result = await TicketDeflectionEngine(session, user, llm=llm).process_ticket(ticket, now=WEEKDAY_NOON)
        await session.commit()
        assert result.should_respond is False
        assert result.reason == "Low confidence (42%) - escalating to human"
        assert ticket.status != "auto_resolved"
        record = await session.get(AiResponse, result.response_id)
        assert record.response_type == "escalate"


@pytest.mark.asyncio
async def test_engine_respects_trial_limits() -> None:
    owner, _headers = await create_test_user(with_trial=True, trial_usage={"ai_responses_used": 100})
    llm = FakeLLMProvider()
    async with SessionLocal() as session:
        user, ticket = await _load(session, owner.id)
        result = await TicketDeflectionEngine(session, user, llm=llm).process_ticket(ticket, now=WEEKDAY_NOON)
    assert result.should_respond is False
    assert "Trial limit" in result.reason
    assert llm.calls == []


@pytest.mark.asyncio
async def test_engine_replies_in_intercom_for_synced_tickets() -> None:
    owner, _headers = await create_test_user(intercom_token="tok", workspace_id="ws-1")
    intercom = FakeIntercom()
    async with SessionLocal() as session:
        user, ticket = await _load(session, owner.id, source="intercom", external_id="conv-9")
        engine = TicketDeflectionEngine(session, user, llm=FakeLLMProvider(), intercom=intercom)
        result = await engine.process_ticket(ticket, now=WEEKDAY_NOON)
        await session.commit()
        record = await session.get(AiResponse, result.response_id)
    assert result.sent_to_intercom is True
    assert intercom.replies[0][0] == "conv-9"
    assert intercom.replies[0][2] == "admin-1"
    assert record.intercom_message_id == "part-1"


@pytest.mark.asyncio
async def test_feedback_updates_response_and_metrics() -> None:
    owner, _headers = await create_test_user()
    async with SessionLocal() as session:
        user, ticket = await _load(session, owner.id)
        await TicketDeflectionEngine(session, user, llm=FakeLLMProvider()).process_ticket(ticket, now=WEEKDAY_NOON)
        record = await learn_from_feedback(session, owner.id, ticket.id, satisfied=True, feedback="Great")
        await session.commit()
        assert record is not None
        assert record.customer_satisfied is True
        assert await learn_from_feedback(session, owner.id, "missing", satisfied=False) is None

        metrics = await deflection_metrics(session, owner.id, days=30)
    assert metrics["total_responses"] == 1
    assert metrics["auto_resolved"] == 1
    assert metrics["deflection_rate"] == 100.0
    assert metrics["satisfaction_rate"] == 100.0
    assert metrics["estimated_savings_usd"] == 25.0
