from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.core.errors import IntercomError, LLMError, ProviderConfigError, TrialLimitExceededError
from supportiq.domain.models import AiResponse, KnowledgeBaseArticle, Ticket, User, utc_now
from supportiq.persistence.repos import ai_responses as responses_repo
from supportiq.providers.intercom.client import IntercomClient
from supportiq.providers.llm.base import FunctionSpec, LLMProvider
from supportiq.services import knowledge_base as kb_service
from supportiq.services import trial as trial_service
from supportiq.services.crypto import decrypt


logger = logging.getLogger(__name__)

MIN_CONTENT_CHARS = 10
MAX_CONTENT_CHARS = 5000
RESPONSE_TYPES = ("auto_resolve", "follow_up", "escalate")
# Intercom marks priority conversations "priority"; analysis may label them "urgent".
PRIORITY_MARKERS = ("priority", "urgent")

SUPPORT_RESPONSE_FUNCTION = FunctionSpec(
    name="generate_support_response",
    description="Generate a customer support response with confidence scoring",
    parameters={
        "type": "object",
        "properties": {
            "response_content": {
                "type": "string",
                "description": "The actual response to send to the customer",
            },
            "response_type": {
                "type": "string",
                "enum": list(RESPONSE_TYPES),
                "description": "Type of response based on confidence and complexity",
            },
            "confidence_score": {
                "type": "number",
                "minimum": 0.0,
                "maximum": 1.0,
                "description": "Confidence score for this response (0.0-1.0)",
            },
            "reasoning": {
                "type": "string",
                "description": "Why this response type and confidence score were chosen",
            },
        },
        "required": ["response_content", "response_type", "confidence_score", "reasoning"],
    },
)


@dataclass(frozen=True)
class DeflectionSettings:
    auto_response_enabled: bool = True
    confidence_threshold: float = 0.8
    escalation_threshold: float = 0.5
    response_language: str = "en"
    business_hours_only: bool = False
    excluded_categories: list[str] = field(default_factory=list)
    escalation_keywords: list[str] = field(default_factory=list)
    custom_instructions: str | None = None

    @classmethod
    def defaults(cls) -> "DeflectionSettings":
        settings = get_settings()
        return cls(
            confidence_threshold=settings.deflection_confidence_threshold,
            escalation_threshold=settings.deflection_escalation_threshold,
            escalation_keywords=settings.escalation_keywords(),
        )

    @classmethod
    def from_stored(cls, stored: dict[str, Any] | None) -> "DeflectionSettings":
        # Missing keys fall back to defaults; unknown keys are ignored.
        base = cls.defaults()
        if not stored:
            return base
        known = {f.name for f in fields(cls)}
        overrides = {key: value for key, value in stored.items() if key in known and value is not None}
        values = {**base.as_dict(), **overrides}
        return cls(**values)

    def as_dict(self) -> dict[str, Any]:
        return {
            "auto_response_enabled": self.auto_response_enabled,
            "confidence_threshold": self.confidence_threshold,
            "escalation_threshold": self.escalation_threshold,
            "response_language": self.response_language,
            "business_hours_only": self.business_hours_only,
            "excluded_categories": list(self.excluded_categories),
            "escalation_keywords": list(self.escalation_keywords),
            "custom_instructions": self.custom_instructions,
        }


@dataclass(frozen=True)
class PreflightResult:
    should_process: bool
    reason: str


@dataclass(frozen=True)
class GeneratedResponse:
    response_content: str
    response_type: str
    confidence_score: float
    reasoning: str
    tokens_used: int
    cost_usd: float
    article_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProcessingResult:
    should_respond: bool
    reason: str
    response: GeneratedResponse | None = None
    response_id: str | None = None
    sent_to_intercom: bool = False


def is_business_hours(now: datetime) -> bool:
    # Monday-Friday, 09:00-17:00 UTC.
    return now.weekday() < 5 and 9 <= now.hour < 17


def preflight_checks(ticket: Ticket, settings: DeflectionSettings, now: datetime) -> PreflightResult:
    if not settings.auto_response_enabled:
        return PreflightResult(False, "Auto-response disabled")
    if settings.business_hours_only and not is_business_hours(now):
        return PreflightResult(False, "Outside business hours")
    if ticket.category and ticket.category in settings.excluded_categories:
        return PreflightResult(False, f'Category "{ticket.category}" is excluded')
    content = (ticket.content or "").lower()
    subject = (ticket.subject or "").lower()
    for keyword in settings.escalation_keywords:
        needle = keyword.lower()
        if needle and (needle in content or needle in subject):
            return PreflightResult(False, "Contains escalation keyword")
    if ticket.priority in PRIORITY_MARKERS:
        return PreflightResult(False, "High priority ticket - human escalation required")
    length = len((ticket.content or "").strip())
    if length < MIN_CONTENT_CHARS:
        return PreflightResult(False, "Ticket content too short")
    if length > MAX_CONTENT_CHARS:
        return PreflightResult(False, "Ticket content too long")
    return PreflightResult(True, "All checks passed")


def calculate_cost(tokens: int) -> float:
    return tokens * get_settings().token_cost_usd


def build_system_prompt(settings: DeflectionSettings) -> str:
    prompt = (
        "You are an expert customer support AI for SupportIQ. Your goal is to provide helpful, "
        "accurate responses that resolve customer issues.\n\n"
        "Response Guidelines:\n"
        "- Be empathetic and professional\n"
        "- Provide specific, actionable solutions\n"
        "- Keep responses concise but complete\n"
        "- Suggest escalation if the issue is complex or sensitive\n\n"
        "Available response types:\n"
        "- auto_resolve: High confidence, complete solution provided\n"
        "- follow_up: Medium confidence, partial solution with follow-up needed\n"
        "- escalate: Low confidence or complex issue requiring human intervention\n\n"
        f"Language: {settings.response_language}"
    )
    if settings.custom_instructions:
        prompt += f"\n\nCustom Instructions: {settings.custom_instructions}"
    return prompt


def build_ticket_prompt(ticket: Ticket, articles: list[KnowledgeBaseArticle]) -> str:
    if articles:
        knowledge = "\n---\n".join(f"Title: {a.title}\nContent: {a.content}\n" for a in articles)
    else:
        knowledge = "No relevant knowledge base articles found"
    return (
        "CUSTOMER TICKET:\n"
        f"Subject: {ticket.subject or 'No subject'}\n"
        f"Content: {ticket.content}\n"
        f"Category: {ticket.category or 'Uncategorized'}\n"
        f"Customer Email: {ticket.customer_email or 'unknown'}\n\n"
        f"RELEVANT KNOWLEDGE BASE:\n{knowledge}\n\n"
        "Please generate an appropriate response for this customer ticket. Consider the customer's "
        "specific issue, the knowledge base information, and your confidence in solving this issue.\n\n"
        "Provide a complete response with confidence scoring."
    )


def parse_function_arguments(arguments: dict[str, Any] | None) -> tuple[str, str, float, str]:
    if not arguments:
        raise LLMError("Invalid AI response format")
    content = str(arguments.get("response_content") or "").strip()
    response_type = arguments.get("response_type")
    if not content or response_type not in RESPONSE_TYPES:
        raise LLMError("Invalid AI response format")
    try:
        confidence = float(arguments.get("confidence_score"))
    except (TypeError, ValueError) as exc:
        raise LLMError("Invalid AI response format") from exc
    confidence = max(0.0, min(1.0, confidence))
    return content, response_type, confidence, str(arguments.get("reasoning") or "")


class TicketDeflectionEngine:
    """Decide whether to auto-answer a ticket and record the outcome.

    One engine instance is bound to a user and their deflection settings for
    the duration of a request or job.
    """

    def __init__(
        self,
        session: AsyncSession,
        user: User,
        *,
        llm: LLMProvider | None,
        settings: DeflectionSettings | None = None,
        intercom: IntercomClient | None = None,
    ) -> None:
        self._session = session
        self._user = user
        self._llm = llm
        self._settings = settings or DeflectionSettings.from_stored(user.deflection_settings)
        self._intercom = intercom

    @property
    def settings(self) -> DeflectionSettings:
        return self._settings

    async def process_ticket(self, ticket: Ticket, *, now: datetime | None = None) -> ProcessingResult:
        current = now or utc_now()
        preflight = preflight_checks(ticket, self._settings, current)
        if not preflight.should_process:
            logger.info("deflection_skipped ticket_id=%s reason=%s", ticket.id, preflight.reason)
            return ProcessingResult(should_respond=False, reason=preflight.reason)
        if self._llm is None:
            return ProcessingResult(should_respond=False, reason="AI responses are not configured")
        try:
            await trial_service.enforce_trial_limit(self._session, self._user.id, "ai_responses_used")
        except TrialLimitExceededError as exc:
            return ProcessingResult(should_respond=False, reason=exc.message)

        try:
            generated = await self._generate_response(ticket)
        except (LLMError, ProviderConfigError) as exc:
            logger.warning("deflection_generation_failed ticket_id=%s error=%s", ticket.id, exc)
            return ProcessingResult(should_respond=False, reason=exc.message)

        await trial_service.track_usage(self._session, self._user.id, "ai_responses_used")

        if self._should_auto_resolve(generated):
            record = await self._store(ticket, generated, response_type=generated.response_type)
            sent = await self._send(ticket, record)
            ticket.status = "auto_resolved"
            ticket.deflected = True
            ticket.deflection_response = generated.response_content
            ticket.deflection_confidence = generated.confidence_score
            await self._session.flush()
            logger.info(
                "deflection_auto_resolved ticket_id=%s confidence=%.2f sent=%s",
                ticket.id,
                generated.confidence_score,
                sent,
            )
            return ProcessingResult(
                should_respond=True,
                reason="High confidence AI response generated",
                response=generated,
                response_id=record.id,
                sent_to_intercom=sent,
            )

        record = await self._store(ticket, generated, response_type="escalate")
        reason = f"Low confidence ({round(generated.confidence_score * 100)}%) - escalating to human"
        logger.info("deflection_escalated ticket_id=%s confidence=%.2f", ticket.id, generated.confidence_score)
        return ProcessingResult(should_respond=False, reason=reason, response=generated, response_id=record.id)

    def _should_auto_resolve(self, generated: GeneratedResponse) -> bool:
        return (
            generated.confidence_score >= self._settings.confidence_threshold
            and generated.response_type == "auto_resolve"
        )

    async def _generate_response(self, ticket: Ticket) -> GeneratedResponse:
        settings = get_settings()
        text = f"{ticket.content} {ticket.subject or ''}"
        articles = await kb_service.relevant_articles(self._session, self._user.id, text, limit=3)
        messages = [
            {"role": "system", "content": build_system_prompt(self._settings)},
            {"role": "user", "content": build_ticket_prompt(ticket, articles)},
        ]
        result = await self._llm.complete(
            messages,
            temperature=settings.response_temperature,
            max_tokens=settings.response_max_tokens,
            function=SUPPORT_RESPONSE_FUNCTION,
        )
        content, response_type, confidence, reasoning = parse_function_arguments(result.function_arguments)
        for article in articles:
            article.usage_count += 1
        return GeneratedResponse(
            response_content=content,
            response_type=response_type,
            confidence_score=confidence,
            reasoning=reasoning,
            tokens_used=result.total_tokens,
            cost_usd=calculate_cost(result.total_tokens),
            article_ids=[article.id for article in articles],
        )

    async def _store(self, ticket: Ticket, generated: GeneratedResponse, *, response_type: str) -> AiResponse:
        return await responses_repo.create_response(
            self._session,
            ticket_id=ticket.id,
            user_id=self._user.id,
            response_content=generated.response_content,
            response_type=response_type,
            confidence_score=generated.confidence_score,
            reasoning=generated.reasoning,
            tokens_used=generated.tokens_used,
            cost_usd=generated.cost_usd,
            article_ids=list(generated.article_ids),
            sent_to_intercom=False,
        )

    async def _send(self, ticket: Ticket, record: AiResponse) -> bool:
        # Only Intercom-sourced tickets on a connected workspace can be answered in place.
        if ticket.source != "intercom" or not ticket.external_id or not self._user.intercom_access_token:
            return False
        client = self._intercom
        if client is None:
            try:
                client = IntercomClient(decrypt(self._user.intercom_access_token))
            except (ValueError, ProviderConfigError) as exc:
                logger.warning("intercom_token_unreadable user_id=%s error=%s", self._user.id, exc)
                return False
        try:
            admin_id = self._user.intercom_admin_id
            if not admin_id:
                admins = await client.list_admins()
                admin_id = str(admins[0]["id"]) if admins else None
            if not admin_id:
                logger.warning("intercom_reply_skipped ticket_id=%s reason=no_admin", ticket.id)
                return False
            reply = await client.reply_to_conversation(ticket.external_id, record.response_content, admin_id=admin_id)
        except IntercomError as exc:
            logger.warning("intercom_reply_failed ticket_id=%s error=%s", ticket.id, exc)
            return False
        finally:
            if self._intercom is None:
                await client.aclose()
        record.sent_to_intercom = True
        record.intercom_message_id = str(reply.get("id") or "") or None
        await self._session.flush()
        return True


async def learn_from_feedback(
    session: AsyncSession,
    user_id: str,
    ticket_id: str,
    *,
    satisfied: bool,
    feedback: str | None = None,
) -> AiResponse | None:
    record = await responses_repo.latest_for_ticket(session, user_id, ticket_id)
    if record is None:
        return None
    record.customer_satisfied = satisfied
    record.customer_feedback = feedback
    if record.article_ids:
        await kb_service.record_article_outcome(session, user_id, record.article_ids, satisfied=satisfied)
    await session.flush()
    logger.info("deflection_feedback ticket_id=%s satisfied=%s", ticket_id, satisfied)
    return record


async def deflection_metrics(session: AsyncSession, user_id: str, *, days: int = 30) -> dict[str, Any]:
    since = utc_now() - timedelta(days=days)
    responses = await responses_repo.list_since(session, user_id, since)
    total = len(responses)
    by_type = {response_type: 0 for response_type in RESPONSE_TYPES}
    for response in responses:
        by_type[response.response_type] = by_type.get(response.response_type, 0) + 1
    rated = [r for r in responses if r.customer_satisfied is not None]
    satisfied = sum(1 for r in rated if r.customer_satisfied)
    auto_resolved = by_type.get("auto_resolve", 0)
    return {
        "period_days": days,
        "total_responses": total,
        "auto_resolved": auto_resolved,
        "follow_up": by_type.get("follow_up", 0),
        "escalated": by_type.get("escalate", 0),
        "deflection_rate": round(auto_resolved / total * 100, 2) if total else 0.0,
        "avg_confidence": round(sum(r.confidence_score for r in responses) / total, 4) if total else 0.0,
        "satisfaction_rate": round(satisfied / len(rated) * 100, 2) if rated else None,
        "total_tokens": sum(r.tokens_used for r in responses),
        "total_cost_usd": round(sum(r.cost_usd for r in responses), 6),
        "estimated_savings_usd": round(auto_resolved * get_settings().avg_ticket_cost_usd, 2),
    }
