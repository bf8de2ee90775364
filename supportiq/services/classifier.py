from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Sequence

from supportiq.core.config import get_settings
from supportiq.core.errors import EmbeddingError, LLMError, ProviderConfigError
from supportiq.providers.embeddings import embed_text, find_similar
from supportiq.providers.llm.base import LLMProvider


logger = logging.getLogger(__name__)

CATEGORIES = ("Account", "Billing", "Feature Request", "Bug", "How-to", "Technical Issue", "Other")
PRIORITIES = ("low", "medium", "high", "urgent")
SENTIMENTS = ("positive", "neutral", "negative")
DEFLECTION_LEVELS = ("high", "medium", "low")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "is", "are", "was", "were", "be", "been", "have", "has", "had", "do", "does", "did",
        "will", "would", "could", "should", "can", "may", "might", "must", "this", "that",
        "these", "those", "i", "you", "he", "she", "it", "we", "they", "me", "him", "her",
        "us", "them", "my", "your", "his", "its", "our", "their", "not", "please", "thanks",
        "hello", "from", "just", "get", "any", "all",
    }
)

_WORD_RE = re.compile(r"[^\w\s]")
_NEGATIVE_WORDS = ("angry", "frustrated", "terrible", "awful", "worst", "unacceptable", "broken", "disappointed", "hate", "annoyed")
_POSITIVE_WORDS = ("thank", "great", "love", "awesome", "appreciate", "excellent", "happy")
_URGENT_WORDS = ("urgent", "emergency", "asap", "immediately", "critical", "down", "outage")

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert customer support analyst. Provide accurate, consistent analysis "
    "for ticket categorization and deflection assessment. Reply with a single JSON object."
)
RESPONSE_SYSTEM_PROMPT = (
    "You are a helpful customer support agent. Generate personalized, helpful responses "
    "that solve customer issues efficiently."
)


@dataclass(frozen=True)
class Scenario:
    key: str
    category: str
    subcategory: str
    deflection_potential: str
    keywords: tuple[str, ...]
    estimated_resolution_time: int
    requires_human: bool


# Built-in support scenarios used to fill gaps in model output and for offline analysis.
SCENARIOS: tuple[Scenario, ...] = (
    Scenario("password_reset", "Account", "Authentication", "high",
             ("password", "reset", "forgot", "login", "access"), 5, False),
    Scenario("billing_inquiry", "Billing", "Payment", "medium",
             ("billing", "payment", "invoice", "charge", "subscription"), 15, True),
    Scenario("feature_request", "Feature Request", "Enhancement", "low",
             ("feature", "request", "add", "new", "enhancement"), 30, True),
    Scenario("bug_report", "Bug", "Technical Issue", "low",
             ("bug", "error", "broken", "not working", "issue"), 45, True),
    Scenario("how_to", "How-to", "Documentation", "high",
             ("how", "guide", "tutorial", "help", "documentation"), 10, False),
)

_SCENARIO_MATCH_THRESHOLD = 0.3
_MAX_CONFIDENCE = 0.95


@dataclass(frozen=True)
class TicketInput:
    id: str | None
    subject: str | None
    content: str

    @property
    def text(self) -> str:
        return f"{self.subject or ''} {self.content or ''}".strip()


@dataclass(frozen=True)
class TicketAnalysis:
    category: str
    priority: str
    sentiment: str
    sentiment_score: float
    deflection_potential: str
    confidence: float
    keywords: list[str]
    intent: str
    estimated_resolution_time: int
    requires_human: bool
    tags: list[str]
    subcategory: str | None = None
    similar_tickets: list[str] = field(default_factory=list)
    embedding: list[float] | None = None
    source: str = "llm"

    def as_ticket_fields(self) -> dict[str, Any]:
        fields = {
            "category": self.category,
            "subcategory": self.subcategory,
            "priority": self.priority,
            "sentiment": self.sentiment,
            "sentiment_score": self.sentiment_score,
            "deflection_potential": self.deflection_potential,
            "confidence": self.confidence,
            "keywords": list(self.keywords),
            "intent": self.intent,
            "estimated_resolution_time": self.estimated_resolution_time,
            "requires_human": self.requires_human,
            "tags": list(self.tags),
            "similar_tickets": list(self.similar_tickets),
        }
        if self.embedding is not None:
            fields["embedding"] = list(self.embedding)
        return fields


@dataclass(frozen=True)
class DeflectionResponse:
    can_deflect: bool
    response: str
    confidence: float
    suggested_actions: list[str]
    follow_up_required: bool
    escalation_triggers: list[str]
    fallback_message: str | None = None


def extract_keywords(text: str, *, limit: int = 10) -> list[str]:
    # Lowercase, strip punctuation, drop stop words and short tokens; keep first-seen order.
    cleaned = _WORD_RE.sub(" ", text.lower())
    seen: list[str] = []
    for word in cleaned.split():
        if len(word) <= 2 or word in STOP_WORDS or word in seen:
            continue
        seen.append(word)
        if len(seen) >= limit:
            break
    return seen


def match_scenario(text: str) -> tuple[Scenario | None, float]:
    lowered = text.lower()
    best: Scenario | None = None
    best_score = 0.0
    for scenario in SCENARIOS:
        hits = sum(1 for keyword in scenario.keywords if keyword in lowered)
        score = hits / len(scenario.keywords)
        if score > best_score:
            best, best_score = scenario, score
    return best, best_score


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _choice(value: Any, allowed: Sequence[str], default: str | None) -> str | None:
    if isinstance(value, str):
        for option in allowed:
            if value.strip().lower() == option.lower():
                return option
    return default


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


def parse_analysis_payload(raw: str | None) -> dict[str, Any]:
    """Parse model output into normalized analysis fields.

    Unknown or malformed values are dropped (left as ``None``) so the scenario
    table and heuristics can fill them in afterwards.
    """
    if not raw:
        raise LLMError("empty analysis response")
    text = raw.strip()
    # Tolerate fenced code blocks around the JSON object.
    if text.startswith("```"):
        text = text.strip("`")
        text = text[text.find("{") :]
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise LLMError("analysis response was not JSON")
    try:
        data = json.loads(text[start : end + 1])
    except ValueError as exc:
        raise LLMError("analysis response was not JSON") from exc
    if not isinstance(data, dict):
        raise LLMError("analysis response was not a JSON object")

    resolution = data.get("estimatedResolutionTime")
    requires_human = data.get("requiresHuman")
    return {
        "category": _choice(data.get("category"), CATEGORIES, None),
        "subcategory": str(data["subcategory"]) if data.get("subcategory") else None,
        "priority": _choice(data.get("priority"), PRIORITIES, None),
        "sentiment": _choice(data.get("sentiment"), SENTIMENTS, None),
        "sentiment_score": _clamp(data.get("sentimentScore"), -1.0, 1.0, 0.0),
        "deflection_potential": _choice(data.get("deflectionPotential"), DEFLECTION_LEVELS, None),
        "confidence": _clamp(data.get("confidence"), 0.0, 1.0, 0.0) or None,
        "keywords": _string_list(data.get("keywords")),
        "intent": str(data["intent"]) if data.get("intent") else None,
        "estimated_resolution_time": int(_clamp(resolution, 0, 10_000, 0)) or None,
        "requires_human": requires_human if isinstance(requires_human, bool) else None,
        "tags": _string_list(data.get("tags")),
    }


def enhance_with_scenarios(fields: dict[str, Any], text: str) -> dict[str, Any]:
    # Model output wins; a scenario only fills fields the model left empty.
    scenario, score = match_scenario(text)
    if scenario is None or score <= _SCENARIO_MATCH_THRESHOLD:
        return fields
    merged = dict(fields)
    merged["category"] = fields.get("category") or scenario.category
    merged["subcategory"] = fields.get("subcategory") or scenario.subcategory
    merged["deflection_potential"] = fields.get("deflection_potential") or scenario.deflection_potential
    merged["estimated_resolution_time"] = (
        fields.get("estimated_resolution_time") or scenario.estimated_resolution_time
    )
    if fields.get("requires_human") is None:
        merged["requires_human"] = scenario.requires_human
    merged["confidence"] = min(fields.get("confidence") or 0.8, _MAX_CONFIDENCE)
    return merged


def heuristic_analysis(ticket: TicketInput) -> TicketAnalysis:
    """Deterministic analysis used when no LLM is configured or a call fails."""
    text = ticket.text
    lowered = text.lower()
    scenario, score = match_scenario(text)
    negative = sum(1 for word in _NEGATIVE_WORDS if word in lowered)
    positive = sum(1 for word in _POSITIVE_WORDS if word in lowered)
    sentiment_score = max(-1.0, min(1.0, 0.3 * (positive - negative)))
    sentiment = "negative" if sentiment_score < -0.2 else "positive" if sentiment_score > 0.2 else "neutral"
    urgent = any(word in lowered for word in _URGENT_WORDS)
    priority = "urgent" if urgent else "high" if sentiment == "negative" else "medium"
    keywords = extract_keywords(text)

    if scenario is not None and score > 0:
        return TicketAnalysis(
            category=scenario.category,
            subcategory=scenario.subcategory,
            priority=priority,
            sentiment=sentiment,
            sentiment_score=round(sentiment_score, 2),
            deflection_potential=scenario.deflection_potential,
            confidence=round(min(0.5 + score / 2, _MAX_CONFIDENCE), 2),
            keywords=keywords,
            intent=f"Resolve {scenario.subcategory.lower()} question",
            estimated_resolution_time=scenario.estimated_resolution_time,
            requires_human=scenario.requires_human or urgent,
            tags=[scenario.key.replace("_", "-")],
            source="heuristic",
        )
    return TicketAnalysis(
        category="Other",
        subcategory=None,
        priority=priority,
        sentiment=sentiment,
        sentiment_score=round(sentiment_score, 2),
        deflection_potential="low",
        confidence=0.5,
        keywords=keywords,
        intent="Get help with a problem",
        estimated_resolution_time=30,
        requires_human=True,
        tags=["support"],
        source="heuristic",
    )


def build_analysis_prompt(ticket: TicketInput, similar_contents: Iterable[str]) -> str:
    context = "\n".join(f"{idx}. {content[:200]}..." for idx, content in enumerate(similar_contents, start=1))
    return (
        "Analyze this customer support ticket and provide detailed categorization and deflection analysis:\n\n"
        f"TICKET:\nSubject: {ticket.subject or 'No subject'}\nContent: {ticket.content or 'No content'}\n\n"
        f"SIMILAR TICKETS (for context):\n{context or 'None'}\n\n"
        "Provide analysis in this JSON format:\n"
        "{\n"
        f'  "category": "{"|".join(CATEGORIES)}",\n'
        '  "subcategory": "specific subcategory",\n'
        '  "priority": "low|medium|high|urgent",\n'
        '  "sentiment": "positive|neutral|negative",\n'
        '  "sentimentScore": -1.0 to 1.0,\n'
        '  "deflectionPotential": "high|medium|low",\n'
        '  "confidence": 0.0 to 1.0,\n'
        '  "keywords": ["keyword1", "keyword2"],\n'
        '  "intent": "what the user is trying to accomplish",\n'
        '  "estimatedResolutionTime": minutes,\n'
        '  "requiresHuman": true/false,\n'
        '  "tags": ["tag1", "tag2"]\n'
        "}"
    )


async def analyze_ticket(
    ticket: TicketInput,
    candidates: Sequence[Any] = (),
    *,
    llm: LLMProvider | None,
) -> TicketAnalysis:
    """Classify a ticket with one LLM call, using similar tickets as context.

    ``candidates`` are ticket rows (or any objects) exposing ``id``, ``content``
    and ``embedding``. Any provider failure degrades to the heuristic analysis.
    """
    settings = get_settings()
    embedding: list[float] | None = None
    try:
        embedding = await embed_text(ticket.text)
    except (EmbeddingError, ProviderConfigError) as exc:
        logger.warning("ticket_embedding_failed ticket_id=%s error=%s", ticket.id, exc)

    similar = []
    if embedding is not None:
        similar = find_similar(
            embedding,
            ((str(c.id), c.embedding, c) for c in candidates),
            threshold=settings.similarity_threshold,
            max_results=settings.similarity_max_results,
        )
    similar_ids = [item.id for item in similar]

    if llm is None:
        return replace(heuristic_analysis(ticket), similar_tickets=similar_ids, embedding=embedding)

    messages = [
        {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": build_analysis_prompt(ticket, (item.payload.content or "" for item in similar)),
        },
    ]
    try:
        result = await llm.complete(
            messages,
            temperature=settings.analysis_temperature,
            max_tokens=settings.analysis_max_tokens,
            json_mode=True,
        )
        fields = parse_analysis_payload(result.content)
    except (LLMError, ProviderConfigError) as exc:
        logger.warning("ticket_analysis_fallback ticket_id=%s error=%s", ticket.id, exc)
        return replace(heuristic_analysis(ticket), similar_tickets=similar_ids, embedding=embedding)

    fields = enhance_with_scenarios(fields, ticket.text)
    fallback = heuristic_analysis(ticket)
    return TicketAnalysis(
        category=fields.get("category") or fallback.category,
        subcategory=fields.get("subcategory") or fallback.subcategory,
        priority=fields.get("priority") or fallback.priority,
        sentiment=fields.get("sentiment") or fallback.sentiment,
        sentiment_score=fields.get("sentiment_score") or 0.0,
        deflection_potential=fields.get("deflection_potential") or fallback.deflection_potential,
        confidence=fields.get("confidence") or fallback.confidence,
        keywords=fields.get("keywords") or fallback.keywords,
        intent=fields.get("intent") or fallback.intent,
        estimated_resolution_time=fields.get("estimated_resolution_time") or fallback.estimated_resolution_time,
        requires_human=(
            fields["requires_human"] if fields.get("requires_human") is not None else fallback.requires_human
        ),
        tags=fields.get("tags") or fallback.tags,
        similar_tickets=similar_ids,
        embedding=embedding,
        source="llm",
    )


def escalation_message(analysis: TicketAnalysis) -> str:
    return (
        f"Thank you for reaching out! I understand your {analysis.category.lower()} issue and want to make "
        "sure you get the best possible help.\n\n"
        "I'm going to escalate this to one of our support specialists who can provide you with personalized "
        "assistance. You should receive a response within the next few hours.\n\n"
        "In the meantime, if you have any additional details about your issue, please feel free to share them.\n\n"
        "Thank you for your patience!"
    )


_FALLBACK_MESSAGE = (
    "If this doesn't address your question, please let me know and I'll be happy to connect you "
    "with a human agent who can provide more personalized assistance."
)


async def generate_deflection_response(
    analysis: TicketAnalysis,
    ticket: TicketInput,
    *,
    llm: LLMProvider | None,
) -> DeflectionResponse:
    # Deflect only high-potential tickets that don't need a human.
    can_deflect = analysis.deflection_potential == "high" and not analysis.requires_human
    if not can_deflect:
        return DeflectionResponse(
            can_deflect=False,
            response=escalation_message(analysis),
            confidence=0.9,
            suggested_actions=["Escalate to human agent"],
            follow_up_required=True,
            escalation_triggers=["Complex issue", "Requires human intervention"],
        )

    if llm is None:
        return DeflectionResponse(
            can_deflect=True,
            response="Thank you for reaching out! I can help you with that. Here's what you need to know...",
            confidence=0.8,
            suggested_actions=["Send automated response"],
            follow_up_required=False,
            escalation_triggers=["Customer requests escalation"],
            fallback_message=_FALLBACK_MESSAGE,
        )

    settings = get_settings()
    prompt = (
        "Generate a helpful, personalized response for this customer support ticket:\n\n"
        f"TICKET ANALYSIS:\n- Category: {analysis.category}\n- Intent: {analysis.intent}\n"
        f"- Keywords: {', '.join(analysis.keywords)}\n- Sentiment: {analysis.sentiment}\n\n"
        f"TICKET CONTENT:\n{ticket.content}\n\n"
        "Address the specific question with clear, actionable steps in a helpful, professional tone, "
        "and offer to escalate if needed."
    )
    try:
        result = await llm.complete(
            [
                {"role": "system", "content": RESPONSE_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.7,
            max_tokens=500,
        )
    except (LLMError, ProviderConfigError) as exc:
        logger.warning("deflection_response_failed ticket_id=%s error=%s", ticket.id, exc)
        return DeflectionResponse(
            can_deflect=False,
            response=escalation_message(analysis),
            confidence=0.9,
            suggested_actions=["Escalate to human agent"],
            follow_up_required=True,
            escalation_triggers=["Response generation failed"],
        )
    return DeflectionResponse(
        can_deflect=True,
        response=(result.content or "").strip(),
        confidence=0.85,
        suggested_actions=["Send automated response", "Monitor for follow-up"],
        follow_up_required=False,
        escalation_triggers=["Customer requests escalation", "Complex follow-up question"],
        fallback_message=_FALLBACK_MESSAGE,
    )


def _breakdown(values: list[str], total: int, *, limit: int | None = None) -> list[dict[str, Any]]:
    counts: dict[str, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    rows = [
        {"name": name, "count": count, "percentage": round(count / total * 100, 2) if total else 0.0}
        for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ]
    return rows[:limit] if limit else rows


def calculate_ticket_metrics(tickets: Sequence[Any]) -> dict[str, Any]:
    total = len(tickets)
    deflected = sum(1 for t in tickets if getattr(t, "deflected", False))
    response_times = [t.response_time_minutes for t in tickets if getattr(t, "response_time_minutes", None)]
    resolution_times = [
        t.estimated_resolution_time for t in tickets if getattr(t, "estimated_resolution_time", None)
    ]
    keyword_pool = [kw for t in tickets for kw in (getattr(t, "keywords", None) or [])]
    return {
        "total_tickets": total,
        "deflected_tickets": deflected,
        "deflection_rate": round(deflected / total * 100, 2) if total else 0.0,
        "avg_response_time": round(sum(response_times) / len(response_times), 2) if response_times else 0.0,
        "avg_resolution_time": round(sum(resolution_times) / len(resolution_times), 2) if resolution_times else 0.0,
        "top_categories": _breakdown([t.category or "Uncategorized" for t in tickets], total, limit=5),
        "top_issues": _breakdown(keyword_pool, len(keyword_pool), limit=5),
        "sentiment_breakdown": _breakdown([t.sentiment or "neutral" for t in tickets], total),
    }
