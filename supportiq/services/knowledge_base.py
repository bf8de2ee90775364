from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.errors import LLMError, ProviderConfigError
from supportiq.domain.models import KnowledgeBaseArticle, Ticket, utc_now
from supportiq.persistence.repos import knowledge_base as kb_repo
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.providers.llm.base import LLMProvider
from supportiq.services.classifier import extract_keywords


logger = logging.getLogger(__name__)


def _clean_tags(value: list[str] | None) -> list[str]:
    if not value:
        return []
    seen: list[str] = []
    for tag in value:
        cleaned = str(tag).strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


class ArticleCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    content: str = Field(min_length=10)
    category: str = Field(min_length=1, max_length=100)
    tags: list[str] = Field(default_factory=list)

    model_config = {"extra": "forbid"}

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value)


class ArticleUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    content: str | None = Field(default=None, min_length=10)
    category: str | None = Field(default=None, min_length=1, max_length=100)
    tags: list[str] | None = None
    is_active: bool | None = None

    model_config = {"extra": "forbid"}

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _clean_tags(value)


async def create_article(session: AsyncSession, user_id: str, payload: ArticleCreate) -> KnowledgeBaseArticle:
    article = await kb_repo.create_article(
        session,
        user_id=user_id,
        title=payload.title.strip(),
        content=payload.content.strip(),
        category=payload.category.strip(),
        tags=payload.tags,
    )
    logger.info("kb_article_created user_id=%s article_id=%s", user_id, article.id)
    return article


async def update_article(
    session: AsyncSession, user_id: str, article_id: str, payload: ArticleUpdate
) -> KnowledgeBaseArticle | None:
    article = await kb_repo.get_article(session, user_id, article_id)
    if article is None:
        return None
    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(article, key, value.strip() if isinstance(value, str) else value)
    await session.flush()
    return article


async def delete_article(session: AsyncSession, user_id: str, article_id: str) -> bool:
    article = await kb_repo.get_article(session, user_id, article_id)
    if article is None:
        return False
    await kb_repo.delete_article(session, article)
    return True


async def search(
    session: AsyncSession,
    user_id: str,
    *,
    query: str | None = None,
    category: str | None = None,
    limit: int = 50,
) -> list[KnowledgeBaseArticle]:
    return await kb_repo.search_articles(
        session, user_id, query=query or None, category=category or None, limit=min(max(limit, 1), 50)
    )


def score_article(article: KnowledgeBaseArticle, keywords: Iterable[str]) -> int:
    # Count keyword hits across title, body and tags.
    haystack = f"{article.title} {article.content}".lower()
    tags = {tag.lower() for tag in (article.tags or [])}
    return sum(1 for keyword in keywords if keyword in haystack or keyword in tags)


async def relevant_articles(
    session: AsyncSession, user_id: str, text: str, *, limit: int = 3
) -> list[KnowledgeBaseArticle]:
    keywords = extract_keywords(text)
    if not keywords:
        return []
    # Small per-user corpus: rank in memory by keyword hits, then success rate.
    candidates = await kb_repo.search_articles(session, user_id, limit=200)
    scored = [(score_article(article, keywords), article) for article in candidates]
    ranked = sorted(
        ((score, article) for score, article in scored if score > 0),
        key=lambda pair: (pair[0], pair[1].success_rate),
        reverse=True,
    )
    return [article for _score, article in ranked[:limit]]


async def record_article_outcome(
    session: AsyncSession, user_id: str, article_ids: Iterable[str], *, satisfied: bool
) -> None:
    # Running average keeps success_rate in [0, 1] without storing every outcome.
    for article in await kb_repo.list_by_ids(session, user_id, article_ids):
        uses = max(article.usage_count, 1)
        article.success_rate = ((article.success_rate * (uses - 1)) + (1.0 if satisfied else 0.0)) / uses
    await session.flush()


def article_to_dict(article: KnowledgeBaseArticle) -> dict[str, Any]:
    return {
        "id": article.id,
        "title": article.title,
        "content": article.content,
        "category": article.category,
        "tags": list(article.tags or []),
        "usage_count": article.usage_count,
        "success_rate": article.success_rate,
        "is_active": article.is_active,
        "created_at": article.created_at.isoformat() if article.created_at else None,
        "updated_at": article.updated_at.isoformat() if article.updated_at else None,
    }


GENERATED_TAG = "generated"
GENERATION_COOLDOWN = timedelta(hours=24)
MAX_EXAMPLES_PER_ARTICLE = 5

FAQ_SYSTEM_PROMPT = (
    "You are a customer support expert who writes helpful FAQ articles. "
    "Write in a friendly, professional tone. Return only valid JSON."
)


@dataclass(frozen=True)
class TicketCluster:
    category: str
    tickets: list[Ticket]

    @property
    def frequency(self) -> int:
        return len(self.tickets)


@dataclass(frozen=True)
class GeneratedArticle:
    article: KnowledgeBaseArticle
    source_ticket_ids: list[str]
    confidence: float
    source: str


def cluster_tickets(tickets: Iterable[Ticket], *, min_ticket_count: int, max_clusters: int) -> list[TicketCluster]:
    """Group categorized tickets and keep the most frequent groups.

    Groups smaller than ``min_ticket_count`` are dropped; ties on size keep
    category name order so the output is stable.
    """
    grouped: dict[str, list[Ticket]] = defaultdict(list)
    for ticket in tickets:
        if ticket.category:
            grouped[ticket.category].append(ticket)
    clusters = [
        TicketCluster(category=category, tickets=items)
        for category, items in sorted(grouped.items())
        if len(items) >= min_ticket_count
    ]
    clusters.sort(key=lambda cluster: cluster.frequency, reverse=True)
    return clusters[:max_clusters]


def build_faq_prompt(cluster: TicketCluster) -> str:
    examples = []
    for index, ticket in enumerate(cluster.tickets[:MAX_EXAMPLES_PER_ARTICLE], start=1):
        examples.append(
            f"Example {index}:\nSubject: {ticket.subject or 'No subject'}\n"
            f"Customer Question: {(ticket.content or '')[:300]}"
        )
    return (
        "Based on these similar customer support tickets, create a FAQ article.\n\n"
        f"Common Theme: {cluster.category}\n"
        f"Frequency: {cluster.frequency} times in the recent period\n\n"
        + "\n\n".join(examples)
        + "\n\nReturn JSON with keys title (question format), content (step-by-step answer), "
        "category, tags (list of strings) and confidence (0-1)."
    )


def parse_faq_payload(raw: str | None, cluster: TicketCluster) -> tuple[ArticleCreate, float]:
    if not raw:
        raise LLMError("empty FAQ response")
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise LLMError("FAQ response was not JSON") from exc
    if not isinstance(data, dict):
        raise LLMError("FAQ response was not a JSON object")
    tags = data.get("tags") if isinstance(data.get("tags"), list) else []
    try:
        payload = ArticleCreate(
            title=str(data.get("title") or "").strip(),
            content=str(data.get("content") or "").strip(),
            category=str(data.get("category") or cluster.category).strip(),
            tags=[str(tag) for tag in tags] + [GENERATED_TAG],
        )
        confidence = float(data["confidence"]) if data.get("confidence") is not None else 0.8
    except (ValidationError, TypeError, ValueError) as exc:
        raise LLMError("FAQ response was missing required fields") from exc
    return payload, min(max(confidence, 0.0), 1.0)


def heuristic_faq(cluster: TicketCluster) -> ArticleCreate:
    subjects = [ticket.subject for ticket in cluster.tickets if ticket.subject][:MAX_EXAMPLES_PER_ARTICLE]
    text = " ".join(f"{ticket.subject or ''} {ticket.content or ''}" for ticket in cluster.tickets)
    keywords = extract_keywords(text)
    lines = [
        f"Customers asked about {cluster.category.lower()} topics {cluster.frequency} times recently.",
        "",
        "Common questions:",
        *(f"- {subject}" for subject in subjects),
    ]
    if keywords:
        lines += ["", f"Related terms: {', '.join(keywords[:5])}."]
    lines += ["", "If this does not answer your question, reply and our team will follow up."]
    return ArticleCreate(
        title=f"Common {cluster.category} questions",
        content="\n".join(lines),
        category=cluster.category,
        tags=keywords[:5] + [GENERATED_TAG],
    )


async def last_generated_at(session: AsyncSession, user_id: str, *, now: datetime | None = None) -> datetime | None:
    current = now or utc_now()
    recent = await kb_repo.list_created_since(session, user_id, current - GENERATION_COOLDOWN)
    for article in recent:
        if GENERATED_TAG in (article.tags or []):
            return article.created_at
    return None


async def generate_articles(
    session: AsyncSession,
    user_id: str,
    *,
    llm: LLMProvider | None,
    days_back: int = 30,
    min_ticket_count: int = 3,
    max_articles: int = 10,
    now: datetime | None = None,
) -> list[GeneratedArticle]:
    """Draft FAQ articles from recurring ticket categories.

    Each cluster is written by the LLM when one is configured; an unusable
    completion falls back to a template built from the cluster's subjects.
    Clusters whose title already exists for the user are skipped.
    """
    current = now or utc_now()
    tickets = await tickets_repo.list_since(session, user_id, current - timedelta(days=days_back))
    clusters = cluster_tickets(tickets, min_ticket_count=min_ticket_count, max_clusters=max_articles)
    existing_titles = await kb_repo.list_titles(session, user_id)

    generated: list[GeneratedArticle] = []
    for cluster in clusters:
        payload, confidence, source = heuristic_faq(cluster), 0.5, "heuristic"
        if llm is not None:
            try:
                result = await llm.complete(
                    [
                        {"role": "system", "content": FAQ_SYSTEM_PROMPT},
                        {"role": "user", "content": build_faq_prompt(cluster)},
                    ],
                    temperature=0.3,
                    max_tokens=1500,
                    json_mode=True,
                )
                payload, confidence = parse_faq_payload(result.content, cluster)
                source = "llm"
            except (LLMError, ProviderConfigError) as exc:
                logger.warning("kb_generation_fallback user_id=%s category=%s error=%s", user_id, cluster.category, exc)
        if payload.title.strip().lower() in existing_titles:
            continue
        article = await create_article(session, user_id, payload)
        existing_titles.add(payload.title.strip().lower())
        generated.append(
            GeneratedArticle(
                article=article,
                source_ticket_ids=[ticket.id for ticket in cluster.tickets],
                confidence=confidence,
                source=source,
            )
        )
    logger.info(
        "kb_articles_generated user_id=%s clusters=%s created=%s", user_id, len(clusters), len(generated)
    )
    return generated
