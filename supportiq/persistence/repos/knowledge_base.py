from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import KnowledgeBaseArticle


async def get_article(session: AsyncSession, user_id: str, article_id: str) -> KnowledgeBaseArticle | None:
    result = await session.execute(
        select(KnowledgeBaseArticle).where(
            KnowledgeBaseArticle.id == article_id,
            KnowledgeBaseArticle.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def search_articles(
    session: AsyncSession,
    user_id: str,
    *,
    query: str | None = None,
    category: str | None = None,
    active_only: bool = True,
    limit: int = 50,
) -> list[KnowledgeBaseArticle]:
    filters = [KnowledgeBaseArticle.user_id == user_id]
    if active_only:
        filters.append(KnowledgeBaseArticle.is_active.is_(True))
    if category:
        filters.append(KnowledgeBaseArticle.category == category)
    if query:
        pattern = f"%{query}%"
        filters.append(
            or_(KnowledgeBaseArticle.title.ilike(pattern), KnowledgeBaseArticle.content.ilike(pattern))
        )
    result = await session.execute(
        select(KnowledgeBaseArticle)
        .where(*filters)
        .order_by(KnowledgeBaseArticle.success_rate.desc(), KnowledgeBaseArticle.updated_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_by_ids(
    session: AsyncSession, user_id: str, article_ids: Iterable[str]
) -> list[KnowledgeBaseArticle]:
    ids = list(article_ids)
    if not ids:
        return []
    result = await session.execute(
        select(KnowledgeBaseArticle).where(
            KnowledgeBaseArticle.user_id == user_id,
            KnowledgeBaseArticle.id.in_(ids),
        )
    )
    return list(result.scalars().all())


async def create_article(session: AsyncSession, *, user_id: str, **fields: Any) -> KnowledgeBaseArticle:
    article = KnowledgeBaseArticle(user_id=user_id, **fields)
    session.add(article)
    await session.flush()
    return article


async def delete_article(session: AsyncSession, article: KnowledgeBaseArticle) -> None:
    await session.delete(article)
    await session.flush()


async def list_created_since(session: AsyncSession, user_id: str, since: datetime) -> list[KnowledgeBaseArticle]:
    result = await session.execute(
        select(KnowledgeBaseArticle)
        .where(KnowledgeBaseArticle.user_id == user_id, KnowledgeBaseArticle.created_at >= since)
        .order_by(KnowledgeBaseArticle.created_at.desc())
    )
    return list(result.scalars().all())


async def list_titles(session: AsyncSession, user_id: str) -> set[str]:
    result = await session.execute(
        select(KnowledgeBaseArticle.title).where(KnowledgeBaseArticle.user_id == user_id)
    )
    return {title.strip().lower() for title in result.scalars().all()}
