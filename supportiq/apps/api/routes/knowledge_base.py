from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_current_user, get_db, get_llm
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import User
from supportiq.persistence.repos import knowledge_base as kb_repo
from supportiq.providers.llm.base import LLMProvider
from supportiq.services import knowledge_base as kb_service
from supportiq.services.knowledge_base import ArticleCreate, ArticleUpdate, article_to_dict


router = APIRouter(prefix="/knowledge-base", tags=["knowledge-base"])


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "ARTICLE_NOT_FOUND", "message": "Article not found"})


@router.get("")
async def list_articles(
    search: str | None = Query(default=None, max_length=200),
    category: str | None = Query(default=None, max_length=100),
    limit: int = Query(default=50, ge=1, le=50),
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        articles = await kb_service.search(db, user.id, query=search, category=category, limit=limit)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing articles") from exc
    return {"articles": [article_to_dict(article) for article in articles]}


@router.post("", status_code=201)
async def create_article(
    payload: ArticleCreate,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        article = await kb_service.create_article(db, user.id, payload)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating article") from exc
    return {"article": article_to_dict(article)}


class GenerateRequest(BaseModel):
    days_back: int = Field(default=30, ge=1, le=90)
    min_ticket_count: int = Field(default=3, ge=2, le=50)
    max_articles: int = Field(default=10, ge=1, le=20)
    force: bool = False


@router.post("/generate")
async def generate_articles(
    payload: GenerateRequest,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("analysis")),
    db: AsyncSession = Depends(get_db),
    llm: LLMProvider | None = Depends(get_llm),
) -> dict[str, Any]:
    try:
        if not payload.force:
            last = await kb_service.last_generated_at(db, user.id)
            if last is not None:
                raise HTTPException(
                    status_code=429,
                    detail={
                        "code": "RECENTLY_GENERATED",
                        "message": "Articles were generated recently. Use force=true to override.",
                    },
                )
        generated = await kb_service.generate_articles(
            db,
            user.id,
            llm=llm,
            days_back=payload.days_back,
            min_ticket_count=payload.min_ticket_count,
            max_articles=payload.max_articles,
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while generating articles") from exc
    return {
        "success": True,
        "count": len(generated),
        "articles": [
            {
                **article_to_dict(item.article),
                "source_ticket_ids": item.source_ticket_ids,
                "confidence": item.confidence,
                "source": item.source,
            }
            for item in generated
        ],
        "message": f"Generated {len(generated)} articles from recent tickets",
    }


@router.get("/{article_id}")
async def get_article(
    article_id: str,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        article = await kb_repo.get_article(db, user.id, article_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching article") from exc
    if article is None:
        raise _not_found()
    return {"article": article_to_dict(article)}


@router.put("/{article_id}")
async def update_article(
    article_id: str,
    payload: ArticleUpdate,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        article = await kb_service.update_article(db, user.id, article_id, payload)
        if article is None:
            raise _not_found()
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating article") from exc
    return {"article": article_to_dict(article)}


@router.delete("/{article_id}")
async def delete_article(
    article_id: str,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        deleted = await kb_service.delete_article(db, user.id, article_id)
        if not deleted:
            raise _not_found()
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting article") from exc
    return {"success": True}
