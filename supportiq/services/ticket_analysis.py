from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.domain.models import Ticket, utc_now
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.providers.llm.base import LLMProvider
from supportiq.services.classifier import (
    DeflectionResponse,
    TicketAnalysis,
    TicketInput,
    analyze_ticket,
    generate_deflection_response,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchAnalysisResult:
    analyzed: list[Ticket]
    skipped: int


@dataclass(frozen=True)
class DeflectionTriage:
    ticket: Ticket
    analysis: TicketAnalysis
    response: DeflectionResponse
    applied: bool


async def _classify(session: AsyncSession, ticket: Ticket, llm: LLMProvider | None) -> TicketAnalysis:
    candidates = await tickets_repo.list_similarity_candidates(
        session,
        ticket.user_id,
        exclude_id=ticket.id,
        limit=get_settings().similarity_candidate_limit,
    )
    return await analyze_ticket(
        TicketInput(id=ticket.id, subject=ticket.subject, content=ticket.content),
        candidates,
        llm=llm,
    )


async def analyze_and_store(session: AsyncSession, ticket: Ticket, *, llm: LLMProvider | None) -> TicketAnalysis:
    """Classify one stored ticket and write the analysis back onto the row."""
    analysis = await _classify(session, ticket, llm)
    for key, value in analysis.as_ticket_fields().items():
        setattr(ticket, key, value)
    ticket.analyzed_at = utc_now()
    await session.flush()
    logger.info(
        "ticket_analyzed ticket_id=%s category=%s source=%s", ticket.id, analysis.category, analysis.source
    )
    return analysis


async def analyze_batch(
    session: AsyncSession,
    tickets: Sequence[Ticket],
    *,
    llm: LLMProvider | None,
    force: bool = False,
) -> BatchAnalysisResult:
    # Already-analyzed tickets are skipped unless a re-run is forced.
    analyzed: list[Ticket] = []
    skipped = 0
    for ticket in tickets:
        if ticket.analyzed_at is not None and not force:
            skipped += 1
            continue
        await analyze_and_store(session, ticket, llm=llm)
        analyzed.append(ticket)
    return BatchAnalysisResult(analyzed=analyzed, skipped=skipped)


async def triage_for_deflection(
    session: AsyncSession,
    ticket: Ticket,
    *,
    llm: LLMProvider | None,
    dry_run: bool = False,
) -> DeflectionTriage:
    """Classify a ticket and draft a deflection reply without contacting the customer.

    Unless ``dry_run`` is set, the analysis and the drafted reply are written
    onto the ticket and ``deflected`` records whether the draft can stand alone.
    """
    analysis = await _classify(session, ticket, llm)
    response = await generate_deflection_response(
        analysis,
        TicketInput(id=ticket.id, subject=ticket.subject, content=ticket.content),
        llm=llm,
    )
    if not dry_run:
        for key, value in analysis.as_ticket_fields().items():
            setattr(ticket, key, value)
        ticket.analyzed_at = utc_now()
        ticket.deflected = response.can_deflect
        ticket.deflection_response = response.response
        ticket.deflection_confidence = response.confidence
        await session.flush()
    logger.info(
        "ticket_triaged ticket_id=%s can_deflect=%s dry_run=%s", ticket.id, response.can_deflect, dry_run
    )
    return DeflectionTriage(ticket=ticket, analysis=analysis, response=response, applied=not dry_run)
