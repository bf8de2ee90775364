from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError
from supportiq.domain.models import Insight, Ticket, as_utc, utc_now
from supportiq.persistence.repos import insights as insights_repo


logger = logging.getLogger(__name__)

INSIGHT_STATUSES = ("active", "dismissed", "implemented")
MIN_TICKETS = 5


def _issue_pattern(tickets: Sequence[Ticket]) -> dict[str, Any] | None:
    categories = Counter(ticket.category for ticket in tickets if ticket.category)
    if not categories:
        return None
    name, count = categories.most_common(1)[0]
    share = count / len(tickets)
    settings = get_settings()
    return {
        "type": "issue_pattern",
        "title": f"{name} drives {round(share * 100)}% of tickets",
        "description": (
            f"{count} of {len(tickets)} recent tickets are categorized as {name}. "
            "Targeted help content could absorb a large part of this volume."
        ),
        "impact_score": round(min(1.0, share * 1.5), 2),
        "potential_savings": round(count * share * settings.avg_ticket_cost_usd, 2),
        "action_items": [
            f"Write a knowledge base article covering the top {name} questions",
            f"Add a saved reply for common {name} requests",
        ],
        "data_source": {"category": name, "count": count, "total": len(tickets)},
    }


def _performance(tickets: Sequence[Ticket]) -> dict[str, Any] | None:
    times = [t.response_time_minutes for t in tickets if t.response_time_minutes is not None]
    if not times:
        return None
    avg = sum(times) / len(times)
    slow = avg > 60
    settings = get_settings()
    # Savings assume halving the excess over a one-hour target at the agent hourly rate.
    excess_hours = max(0.0, avg - 60) / 60.0
    return {
        "type": "performance",
        "title": "Response times need attention" if slow else "Response times are on target",
        "description": f"Average first response time is {round(avg)} minutes across {len(times)} tickets.",
        "impact_score": 0.8 if slow else 0.3,
        "potential_savings": round(excess_hours * 0.5 * settings.agent_hourly_rate_usd * len(times), 2),
        "action_items": (
            ["Route tickets by category to specialists", "Set up auto-acknowledgement replies"]
            if slow
            else ["Keep current staffing levels under review"]
        ),
        "data_source": {"avg_response_minutes": round(avg, 2), "samples": len(times)},
    }


def _prediction(tickets: Sequence[Ticket], now: datetime) -> dict[str, Any] | None:
    this_week_start = now - timedelta(days=7)
    last_week_start = now - timedelta(days=14)
    this_week = last_week = 0
    for ticket in tickets:
        created = as_utc(ticket.created_at)
        if created is None:
            continue
        if created >= this_week_start:
            this_week += 1
        elif created >= last_week_start:
            last_week += 1
    if last_week == 0:
        return None
    change = (this_week - last_week) / last_week
    direction = "up" if change >= 0 else "down"
    return {
        "type": "prediction",
        "title": f"Ticket volume is trending {direction} {abs(round(change * 100))}%",
        "description": (
            f"{this_week} tickets this week versus {last_week} last week. "
            f"Expect around {max(0, round(this_week * (1 + change)))} tickets next week."
        ),
        "impact_score": round(min(1.0, abs(change)), 2),
        "potential_savings": 0.0,
        "action_items": ["Plan staffing for the projected volume"],
        "data_source": {"this_week": this_week, "last_week": last_week, "change": round(change, 4)},
    }


def _prevention(tickets: Sequence[Ticket]) -> dict[str, Any] | None:
    deflectable = [ticket for ticket in tickets if ticket.deflection_potential == "high"]
    if not deflectable:
        return None
    share = len(deflectable) / len(tickets)
    savings = len(deflectable) * get_settings().avg_ticket_cost_usd
    return {
        "type": "prevention",
        "title": f"{round(share * 100)}% of tickets could be deflected",
        "description": (
            f"{len(deflectable)} tickets look answerable without an agent. "
            "Enabling auto-responses for these categories would cut handling cost."
        ),
        "impact_score": round(min(1.0, share * 1.2), 2),
        "potential_savings": round(savings, 2),
        "action_items": ["Enable auto-responses for high-deflection categories", "Review AI response feedback weekly"],
        "data_source": {"deflectable": len(deflectable), "total": len(tickets)},
    }


def build_insights(tickets: Sequence[Ticket], *, now: datetime | None = None) -> list[dict[str, Any]]:
    current = now or utc_now()
    candidates = (
        _issue_pattern(tickets),
        _performance(tickets),
        _prediction(tickets, current),
        _prevention(tickets),
    )
    return [candidate for candidate in candidates if candidate is not None]


async def generate_insights(
    session: AsyncSession, user_id: str, tickets: Sequence[Ticket], *, now: datetime | None = None
) -> list[Insight]:
    if len(tickets) < MIN_TICKETS:
        raise SupportIQError(
            f"At least {MIN_TICKETS} tickets are needed to generate insights",
            code="INSUFFICIENT_TICKETS",
            status_code=422,
            context={"ticket_count": len(tickets)},
        )
    records = await insights_repo.replace_active(session, user_id, build_insights(tickets, now=now))
    logger.info("insights_generated user_id=%s count=%s", user_id, len(records))
    return records


async def update_insight_status(session: AsyncSession, user_id: str, insight_id: str, status: str) -> Insight | None:
    if status not in INSIGHT_STATUSES:
        raise ValueError(f"Unknown insight status: {status}")
    insight = await insights_repo.get_insight(session, user_id, insight_id)
    if insight is None:
        return None
    insight.status = status
    await session.flush()
    return insight


def insight_to_dict(insight: Insight) -> dict[str, Any]:
    return {
        "id": insight.id,
        "type": insight.type,
        "title": insight.title,
        "description": insight.description,
        "impact_score": insight.impact_score,
        "potential_savings": insight.potential_savings,
        "action_items": list(insight.action_items or []),
        "data_source": dict(insight.data_source or {}),
        "status": insight.status,
        "created_at": insight.created_at.isoformat() if insight.created_at else None,
    }
