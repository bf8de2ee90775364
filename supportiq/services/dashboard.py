from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError
from supportiq.domain.models import Ticket, as_utc, utc_now
from supportiq.persistence.db import SessionLocal
from supportiq.persistence.repos import tickets as tickets_repo


logger = logging.getLogger(__name__)

_OPEN_STATUSES = ("open", "snoozed")
_RESOLVED_STATUSES = ("closed", "auto_resolved")
_MAX_INSIGHTS = 5


class DashboardUnavailableError(SupportIQError):
    """No fresh or cached dashboard data could be produced."""

    code = "NO_DATA"
    status_code = 503


@dataclass
class DashboardResult:
    data: dict[str, Any]
    from_cache: bool
    error: dict[str, Any] | None = None


@dataclass
class _CacheEntry:
    data: dict[str, Any]
    stored_at: float
    refreshing: bool = field(default=False)


def ticket_stats(tickets: Iterable[Ticket]) -> dict[str, Any]:
    items = list(tickets)
    open_count = sum(1 for ticket in items if ticket.status in _OPEN_STATUSES)
    response_times = [t.response_time_minutes for t in items if t.response_time_minutes is not None]
    avg_response = sum(response_times) / len(response_times) if response_times else 0.0
    scores = [t.sentiment_score for t in items if t.sentiment_score is not None]
    # Sentiment scores live in [-1, 1]; present satisfaction on a 0-100 scale.
    satisfaction = ((sum(scores) / len(scores)) + 1) * 50 if scores else 0.0
    return {
        "total_tickets": len(items),
        "open_tickets": open_count,
        "avg_response_time": round(avg_response),
        "customer_satisfaction": round(satisfaction),
    }


def ticket_trends(tickets: Iterable[Ticket], *, now: datetime, days: int = 7) -> list[dict[str, Any]]:
    # Zero-filled daily buckets from `days` ago through today, oldest first.
    start = (now - timedelta(days=days)).date()
    buckets: dict[str, dict[str, int]] = {}
    for offset in range((now.date() - start).days + 1):
        day = (start + timedelta(days=offset)).isoformat()
        buckets[day] = {"count": 0, "resolved": 0}
    for ticket in tickets:
        created = as_utc(ticket.created_at)
        if created is None:
            continue
        day = created.date().isoformat()
        bucket = buckets.get(day)
        if bucket is None:
            continue
        bucket["count"] += 1
        if ticket.status in _RESOLVED_STATUSES:
            bucket["resolved"] += 1
    return [{"date": day, **counts} for day, counts in buckets.items()]


def category_breakdown(tickets: Iterable[Ticket]) -> list[dict[str, Any]]:
    counts = Counter(ticket.category for ticket in tickets if ticket.category)
    total = sum(counts.values())
    return [
        {"name": name, "count": count, "percentage": round(count / total * 100) if total else 0}
        for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ]


def sentiment_counts(tickets: Iterable[Ticket]) -> dict[str, int]:
    counts = {"positive": 0, "neutral": 0, "negative": 0}
    for ticket in tickets:
        if ticket.sentiment in counts:
            counts[ticket.sentiment] += 1
    return counts


def dashboard_insights(tickets: Iterable[Ticket]) -> list[dict[str, Any]]:
    """Derive rule-based callouts from recently categorized tickets."""
    recent = [ticket for ticket in tickets if ticket.category]
    if not recent:
        return []
    insights: list[dict[str, Any]] = []
    total = len(recent)

    top_name, top_count = Counter(ticket.category for ticket in recent).most_common(1)[0]
    if top_count > total * 0.3:
        insights.append(
            {
                "id": "high_volume_category",
                "type": "opportunity",
                "title": f"{top_name} tickets are trending",
                "description": (
                    f"{top_count} tickets ({round(top_count / total * 100)}%) are about {top_name}. "
                    "Consider creating self-service content."
                ),
                "impact": "high",
                "confidence": 0.9,
            }
        )

    response_times = [t.response_time_minutes for t in recent if t.response_time_minutes is not None]
    if response_times:
        avg_response = sum(response_times) / len(response_times)
        if avg_response > 60:
            insights.append(
                {
                    "id": "slow_response_time",
                    "type": "warning",
                    "title": "Response times are slower than optimal",
                    "description": (
                        f"Average response time is {round(avg_response)} minutes. Consider workflow automation."
                    ),
                    "impact": "high",
                    "confidence": 0.85,
                }
            )
        elif avg_response < 15:
            insights.append(
                {
                    "id": "fast_response_time",
                    "type": "success",
                    "title": "Excellent response times!",
                    "description": f"Average response time is {round(avg_response)} minutes.",
                    "impact": "medium",
                    "confidence": 0.9,
                }
            )

    negative_share = sum(1 for ticket in recent if ticket.sentiment == "negative") / total
    if negative_share > 0.3:
        insights.append(
            {
                "id": "high_negative_sentiment",
                "type": "warning",
                "title": "Customer satisfaction needs attention",
                "description": (
                    f"{round(negative_share * 100)}% of recent tickets show negative sentiment. "
                    "Review escalation processes."
                ),
                "impact": "high",
                "confidence": 0.8,
            }
        )
    return insights[:_MAX_INSIGHTS]


def build_metrics(tickets: Iterable[Ticket], *, now: datetime) -> dict[str, Any]:
    settings = get_settings()
    items = list(tickets)
    trend_start = now - timedelta(days=settings.dashboard_trend_days)
    recent = [ticket for ticket in items if (as_utc(ticket.created_at) or now) >= trend_start]
    return {
        **ticket_stats(items),
        "ticket_trends": ticket_trends(recent, now=now, days=settings.dashboard_trend_days),
        "categories": category_breakdown(items),
        "sentiment": sentiment_counts(items),
        "insights": dashboard_insights(recent),
        "last_updated": now.isoformat(),
        "next_sync": (now + timedelta(seconds=settings.dashboard_cache_ttl_s)).isoformat(),
    }


async def fetch_dashboard_metrics(user_id: str) -> dict[str, Any]:
    # Use a dedicated session so background refreshes outlive the request.
    settings = get_settings()
    now = utc_now()
    async with SessionLocal() as session:
        tickets = await tickets_repo.list_since(
            session, user_id, now - timedelta(days=settings.dashboard_metrics_days)
        )
    return build_metrics(tickets, now=now)


_cache: dict[str, _CacheEntry] = {}
_refresh_tasks: set[asyncio.Task] = set()


class DashboardDataService:
    """Per-user dashboard metrics with a fresh window and a stale-while-error fallback.

    Entries younger than ``dashboard_cache_ttl_s`` are served directly. Entries
    younger than ``dashboard_stale_ttl_s`` are served with a ``STALE_CACHE``
    warning while a background refresh runs. Older entries trigger a fetch;
    if that fails the last cached value is returned with ``FETCH_ERROR``.
    """

    def __init__(
        self,
        *,
        fetcher: Callable[[str], Awaitable[dict[str, Any]]] | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._fetcher = fetcher or fetch_dashboard_metrics
        self._time = time_provider or time.time

    def _decorate(self, entry: _CacheEntry, now: float, *, live: bool | None = None) -> dict[str, Any]:
        age_ms = int((now - entry.stored_at) * 1000)
        is_live = live if live is not None else age_ms < get_settings().dashboard_live_window_s * 1000
        return {**entry.data, "cache_age_ms": age_ms, "is_live": is_live}

    async def get_metrics(self, user_id: str, *, force_refresh: bool = False) -> DashboardResult:
        settings = get_settings()
        now = self._time()
        cached = _cache.get(user_id)
        if cached is not None and not force_refresh:
            age_s = now - cached.stored_at
            if age_s < settings.dashboard_cache_ttl_s:
                return DashboardResult(data=self._decorate(cached, now), from_cache=True)
            if age_s < settings.dashboard_stale_ttl_s:
                self._schedule_refresh(user_id, cached)
                return DashboardResult(
                    data=self._decorate(cached, now, live=False),
                    from_cache=True,
                    error={"code": "STALE_CACHE", "message": "Using cached data while refreshing"},
                )

        try:
            data = await self._fetcher(user_id)
        except Exception as exc:  # noqa: BLE001 - fall back to cached data when available
            logger.warning("dashboard_fetch_failed user_id=%s", user_id, exc_info=exc)
            cached = _cache.get(user_id)
            if cached is not None:
                return DashboardResult(
                    data=self._decorate(cached, now, live=False),
                    from_cache=True,
                    error={
                        "code": "FETCH_ERROR",
                        "message": "Failed to refresh data, showing cached version",
                        "retry_after_ms": 30000,
                    },
                )
            raise DashboardUnavailableError(
                "Dashboard data unavailable", context={"retry_after_ms": 60000}
            ) from exc

        entry = _CacheEntry(data=data, stored_at=now)
        _cache[user_id] = entry
        return DashboardResult(data=self._decorate(entry, now, live=True), from_cache=False)

    def _schedule_refresh(self, user_id: str, entry: _CacheEntry) -> None:
        # At most one in-flight refresh per entry.
        if entry.refreshing:
            return
        entry.refreshing = True
        task = asyncio.create_task(self._refresh(user_id, entry))
        _refresh_tasks.add(task)
        task.add_done_callback(_refresh_tasks.discard)

    async def _refresh(self, user_id: str, entry: _CacheEntry) -> None:
        try:
            data = await self._fetcher(user_id)
        except Exception as exc:  # noqa: BLE001 - background refresh failures keep the stale entry
            logger.warning("dashboard_refresh_failed user_id=%s", user_id, exc_info=exc)
            entry.refreshing = False
            return
        _cache[user_id] = _CacheEntry(data=data, stored_at=self._time())

    @staticmethod
    def invalidate(user_id: str) -> None:
        _cache.pop(user_id, None)


async def wait_for_refreshes() -> None:
    # Let callers (tests, shutdown) drain pending background refreshes.
    if _refresh_tasks:
        await asyncio.gather(*list(_refresh_tasks), return_exceptions=True)


def reset_dashboard_state() -> None:
    _cache.clear()
    for task in list(_refresh_tasks):
        task.cancel()
    _refresh_tasks.clear()
