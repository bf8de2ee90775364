from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Response

from supportiq.apps.api.deps import Principal, get_current_principal
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.services.dashboard import DashboardDataService


router = APIRouter(prefix="/dashboard", tags=["dashboard"])


def get_dashboard_service() -> DashboardDataService:
    # Overridden in tests to inject a fake fetcher or clock.
    return DashboardDataService()


@router.get("/metrics")
async def dashboard_metrics(
    response: Response,
    refresh: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    _rl: None = Depends(rate_limit("dashboard")),
    service: DashboardDataService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    result = await service.get_metrics(principal.user_id, force_refresh=refresh)
    response.headers["X-Cache"] = "HIT" if result.from_cache else "MISS"
    body: dict[str, Any] = {"data": result.data, "from_cache": result.from_cache}
    if result.error is not None:
        body["warning"] = result.error
    return body
