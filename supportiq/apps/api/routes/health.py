from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from supportiq.core.config import get_settings


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    service: str


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    # Public liveness check; dependency checks live under /admin/health.
    return HealthResponse(status="ok", service=get_settings().app_name)
