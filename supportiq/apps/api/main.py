from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from supportiq.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    supportiq_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from supportiq.apps.api.rate_limit import route_class_for_path
from supportiq.apps.api.routes.admin import router as admin_router
from supportiq.apps.api.routes.auth import router as auth_router
from supportiq.apps.api.routes.billing import router as billing_router
from supportiq.apps.api.routes.cron import router as cron_router
from supportiq.apps.api.routes.dashboard import router as dashboard_router
from supportiq.apps.api.routes.deflection import router as deflection_router
from supportiq.apps.api.routes.health import router as health_router
from supportiq.apps.api.routes.insights import router as insights_router
from supportiq.apps.api.routes.intercom import router as intercom_router
from supportiq.apps.api.routes.knowledge_base import router as knowledge_base_router
from supportiq.apps.api.routes.tickets import router as tickets_router
from supportiq.apps.api.routes.trial import router as trial_router
from supportiq.apps.api.routes.user import router as user_router
from supportiq.apps.api.routes.webhooks import router as webhooks_router
from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError
from supportiq.core.logging import configure_logging
from supportiq.providers.llm.factory import close_llm_providers
from supportiq.services.rate_limit import run_sweeper
from supportiq.services.telemetry import record_request


logger = logging.getLogger(__name__)

API_PREFIX = "/api"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # The in-memory limiter needs a periodic sweep; Redis expires keys itself.
    settings = get_settings()
    sweeper: asyncio.Task | None = None
    if settings.rate_limit_enabled and settings.rate_limit_backend.lower() == "memory":
        sweeper = asyncio.create_task(run_sweeper(settings.rl_sweep_interval_s))
    logger.info("app_started backend=%s", settings.rate_limit_backend)
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await close_llm_providers()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="SupportIQ API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            path=request.url.path,
            route_class=route_class_for_path(request.url.path),
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(SupportIQError)
    async def _supportiq_exception_handler(request: Request, exc: SupportIQError):
        return await supportiq_exception_handler(request, exc)

    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(auth_router, prefix=API_PREFIX)
    app.include_router(user_router, prefix=API_PREFIX)
    # Intercom connection management, sync control and inbound webhooks.
    app.include_router(intercom_router, prefix=API_PREFIX)
    app.include_router(webhooks_router, prefix=API_PREFIX)
    app.include_router(billing_router, prefix=API_PREFIX)
    app.include_router(tickets_router, prefix=API_PREFIX)
    app.include_router(dashboard_router, prefix=API_PREFIX)
    app.include_router(deflection_router, prefix=API_PREFIX)
    app.include_router(insights_router, prefix=API_PREFIX)
    app.include_router(knowledge_base_router, prefix=API_PREFIX)
    app.include_router(trial_router, prefix=API_PREFIX)
    # Scheduler entry points guarded by the cron secret.
    app.include_router(cron_router, prefix=API_PREFIX)
    app.include_router(admin_router, prefix=API_PREFIX)
    return app


app = create_app()
