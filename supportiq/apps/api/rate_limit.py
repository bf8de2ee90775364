from __future__ import annotations

import logging
import math
from typing import Awaitable, Callable

from fastapi import HTTPException, Request, Response, status
from redis.exceptions import RedisError

from supportiq.core.config import get_settings
from supportiq.services.rate_limit import RateLimitDecision, get_limiter
from supportiq.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Path prefix -> route class used for telemetry grouping.
_ROUTE_CLASSES: tuple[tuple[str, str], ...] = (
    ("/api/auth", "auth"),
    ("/api/webhooks", "webhook"),
    ("/api/stripe", "webhook"),
    ("/api/intercom/sync", "sync"),
    ("/api/dashboard", "dashboard"),
    ("/api/analyze", "analysis"),
    ("/api/admin", "admin"),
    ("/api/cron", "cron"),
)


def route_class_for_path(path: str) -> str:
    for prefix, route_class in _ROUTE_CLASSES:
        if path.startswith(prefix):
            return route_class
    return "api"


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _rate_limit_key(request: Request) -> str:
    # Authenticated callers are limited per user; anonymous ones per IP.
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        return f"user:{principal.user_id}"
    return f"ip:{client_ip(request)}"


def _throttle_exception(name: str, decision: RateLimitDecision) -> HTTPException:
    retry_after_s = max(1, int(math.ceil(decision.ms_before_next / 1000.0)))
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "limiter": name,
            "retry_after_ms": decision.ms_before_next,
        },
        headers={
            "Retry-After": str(retry_after_s),
            "X-RateLimit-Remaining": "0",
        },
    )


def rate_limit(name: str) -> Callable[[Request, Response], Awaitable[None]]:
    """Build a dependency enforcing the named fixed-window limiter."""

    async def _dependency(request: Request, response: Response) -> None:
        settings = get_settings()
        if not settings.rate_limit_enabled:
            return
        limiter = get_limiter(name)
        try:
            decision = await limiter.consume(_rate_limit_key(request))
        except RedisError as exc:
            if settings.rl_fail_mode.lower() == "closed":
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
                ) from exc
            response.headers["X-RateLimit-Status"] = "degraded"
            logger.warning("rate_limit_degraded limiter=%s path=%s", name, request.url.path)
            return
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        if decision.allowed:
            return
        increment_counter(f"rate_limited.{name}")
        logger.info("rate_limited limiter=%s path=%s", name, request.url.path)
        raise _throttle_exception(name, decision)

    return _dependency
