from __future__ import annotations

import os

# Settings are read at import time by the engine; pin test config before any app import.
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///./test_supportiq.db")
os.environ["LLM_PROVIDER"] = "fake"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["SYNC_EXECUTION_MODE"] = "inline"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["AUTH_CACHE_TTL_S"] = "0"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["INTERCOM_CLIENT_ID"] = "intercom-client"
os.environ["INTERCOM_CLIENT_SECRET"] = "intercom-secret"
os.environ["INTERCOM_TOKEN_EXCHANGE_BACKOFF_MS"] = "0"
os.environ["EXT_RETRY_BACKOFF_MS"] = "0"
os.environ.pop("INTERCOM_WEBHOOK_SECRET", None)
os.environ.pop("OPENAI_API_KEY", None)

from typing import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from supportiq.apps.api.deps import get_llm, reset_auth_cache
from supportiq.apps.api.main import create_app
from supportiq.core.config import get_settings
from supportiq.domain.models import Base
from supportiq.persistence.db import engine
from supportiq.providers.llm.fake import FakeLLMProvider
from supportiq.services.dashboard import reset_dashboard_state
from supportiq.services.rate_limit import reset_rate_limiter_state
from supportiq.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def reset_database() -> AsyncIterator[None]:
    # Rebuild the schema per test so rows never leak between cases.
    get_settings.cache_clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_rate_limiter_state()
    reset_dashboard_state()
    reset_telemetry()
    reset_auth_cache()
    yield
    reset_dashboard_state()
    get_settings.cache_clear()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture
def fake_llm() -> FakeLLMProvider:
    return FakeLLMProvider()


@pytest.fixture
def app(fake_llm: FakeLLMProvider) -> FastAPI:
    application = create_app()
    application.dependency_overrides[get_llm] = lambda: fake_llm
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
