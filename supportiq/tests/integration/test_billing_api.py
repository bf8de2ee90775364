from __future__ import annotations

import pytest
import stripe

from supportiq.core.config import get_settings
from supportiq.tests.utils.auth import create_test_user


@pytest.mark.asyncio
async def test_checkout_converts_an_active_trial(client, monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_api")
    get_settings.cache_clear()
    owner, headers = await create_test_user(with_trial=True)
    calls: list[dict] = []

    def fake_create(**params):
        calls.append(params)
        return {"id": "cs_api_1", "url": "https://checkout.stripe.test/cs_api_1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    response = await client.post(
        "/api/stripe/checkout",
        json={"plan_id": "enterprise", "billing_cycle": "yearly", "is_trial_conversion": True},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["session_id"] == "cs_api_1"
    assert body["checkout_url"] == "https://checkout.stripe.test/cs_api_1"
    assert body["amount_cents"] == 970920

    [params] = calls
    assert params["metadata"]["userId"] == owner.id
    assert params["metadata"]["planId"] == "enterprise"
    assert params["metadata"]["isTrialConversion"] == "true"
    assert params["line_items"][0]["price_data"]["recurring"] == {"interval": "year"}
    # Fourteen trial days remain, so they carry into the subscription.
    assert "trial_end" in params["subscription_data"]


@pytest.mark.asyncio
async def test_checkout_validates_input_and_configuration(client, monkeypatch) -> None:
    _owner, headers = await create_test_user()

    unauthenticated = await client.post("/api/stripe/checkout", json={"plan_id": "pro"})
    assert unauthenticated.status_code == 401

    invalid = await client.post("/api/stripe/checkout", json={"plan_id": "platinum"}, headers=headers)
    assert invalid.status_code == 422

    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    get_settings.cache_clear()
    unconfigured = await client.post("/api/stripe/checkout", json={"plan_id": "pro"}, headers=headers)
    assert unconfigured.status_code == 503
    assert unconfigured.json()["code"] == "BILLING_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_plans_list_prices_and_current_plan(client) -> None:
    _owner, headers = await create_test_user()
    response = await client.get("/api/stripe/plans", headers=headers)
    assert response.status_code == 200
    plans = {plan["id"]: plan for plan in response.json()["plans"]}
    assert set(plans) == {"starter", "pro", "enterprise"}
    assert plans["starter"]["monthly_cents"] == 9900
    assert plans["pro"]["yearly_cents"] == 322920
