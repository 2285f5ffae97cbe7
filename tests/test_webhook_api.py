"""Tests for POST /api/v1/webhooks/stripe: status codes over the HTTP route."""
import pytest

from src.api.main import app
from src.api.webhooks import get_webhook_processor
from src.services.webhooks import WebhookProcessor
from tests.conftest import (
    TestSession,
    WEBHOOK_SECRET,
    sign,
    stripe_event,
    stripe_subscription,
)

URL = "/api/v1/webhooks/stripe"


@pytest.fixture
def route_processor(catalog, stripe_fake):
    processor = WebhookProcessor(TestSession, catalog, stripe_fake, webhook_secret=WEBHOOK_SECRET)
    app.dependency_overrides[get_webhook_processor] = lambda: processor
    return processor


def _checkout(sub_id="sub_1") -> dict:
    return {
        "id": f"cs_{sub_id}", "mode": "subscription", "subscription": sub_id,
        "customer": "cus_1", "metadata": {"userId": "user_1"},
    }


@pytest.mark.asyncio
async def test_missing_signature_returns_400(client, route_processor):
    payload = stripe_event("invoice.paid", {"id": "in_1"})
    resp = await client.post(URL, content=payload)
    assert resp.status_code == 400
    assert resp.json()["outcome"] == "invalid_signature"


@pytest.mark.asyncio
async def test_bad_signature_returns_400(client, route_processor):
    payload = stripe_event("invoice.paid", {"id": "in_1"})
    resp = await client.post(URL, content=payload, headers={"stripe-signature": "t=1,v1=bad"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_valid_event_returns_200(client, route_processor, stripe_fake):
    stripe_fake.subscriptions["sub_1"] = stripe_subscription()
    payload = stripe_event("checkout.session.completed", _checkout(), event_id="evt_http_1")
    resp = await client.post(URL, content=payload, headers={"stripe-signature": sign(payload)})
    assert resp.status_code == 200
    body = resp.json()
    assert body == {"received": True, "outcome": "processed", "event_id": "evt_http_1"}


@pytest.mark.asyncio
async def test_redelivery_returns_200_duplicate(client, route_processor, stripe_fake):
    stripe_fake.subscriptions["sub_1"] = stripe_subscription()
    payload = stripe_event("checkout.session.completed", _checkout(), event_id="evt_http_2")
    headers = {"stripe-signature": sign(payload)}
    await client.post(URL, content=payload, headers=headers)
    resp = await client.post(URL, content=payload, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "duplicate"


@pytest.mark.asyncio
async def test_provider_failure_returns_500(client, route_processor, stripe_fake):
    stripe_fake.fail = True
    payload = stripe_event("checkout.session.completed", _checkout(), event_id="evt_http_3")
    resp = await client.post(URL, content=payload, headers={"stripe-signature": sign(payload)})
    assert resp.status_code == 500
    assert resp.json()["received"] is False


@pytest.mark.asyncio
async def test_unknown_record_returns_200(client, route_processor):
    payload = stripe_event("customer.subscription.deleted", {"id": "sub_ghost"})
    resp = await client.post(URL, content=payload, headers={"stripe-signature": sign(payload)})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "no_record"


@pytest.mark.asyncio
async def test_response_carries_request_id(client, route_processor):
    payload = stripe_event("ping", {})
    resp = await client.post(
        URL, content=payload, headers={"stripe-signature": sign(payload), "X-Request-ID": "trace-1"},
    )
    assert resp.headers["x-request-id"] == "trace-1"
