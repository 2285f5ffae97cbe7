"""Tests for the admin credit API and X-Admin-Key auth."""
from unittest.mock import patch

import pytest

from config.settings import settings
from src.models import TransactionSource
from src.services.credits import CreditLedger
from tests.conftest import ADMIN_KEY, get_test_session

AUTH = {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture(autouse=True)
def admin_key():
    with patch.object(settings, "ADMIN_API_KEY", ADMIN_KEY):
        yield


async def _seed(user_id: str, amount: int):
    async with get_test_session() as session:
        await CreditLedger(session).earn(user_id, amount, TransactionSource.SUBSCRIPTION)
        await session.commit()


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, client):
        resp = await client.get("/api/v1/admin/credits/u1")
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_wrong_key_rejected(self, client):
        resp = await client.get("/api/v1/admin/credits/u1", headers={"X-Admin-Key": "nope"})
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_disabled_when_key_unset(self, client):
        with patch.object(settings, "ADMIN_API_KEY", ""):
            resp = await client.get("/api/v1/admin/credits/u1", headers=AUTH)
        assert resp.status_code == 503


class TestCreditRoutes:
    @pytest.mark.asyncio
    async def test_get_account(self, client):
        await _seed("u1", 120)
        resp = await client.get("/api/v1/admin/credits/u1", headers=AUTH)
        assert resp.status_code == 200
        body = resp.json()
        assert body["balance"] == 120
        assert body["available_balance"] == 120
        assert body["frozen_balance"] == 0

    @pytest.mark.asyncio
    async def test_get_missing_account_404(self, client):
        resp = await client.get("/api/v1/admin/credits/ghost", headers=AUTH)
        assert resp.status_code == 404
        assert resp.json()["error"] == "ACCOUNT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_transactions_listing(self, client):
        await _seed("u1", 10)
        await _seed("u1", 20)
        resp = await client.get("/api/v1/admin/credits/u1/transactions?limit=1", headers=AUTH)
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    @pytest.mark.asyncio
    async def test_positive_adjust(self, client):
        resp = await client.post(
            "/api/v1/admin/credits/u1/adjust", json={"amount": 75, "description": "goodwill"}, headers=AUTH,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["account"]["balance"] == 75
        assert body["transaction"]["type"] == "admin_adjust"
        assert body["transaction"]["amount"] == 75
        assert body["duplicate"] is False

    @pytest.mark.asyncio
    async def test_negative_adjust_beyond_available_is_402(self, client):
        await _seed("u1", 10)
        resp = await client.post("/api/v1/admin/credits/u1/adjust", json={"amount": -50}, headers=AUTH)
        assert resp.status_code == 402
        body = resp.json()
        assert body["error"] == "INSUFFICIENT_BALANCE"
        assert body["details"]["shortfall"] == 40

    @pytest.mark.asyncio
    async def test_zero_adjust_is_422(self, client):
        resp = await client.post("/api/v1/admin/credits/u1/adjust", json={"amount": 0}, headers=AUTH)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_adjust_with_reference_is_idempotent(self, client):
        body = {"amount": 30, "reference_id": "ticket-42"}
        await client.post("/api/v1/admin/credits/u1/adjust", json=body, headers=AUTH)
        resp = await client.post("/api/v1/admin/credits/u1/adjust", json=body, headers=AUTH)
        assert resp.json()["duplicate"] is True
        assert resp.json()["account"]["balance"] == 30

    @pytest.mark.asyncio
    async def test_freeze_then_unfreeze(self, client):
        await _seed("u1", 100)
        resp = await client.post("/api/v1/admin/credits/u1/freeze", json={"amount": 40}, headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["account"]["available_balance"] == 60

        resp = await client.post("/api/v1/admin/credits/u1/unfreeze", json={"amount": 40}, headers=AUTH)
        assert resp.json()["account"]["available_balance"] == 100
        assert resp.json()["account"]["balance"] == 100

    @pytest.mark.asyncio
    async def test_initialize_grants_signup_bonus_once(self, client):
        first = await client.post("/api/v1/admin/credits/new-user/initialize", headers=AUTH)
        second = await client.post("/api/v1/admin/credits/new-user/initialize", headers=AUTH)
        assert first.status_code == 200
        assert first.json()["signup_credits_granted"] == 50
        assert second.json()["signup_credits_granted"] == 0
        assert second.json()["account"]["balance"] == 50


class TestReconcileRoutes:
    @pytest.mark.asyncio
    async def test_monthly_credits_route(self, client):
        await _seed("u1", 1)
        resp = await client.post("/api/v1/admin/reconcile/monthly-credits", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["granted"] == 1

    @pytest.mark.asyncio
    async def test_audit_route_clean(self, client):
        await _seed("u1", 10)
        resp = await client.get("/api/v1/admin/reconcile/audit", headers=AUTH)
        assert resp.json() == {"ok": True, "discrepancies": []}

    @pytest.mark.asyncio
    async def test_dead_letter_route_with_nothing_pending(self, client):
        resp = await client.post("/api/v1/admin/reconcile/dead-letters", headers=AUTH)
        assert resp.json() == {"resolved": 0, "retrying": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_payment_record_not_found(self, client):
        resp = await client.get("/api/v1/admin/payments/sub_nope", headers=AUTH)
        assert resp.status_code == 404
