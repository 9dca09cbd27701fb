"""Unit tests for the HTTP API."""

import json

import pytest
from httpx import AsyncClient


class TestHealthEndpoint:
    """Tests for /health."""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["api"] == "ok"
        assert data["checks"]["scheduler"] == "stopped"


class TestWebhookEndpoint:
    """Tests for POST /api/fees/webhook."""

    async def _pending_entry(self, engine):
        from datetime import date

        await engine.run_billing(today=date(2026, 3, 5))
        entries = await engine.list_transactions()
        return next(e for e in entries if e.member_id == "mem_bob")

    @pytest.mark.asyncio
    async def test_valid_event_reconciled(self, client: AsyncClient, engine, sign_webhook):
        from clubpay_core.billing.base import TransactionStatus

        entry = await self._pending_entry(engine)
        payload, headers = sign_webhook({
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": entry.correlation.payment_intent_id, "amount_received": 4500}},
        })

        response = await client.post("/api/fees/webhook", content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert (await engine.ledger.get(entry.id)).status == TransactionStatus.PAID

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(self, client: AsyncClient, sign_webhook):
        payload, headers = sign_webhook({
            "id": "evt_2",
            "type": "customer.created",
            "data": {"object": {"id": "cus_1"}},
        })

        response = await client.post("/api/fees/webhook", content=payload, headers=headers)

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client: AsyncClient, engine, sign_webhook):
        from clubpay_core.billing.base import TransactionStatus

        entry = await self._pending_entry(engine)
        payload, headers = sign_webhook({
            "id": "evt_3",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": entry.correlation.payment_intent_id}},
        }, "whsec_wrong")

        response = await client.post("/api/fees/webhook", content=payload, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_signature"
        assert (await engine.ledger.get(entry.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: AsyncClient):
        response = await client.post(
            "/api/fees/webhook",
            content=json.dumps({"id": "evt_4"}),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_signed_garbage_rejected(self, client: AsyncClient, sign_webhook):
        payload, headers = sign_webhook("not json")

        response = await client.post("/api/fees/webhook", content=payload, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_processing_failure_returns_500(self, client: AsyncClient, engine, sign_webhook):
        from unittest.mock import AsyncMock

        engine.reconciliation.apply = AsyncMock(side_effect=ConnectionError("ledger down"))
        payload, headers = sign_webhook({
            "id": "evt_5",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1"}},
        })

        response = await client.post("/api/fees/webhook", content=payload, headers=headers)

        assert response.status_code == 500


class TestSubscriptionEndpoint:
    """Tests for POST /api/fees/subscriptions."""

    @pytest.mark.asyncio
    async def test_create_subscription_checkout(self, client: AsyncClient, processor):
        response = await client.post(
            "/api/fees/subscriptions",
            json={"tenant_id": "club_a", "member_id": "mem_bob"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["session_id"] in processor.checkouts
        assert data["checkout_url"].endswith(data["session_id"])
        assert data["transaction_id"].startswith("txn_")

    @pytest.mark.asyncio
    async def test_unknown_member(self, client: AsyncClient):
        response = await client.post(
            "/api/fees/subscriptions",
            json={"tenant_id": "club_a", "member_id": "mem_nobody"},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unconfigured_tenant(self, client: AsyncClient):
        response = await client.post(
            "/api/fees/subscriptions",
            json={"tenant_id": "club_unconfigured", "member_id": "mem_bob"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_already_subscribed(self, client: AsyncClient, member_store):
        from clubpay_core.billing.base import SubscriptionStatus

        await member_store.set_subscription("club_a", "mem_bob", "sub_bob", SubscriptionStatus.PAUSED)

        response = await client.post(
            "/api/fees/subscriptions",
            json={"tenant_id": "club_a", "member_id": "mem_bob"},
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_validation_error(self, client: AsyncClient):
        response = await client.post("/api/fees/subscriptions", json={"tenant_id": ""})

        assert response.status_code == 422
