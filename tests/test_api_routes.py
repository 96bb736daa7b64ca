"""
Tests for the HTTP boundary: routes, serialization and error status mapping
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from api_server import ServiceContainer, create_app, status_code_for
from conftest import TOKEN_ID, TREASURY_ACCOUNT, make_record
from services.notification_service import NotificationService
from utils.exceptions import (
    DuplicateError,
    InsufficientBalanceError,
    OracleUnavailableError,
    TreasuryError,
    ValidationError,
)

PURCHASE = {
    "items": [{"productId": "sku-1", "name": "Mug", "price": "10", "quantity": 1}],
    "shippingAddress": {"street": "1 Main St", "city": "Lagos", "country": "NG"},
    "payment": {"method": "card", "amount": "12"},
    "subtotal": "10",
    "shipping": "2",
    "total": "12",
    "email": "api-buyer@example.com",
}


@pytest.fixture
def services(session_factory, fake_oracle):
    return ServiceContainer.build(
        session_factory,
        oracle=fake_oracle,
        notifier=NotificationService(),
        treasury_account_id=TREASURY_ACCOUNT,
        token_id=TOKEN_ID,
        token_decimals=6,
        min_amount=Decimal("1"),
        oracle_retry_attempts=2,
        oracle_retry_delay=0,
    )


@pytest_asyncio.fixture
async def client(services, engine):
    app = create_app(services=services, engine=engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client


class TestDepositRoutes:

    @pytest.mark.asyncio
    async def test_verify_deposit(self, client, fake_oracle):
        fake_oracle.add(make_record("0.0.555@1000.1"))

        response = await client.post(
            "/api/deposits/verify",
            json={"transactionId": "0.0.555@1000.1", "email": "payer@example.com", "name": "Payer"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["deposit"]["externalTxId"] == "0.0.555-1000-000000001"
        assert Decimal(body["data"]["deposit"]["amount"]) == Decimal("5")
        assert Decimal(body["data"]["newBalance"]) == Decimal("5")

    @pytest.mark.asyncio
    async def test_duplicate_deposit_is_409(self, client, fake_oracle):
        fake_oracle.add(make_record("0.0.555@1000.1"))
        payload = {"transactionId": "0.0.555@1000.1", "email": "payer@example.com"}
        await client.post("/api/deposits/verify", json=payload)

        response = await client.post("/api/deposits/verify", json=payload)

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "error": "duplicate_transaction",
            "message": DuplicateError.default_user_message,
            "retryable": False,
        }

    @pytest.mark.asyncio
    async def test_missing_transaction_id_is_400(self, client):
        response = await client.post("/api/deposits/verify", json={"email": "payer@example.com"})
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, client):
        response = await client.post(
            "/api/deposits/verify", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_404(self, client):
        response = await client.post(
            "/api/deposits/verify", json={"transactionId": "0.0.555@1000.1", "email": "payer@example.com"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_below_minimum_is_422(self, client, fake_oracle):
        fake_oracle.add(make_record("0.0.555@1000.1", raw_amount=10))
        response = await client.post(
            "/api/deposits/verify", json={"transactionId": "0.0.555@1000.1", "email": "payer@example.com"}
        )
        assert response.status_code == 422
        assert response.json()["error"] == "below_minimum"

    @pytest.mark.asyncio
    async def test_oracle_outage_is_503(self, client, fake_oracle):
        fake_oracle.unavailable_calls = 5
        response = await client.post(
            "/api/deposits/verify", json={"transactionId": "0.0.555@1000.1", "email": "payer@example.com"}
        )
        assert response.status_code == 503
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_deposit_history(self, client, fake_oracle):
        fake_oracle.add(make_record("0.0.555@1000.1"))
        verified = await client.post(
            "/api/deposits/verify", json={"transactionId": "0.0.555@1000.1", "email": "payer@example.com"}
        )
        user_id = verified.json()["data"]["deposit"]["userId"]

        response = await client.get(f"/api/deposits/{user_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["deposits"]) == 1
        assert Decimal(data["totalDeposited"]) == Decimal("5")

    @pytest.mark.asyncio
    async def test_deposit_history_unknown_user_is_404(self, client):
        assert (await client.get("/api/deposits/999")).status_code == 404


class TestOrderRoutes:

    @pytest.mark.asyncio
    async def test_purchase_then_lookup_and_cancel(self, client):
        created = await client.post("/api/purchases", json=PURCHASE)

        assert created.status_code == 201
        data = created.json()["data"]
        assert data["isNewUser"] is True
        assert data["order"]["status"] == "pending"
        order_code = data["order"]["orderCode"]
        user_id = data["user"]["id"]

        fetched = await client.get(f"/api/orders/{order_code}")
        assert fetched.status_code == 200
        assert [h["toStatus"] for h in fetched.json()["data"]["history"]] == ["pending"]

        cancelled = await client.post(
            f"/api/orders/{order_code}/cancel", json={"userId": user_id, "reason": "changed mind"}
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"

        again = await client.post(f"/api/orders/{order_code}/cancel", json={"userId": user_id})
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_cancel_requires_the_owner(self, client, create_user):
        created = await client.post("/api/purchases", json=PURCHASE)
        order_code = created.json()["data"]["order"]["orderCode"]
        stranger = await create_user(email="stranger@example.com")

        missing_owner = await client.post(f"/api/orders/{order_code}/cancel", json={"reason": "mine now"})
        assert missing_owner.status_code == 400

        foreign = await client.post(f"/api/orders/{order_code}/cancel", json={"userId": stranger.id})
        assert foreign.status_code == 404
        assert foreign.json()["error"] == "not_found"

        fetched = await client.get(f"/api/orders/{order_code}")
        assert fetched.json()["data"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_status_update_and_user_orders(self, client, services, create_user):
        user = await create_user(balance=Decimal("12"), email="api-buyer@example.com")
        created = await client.post("/api/purchases", json=PURCHASE)
        order_code = created.json()["data"]["order"]["orderCode"]

        confirmed = await client.post(f"/api/orders/{order_code}/status", json={"status": "confirmed"})
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["payment"]["status"] == "confirmed"

        orders = await client.get(f"/api/users/{user.id}/orders", params={"status": "confirmed"})
        assert [o["orderCode"] for o in orders.json()["data"]] == [order_code]

        balance = await client.get(f"/api/users/{user.id}/balance")
        body = balance.json()["data"]
        assert Decimal(body["balance"]) == Decimal("0")
        assert [entry["reason"] for entry in body["journal"]] == [f"order:{order_code}", "adjustment:test-seed"]

    @pytest.mark.asyncio
    async def test_confirm_without_funds_is_422(self, client):
        created = await client.post("/api/purchases", json=PURCHASE)
        order_code = created.json()["data"]["order"]["orderCode"]

        response = await client.post(f"/api/orders/{order_code}/status", json={"status": "confirmed"})

        assert response.status_code == 422
        assert response.json()["error"] == "insufficient_balance"

    @pytest.mark.asyncio
    async def test_invalid_purchase_is_400(self, client):
        response = await client.post("/api/purchases", json=dict(PURCHASE, total="99"))
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_identity_conflict_is_409(self, client, create_user):
        await create_user(email="api-buyer@example.com")
        await create_user(chat_id=5)

        response = await client.post("/api/purchases", json=dict(PURCHASE, chatId=5))

        assert response.status_code == 409
        assert response.json()["error"] == "identity_conflict"

    @pytest.mark.asyncio
    async def test_unknown_order_is_404(self, client):
        assert (await client.get("/api/orders/ORD-2025-0000000000")).status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_user_balance_is_404(self, client):
        assert (await client.get("/api/users/404/balance")).status_code == 404


class TestServiceRoutes:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["database"] == "ok"

    @pytest.mark.asyncio
    async def test_health_reports_database_outage(self, client):
        with patch("api_server.check_connection", AsyncMock(return_value=False)):
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["database"] == "unavailable"

    @pytest.mark.asyncio
    async def test_network_info(self, client):
        response = await client.get("/api/network")
        assert response.status_code == 200
        assert response.json()["data"]["treasury_account"]


class TestStatusMapping:

    def test_known_errors(self):
        assert status_code_for(ValidationError("bad")) == 400
        assert status_code_for(InsufficientBalanceError(1, Decimal("0"), Decimal("1"))) == 422
        assert status_code_for(OracleUnavailableError("down")) == 503

    def test_unmapped_error_is_500(self):
        assert status_code_for(TreasuryError("unexpected")) == 500
