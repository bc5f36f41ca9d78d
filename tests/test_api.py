"""
HTTP surface - auth, error envelope, money serialization, main flows
"""
import pytest
from decimal import Decimal
from unittest.mock import patch

from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from marketplace.db.models.delivery import Delivery
from marketplace.db.models.order import OrderStatus
from marketplace.db.models.topup_code import TopupCode, TopupCodeStatus
from marketplace.db.models.user import UserRole

from tests.conftest import auth_headers


CHECKOUT_BODY = {
    "delivery_address": "12 Rainbow Street, Amman",
    "delivery_phone": "+962 79 123 4567",
    "notes": "Leave at the door",
}


@pytest.mark.integration
class TestHealth:

    @pytest.mark.asyncio
    async def test_liveness(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_readiness(self, test_client, async_engine):
        with patch("marketplace.main.engine", async_engine):
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "db": "ok", "redis": "ok"}

    @pytest.mark.asyncio
    async def test_readiness_degraded_without_redis(self, test_client, async_engine):
        async def _down():
            raise RedisConnectionError("refused")

        with patch("marketplace.main.engine", async_engine), \
             patch("marketplace.core.redis_client.get_redis", _down):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["redis"] == "error: ConnectionError"

    @pytest.mark.asyncio
    async def test_security_headers(self, test_client):
        response = await test_client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Correlation-ID" in response.headers


@pytest.mark.integration
class TestAuthentication:

    @pytest.mark.asyncio
    async def test_missing_token(self, test_client):
        response = await test_client.get("/api/orders")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_garbage_token(self, test_client):
        response = await test_client.get("/api/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_user(self, test_client, user_factory):
        banned = await user_factory(role=UserRole.BUYER, is_active=False)

        response = await test_client.get("/api/orders", headers=auth_headers(banned))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_role_comes_from_database(self, test_client, buyer, seller):
        from marketplace.core.auth import create_access_token

        # Token claims admin, the stored user is a buyer
        forged = {"Authorization": f"Bearer {create_access_token(buyer.id, UserRole.ADMIN)}"}

        response = await test_client.get("/api/admin/settings", headers=forged)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ERR_1005"


@pytest.mark.integration
class TestOrdersApi:

    @pytest.mark.asyncio
    async def test_checkout_returns_money_strings(self, test_client, buyer, seller, product_factory):
        product = await product_factory(seller.id, price="12.50")

        response = await test_client.post(
            "/api/orders",
            json={**CHECKOUT_BODY, "items": [{"product_id": product.id, "quantity": 3}]},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "placed"
        assert body["total_amount"] == "37.50"
        assert body["delivery_phone"] == "+962791234567"
        assert body["items"][0]["unit_price"] == "12.50"
        assert body["items"][0]["line_total"] == "37.50"

    @pytest.mark.asyncio
    async def test_bad_phone_is_422(self, test_client, buyer, seller, product_factory):
        product = await product_factory(seller.id)

        response = await test_client.post(
            "/api/orders",
            json={**CHECKOUT_BODY, "delivery_phone": "nope", "items": [{"product_id": product.id, "quantity": 1}]},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_transition_envelope(self, test_client, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)

        response = await test_client.post(
            f"/api/orders/{order.id}/status",
            json={"status": "delivered"},
            headers=auth_headers(seller),
        )

        assert response.status_code == 409
        assert response.json() == {
            "error": {
                "code": "ERR_2001",
                "message": "Cannot transition order from 'placed' to 'delivered'",
                "details": {"entity": "order", "current_state": "placed", "target_state": "delivered"},
            }
        }

    @pytest.mark.asyncio
    async def test_seller_advances_and_lists(self, test_client, buyer, seller, order_factory):
        order = await order_factory(buyer, seller, status=OrderStatus.PREPARING)

        response = await test_client.post(
            f"/api/orders/{order.id}/status",
            json={"status": "ready_for_pickup"},
            headers=auth_headers(seller),
        )

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "ready_for_pickup"
        assert response.json()["warnings"] == []

        listed = await test_client.get("/api/orders?status=ready_for_pickup", headers=auth_headers(seller))
        assert [o["id"] for o in listed.json()] == [order.id]

        delivery = await test_client.get(f"/api/orders/{order.id}/delivery", headers=auth_headers(buyer))
        assert delivery.json()["status"] == "available"

    @pytest.mark.asyncio
    async def test_buyer_cancels(self, test_client, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)

        response = await test_client.post(
            f"/api/orders/{order.id}/cancel", json={"reason": "wrong address"}, headers=auth_headers(buyer)
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancel_reason"] == "wrong address"

    @pytest.mark.asyncio
    async def test_stranger_gets_404(self, test_client, buyer, seller, user_factory, order_factory):
        order = await order_factory(buyer, seller)
        stranger = await user_factory(role=UserRole.BUYER)

        response = await test_client.get(f"/api/orders/{order.id}", headers=auth_headers(stranger))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_1002"


@pytest.mark.integration
class TestDeliveriesApi:

    @pytest.mark.asyncio
    async def test_claim_contention_and_delivery(
        self, db_session, test_client, buyer, seller, driver, other_driver, order_factory
    ):
        order = await order_factory(buyer, seller, status=OrderStatus.READY_FOR_PICKUP)
        delivery_id = await db_session.scalar(select(Delivery.id).where(Delivery.order_id == order.id))

        available = await test_client.get("/api/deliveries/available", headers=auth_headers(driver))
        assert [d["id"] for d in available.json()] == [delivery_id]

        won = await test_client.post(f"/api/deliveries/{delivery_id}/claim", headers=auth_headers(driver))
        lost = await test_client.post(f"/api/deliveries/{delivery_id}/claim", headers=auth_headers(other_driver))

        assert won.status_code == 200
        assert won.json()["driver_id"] == driver.id
        assert lost.status_code == 409
        assert lost.json()["error"]["code"] == "ERR_3001"

        await test_client.post(
            f"/api/deliveries/{delivery_id}/status", json={"status": "picked_up"}, headers=auth_headers(driver)
        )
        delivered = await test_client.post(
            f"/api/deliveries/{delivery_id}/status",
            json={"status": "delivered", "cash_collected": "37.5"},
            headers=auth_headers(driver),
        )

        assert delivered.status_code == 200
        assert delivered.json()["delivery"]["cash_collected"] == "37.50"
        assert delivered.json()["warnings"] == []

        settlement = await test_client.get(f"/api/settlements/order/{order.id}", headers=auth_headers(seller))
        assert settlement.json()["platform_fee"] == "1.88"
        assert settlement.json()["seller_amount"] == "33.62"

    @pytest.mark.asyncio
    async def test_buyer_cannot_list_available(self, test_client, buyer):
        response = await test_client.get("/api/deliveries/available", headers=auth_headers(buyer))
        assert response.status_code == 403


@pytest.mark.integration
class TestWalletApi:

    @pytest.mark.asyncio
    async def test_admin_generates_buyer_redeems(self, db_session, test_client, buyer, admin):
        generated = await test_client.post(
            "/api/codes", json={"amount": "10.00", "quantity": 2}, headers=auth_headers(admin)
        )
        assert generated.status_code == 201
        codes = generated.json()
        assert [c["amount"] for c in codes] == ["10.00", "10.00"]

        typed = codes[0]["code"].replace("-", "").lower()
        redeemed = await test_client.post("/api/wallet/redeem", json={"code": typed}, headers=auth_headers(buyer))

        assert redeemed.status_code == 200
        assert redeemed.json() == {"code_id": codes[0]["id"], "amount": "10.00", "balance": "10.00"}

        again = await test_client.post("/api/wallet/redeem", json={"code": typed}, headers=auth_headers(buyer))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ERR_3003"

        wallet = await test_client.get("/api/wallet", headers=auth_headers(buyer))
        assert wallet.json()["balance"] == "10.00"
        assert wallet.json()["entries"][0]["entry_type"] == "topup"

        stats = await test_client.get("/api/codes/stats", headers=auth_headers(admin))
        assert stats.json()["outstanding_liability"] == "10.00"
        assert stats.json()["total_redeemed"] == "10.00"

    @pytest.mark.asyncio
    async def test_unknown_code_is_404(self, test_client, buyer):
        response = await test_client.post(
            "/api/wallet/redeem", json={"code": "ZZZZ-ZZZZ-ZZZZ"}, headers=auth_headers(buyer)
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_4001"

    @pytest.mark.asyncio
    async def test_void_redeemed_code(self, db_session, test_client, buyer, admin):
        code = TopupCode(code="AB12-CD34-EF56", amount=Decimal("5.00"), status=TopupCodeStatus.REDEEMED,
                         created_by=admin.id, redeemed_by=buyer.id)
        db_session.add(code)
        await db_session.commit()
        code_id = code.id

        response = await test_client.post(f"/api/codes/{code_id}/void", headers=auth_headers(admin))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_3002"

    @pytest.mark.asyncio
    async def test_admin_adjustment(self, test_client, buyer, admin):
        response = await test_client.post(
            f"/api/wallet/users/{buyer.id}/adjust",
            json={"amount": "-2.5", "description": "Chargeback"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        assert response.json()["balance"] == "-2.50"


@pytest.mark.integration
class TestAdminApi:

    @pytest.mark.asyncio
    async def test_fee_settings_round_trip(self, test_client, admin):
        updated = await test_client.put(
            "/api/admin/settings/platform-fee-rate", json={"rate": "0.1"}, headers=auth_headers(admin)
        )
        assert updated.status_code == 200

        current = await test_client.get("/api/admin/settings", headers=auth_headers(admin))
        assert current.json()["default_delivery_fee"] == "2.00"

        logs = await test_client.get(
            "/api/admin/audit-logs?action=platform_setting_updated", headers=auth_headers(admin)
        )
        assert logs.json()[0]["entity_id"] == "platform_fee_rate"

    @pytest.mark.asyncio
    async def test_rate_above_one_is_422(self, test_client, admin):
        response = await test_client.put(
            "/api/admin/settings/platform-fee-rate", json={"rate": "1.5"}, headers=auth_headers(admin)
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_reward_rule_upsert(self, test_client, admin):
        response = await test_client.put(
            "/api/rewards/rules/first_order", json={"amount": "5"}, headers=auth_headers(admin)
        )

        assert response.status_code == 200
        assert response.json()["amount"] == "5.00"
        assert response.json()["is_active"] is True
