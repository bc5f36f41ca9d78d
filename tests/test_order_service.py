"""
Order lifecycle - checkout, seller progression, cancellation, reads
"""
import logging

import pytest
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import select

from marketplace.core.config import settings
from marketplace.core.exceptions import ErrorCode
from marketplace.db.models.audit_log import AuditAction, AuditLog
from marketplace.db.models.delivery import Delivery, DeliveryStatus
from marketplace.db.models.order import OrderStatus
from marketplace.db.models.product import Product
from marketplace.db.models.user import UserRole
from marketplace.domain.services.order_service import DeliveryInfo, OrderLine, OrderService

from tests.conftest import DEFAULT_DELIVERY_INFO, actor_of


@pytest.mark.unit
class TestCreateOrder:

    @pytest.mark.asyncio
    async def test_snapshots_prices_and_totals(self, db_session, buyer, seller, product_factory):
        oil = await product_factory(seller.id, name="Olive oil", price="12.50", stock=10)
        bread = await product_factory(seller.id, name="Bread", price="0.35", stock=10)

        result = await OrderService(db_session).create_order(
            actor_of(buyer),
            [OrderLine(oil.id, 3), OrderLine(bread.id, 3)],
            DEFAULT_DELIVERY_INFO,
        )

        assert result.success, result.error_message
        order = result.value
        assert order.status == OrderStatus.PLACED
        assert order.total_amount == Decimal("38.55")
        assert order.seller_id == seller.id
        assert {(i.product_name, i.unit_price, i.quantity, i.line_total) for i in order.items} == {
            ("Olive oil", Decimal("12.50"), 3, Decimal("37.50")),
            ("Bread", Decimal("0.35"), 3, Decimal("1.05")),
        }

    @pytest.mark.asyncio
    async def test_decrements_stock(self, db_session, buyer, seller, product_factory):
        product = await product_factory(seller.id, stock=5)

        await OrderService(db_session).create_order(
            actor_of(buyer), [OrderLine(product.id, 2)], DEFAULT_DELIVERY_INFO
        )

        stock = await db_session.scalar(select(Product.stock).where(Product.id == product.id))
        assert stock == 3

    @pytest.mark.asyncio
    async def test_merges_repeated_products(self, db_session, buyer, seller, product_factory):
        product = await product_factory(seller.id, price="2.00", stock=10)

        result = await OrderService(db_session).create_order(
            actor_of(buyer), [OrderLine(product.id, 1), OrderLine(product.id, 2)], DEFAULT_DELIVERY_INFO
        )

        assert len(result.value.items) == 1
        assert result.value.items[0].quantity == 3
        assert result.value.total_amount == Decimal("6.00")

    @pytest.mark.asyncio
    async def test_insufficient_stock_writes_nothing(self, db_session, buyer, seller, product_factory):
        plenty = await product_factory(seller.id, stock=10)
        scarce = await product_factory(seller.id, stock=1)

        result = await OrderService(db_session).create_order(
            actor_of(buyer), [OrderLine(plenty.id, 2), OrderLine(scarce.id, 2)], DEFAULT_DELIVERY_INFO
        )

        assert result.success is False
        assert result.error.error_code == ErrorCode.VALIDATION_ERROR
        assert result.error.details["product_id"] == scarce.id
        stocks = dict((await db_session.execute(select(Product.id, Product.stock))).all())
        assert stocks == {plenty.id: 10, scarce.id: 1}

    @pytest.mark.asyncio
    async def test_lenient_stock_floors_at_zero(self, db_session, buyer, seller, product_factory):
        product = await product_factory(seller.id, stock=1)

        with patch.object(settings, "STRICT_STOCK_CHECK", False):
            result = await OrderService(db_session).create_order(
                actor_of(buyer), [OrderLine(product.id, 4)], DEFAULT_DELIVERY_INFO
            )

        assert result.success
        assert await db_session.scalar(select(Product.stock).where(Product.id == product.id)) == 0

    @pytest.mark.asyncio
    async def test_items_from_two_sellers_rejected(self, db_session, buyer, seller, user_factory, product_factory):
        other_seller = await user_factory(role=UserRole.SELLER)
        a = await product_factory(seller.id)
        b = await product_factory(other_seller.id)

        result = await OrderService(db_session).create_order(
            actor_of(buyer), [OrderLine(a.id, 1), OrderLine(b.id, 1)], DEFAULT_DELIVERY_INFO
        )

        assert result.success is False
        assert "same seller" in result.error_message

    @pytest.mark.asyncio
    async def test_inactive_or_missing_products_rejected(self, db_session, buyer, seller, product_factory):
        hidden = await product_factory(seller.id, is_active=False)

        result = await OrderService(db_session).create_order(
            actor_of(buyer), [OrderLine(hidden.id, 1), OrderLine(9999, 1)], DEFAULT_DELIVERY_INFO
        )

        assert result.success is False
        assert result.error.details["product_ids"] == [hidden.id, 9999]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    async def test_quantity_must_be_positive_integer(self, db_session, buyer, seller, product_factory, quantity):
        product = await product_factory(seller.id)

        result = await OrderService(db_session).create_order(
            actor_of(buyer), [OrderLine(product.id, quantity)], DEFAULT_DELIVERY_INFO
        )

        assert result.success is False
        assert result.error.details["field"] == "quantity"

    @pytest.mark.asyncio
    async def test_empty_cart_rejected(self, db_session, buyer):
        result = await OrderService(db_session).create_order(actor_of(buyer), [], DEFAULT_DELIVERY_INFO)
        assert result.success is False
        assert result.error.details["field"] == "items"

    @pytest.mark.asyncio
    async def test_invalid_phone_rejected(self, db_session, buyer, seller, product_factory):
        product = await product_factory(seller.id)

        result = await OrderService(db_session).create_order(
            actor_of(buyer),
            [OrderLine(product.id, 1)],
            DeliveryInfo(address="12 Rainbow Street, Amman", phone="call me"),
        )

        assert result.success is False
        assert result.error.details["field"] == "phone"

    @pytest.mark.asyncio
    async def test_phone_is_normalized(self, db_session, buyer, seller, product_factory):
        product = await product_factory(seller.id)

        result = await OrderService(db_session).create_order(
            actor_of(buyer),
            [OrderLine(product.id, 1)],
            DeliveryInfo(address="12 Rainbow Street, Amman", phone="00962 79 123 4567"),
        )

        assert result.value.delivery_phone == "+962791234567"

    @pytest.mark.asyncio
    async def test_placed_log_masks_phone(self, db_session, buyer, seller, product_factory, caplog):
        product = await product_factory(seller.id)
        caplog.set_level(logging.INFO, logger="marketplace.domain.services.order_service")

        await OrderService(db_session).create_order(actor_of(buyer), [OrderLine(product.id, 1)], DEFAULT_DELIVERY_INFO)

        placed = [r for r in caplog.records if r.getMessage() == "Order placed"]
        assert placed[0].extra_data["delivery_phone"] == "+96279123****"

    @pytest.mark.asyncio
    async def test_only_buyers_check_out(self, db_session, seller, product_factory):
        product = await product_factory(seller.id)

        result = await OrderService(db_session).create_order(
            actor_of(seller), [OrderLine(product.id, 1)], DEFAULT_DELIVERY_INFO
        )

        assert result.error.error_code == ErrorCode.NOT_AUTHORIZED

    @pytest.mark.asyncio
    async def test_checkout_is_rate_limited(self, db_session, buyer, seller, product_factory):
        product = await product_factory(seller.id, stock=1000)
        service = OrderService(db_session)

        for _ in range(settings.RATE_LIMIT_CHECKOUT):
            assert (await service.create_order(
                actor_of(buyer), [OrderLine(product.id, 1)], DEFAULT_DELIVERY_INFO
            )).success

        result = await service.create_order(actor_of(buyer), [OrderLine(product.id, 1)], DEFAULT_DELIVERY_INFO)
        assert result.error.error_code == ErrorCode.RATE_LIMITED


@pytest.mark.unit
class TestAdvanceStatus:

    @pytest.mark.asyncio
    async def test_seller_walks_order_to_ready(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)
        service = OrderService(db_session)

        accepted = await service.advance_status(actor_of(seller), order.id, OrderStatus.ACCEPTED)
        assert accepted.value.status == OrderStatus.ACCEPTED
        assert accepted.value.accepted_at is not None

        preparing = await service.advance_status(actor_of(seller), order.id, "preparing")
        assert preparing.value.status == OrderStatus.PREPARING

        ready = await service.advance_status(actor_of(seller), order.id, OrderStatus.READY_FOR_PICKUP)
        assert ready.success
        assert ready.value.status == OrderStatus.READY_FOR_PICKUP
        assert ready.value.ready_at is not None
        assert ready.warnings == []

    @pytest.mark.asyncio
    async def test_ready_for_pickup_opens_delivery(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller, status=OrderStatus.READY_FOR_PICKUP)

        delivery = (await db_session.execute(
            select(Delivery).where(Delivery.order_id == order.id)
        )).scalar_one()
        assert delivery.status == DeliveryStatus.AVAILABLE
        assert delivery.driver_id is None
        assert delivery.delivery_address == order.delivery_address

    @pytest.mark.asyncio
    async def test_failed_delivery_creation_is_a_warning(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller, status=OrderStatus.PREPARING)

        async def _broken(self, order_id):
            raise RuntimeError("delivery store unavailable")

        with patch(
            "marketplace.domain.services.delivery_service.DeliveryService.create_for_order", _broken
        ):
            result = await OrderService(db_session).advance_status(
                actor_of(seller), order.id, OrderStatus.READY_FOR_PICKUP
            )

        assert result.success
        assert result.value.status == OrderStatus.READY_FOR_PICKUP
        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert warning.error_code == ErrorCode.CONSISTENCY_WARNING
        assert warning.details["side_effect"] == "delivery"

    @pytest.mark.asyncio
    async def test_cannot_skip_states(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)

        result = await OrderService(db_session).advance_status(
            actor_of(seller), order.id, OrderStatus.READY_FOR_PICKUP
        )

        assert result.error.error_code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_seller_cannot_drive_delivery_states(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller, status=OrderStatus.READY_FOR_PICKUP)

        result = await OrderService(db_session).advance_status(actor_of(seller), order.id, OrderStatus.ASSIGNED)

        assert result.error.error_code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_placed_to_delivered_is_invalid(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)

        result = await OrderService(db_session).advance_status(actor_of(seller), order.id, "delivered")

        assert result.success is False
        assert result.error.error_code == ErrorCode.INVALID_TRANSITION
        assert result.error.details == {"entity": "order", "current_state": "placed", "target_state": "delivered"}

    @pytest.mark.asyncio
    async def test_other_seller_rejected(self, db_session, buyer, seller, user_factory, order_factory):
        order = await order_factory(buyer, seller)
        intruder = await user_factory(role=UserRole.SELLER)

        result = await OrderService(db_session).advance_status(actor_of(intruder), order.id, "accepted")

        assert result.error.error_code == ErrorCode.NOT_AUTHORIZED

    @pytest.mark.asyncio
    async def test_unknown_status_is_validation_error(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)

        result = await OrderService(db_session).advance_status(actor_of(seller), order.id, "shipped")

        assert result.error.error_code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_admin_override_is_audited(self, db_session, buyer, seller, admin, order_factory):
        order = await order_factory(buyer, seller)

        result = await OrderService(db_session).advance_status(actor_of(admin), order.id, "accepted")

        assert result.success
        log = (await db_session.execute(select(AuditLog))).scalar_one()
        assert log.action == AuditAction.ORDER_STATUS_OVERRIDDEN
        assert log.entity_id == str(order.id)
        assert log.details == {"from": "placed", "to": "accepted"}

    @pytest.mark.asyncio
    async def test_seller_cancels_preparing_order(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller, status=OrderStatus.PREPARING)

        result = await OrderService(db_session).advance_status(actor_of(seller), order.id, "cancelled")

        assert result.value.status == OrderStatus.CANCELLED
        assert result.value.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_missing_order(self, db_session, seller):
        result = await OrderService(db_session).advance_status(actor_of(seller), 404, "accepted")
        assert result.error.error_code == ErrorCode.NOT_FOUND


@pytest.mark.unit
class TestCancelOrder:

    @pytest.mark.asyncio
    async def test_buyer_cancels_placed_order(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)

        result = await OrderService(db_session).cancel_order(actor_of(buyer), order.id, "  changed my mind ")

        assert result.value.status == OrderStatus.CANCELLED
        assert result.value.cancel_reason == "changed my mind"

    @pytest.mark.asyncio
    async def test_cannot_cancel_after_acceptance(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller, status=OrderStatus.ACCEPTED)

        result = await OrderService(db_session).cancel_order(actor_of(buyer), order.id)

        assert result.error.error_code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_cannot_cancel_someone_elses_order(self, db_session, buyer, seller, user_factory, order_factory):
        order = await order_factory(buyer, seller)
        stranger = await user_factory(role=UserRole.BUYER)

        result = await OrderService(db_session).cancel_order(actor_of(stranger), order.id)

        assert result.error.error_code == ErrorCode.NOT_AUTHORIZED

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, db_session, buyer, seller, order_factory):
        order = await order_factory(buyer, seller)
        service = OrderService(db_session)
        await service.cancel_order(actor_of(buyer), order.id)

        result = await service.advance_status(actor_of(seller), order.id, "accepted")

        assert result.error.error_code == ErrorCode.INVALID_TRANSITION


@pytest.mark.unit
class TestOrderReads:

    @pytest.mark.asyncio
    async def test_visibility(self, db_session, buyer, seller, admin, user_factory, order_factory):
        order = await order_factory(buyer, seller)
        stranger = await user_factory(role=UserRole.BUYER)
        service = OrderService(db_session)

        assert (await service.get_order(actor_of(buyer), order.id)).success
        assert (await service.get_order(actor_of(seller), order.id)).success
        assert (await service.get_order(actor_of(admin), order.id)).success
        hidden = await service.get_order(actor_of(stranger), order.id)
        assert hidden.error.error_code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_lists(self, db_session, buyer, seller, admin, order_factory):
        first = await order_factory(buyer, seller)
        second = await order_factory(buyer, seller, status=OrderStatus.ACCEPTED)
        service = OrderService(db_session)

        mine = await service.list_buyer_orders(actor_of(buyer))
        assert {o.id for o in mine.value} == {first.id, second.id}

        accepted = await service.list_seller_orders(actor_of(seller), OrderStatus.ACCEPTED)
        assert [o.id for o in accepted.value] == [second.id]

        everything = await service.list_orders(actor_of(admin))
        assert len(everything.value) == 2

        assert (await service.list_orders(actor_of(buyer))).success is False
