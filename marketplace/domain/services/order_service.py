"""
Order Service - checkout and the buyer/seller half of the order lifecycle

placed -> accepted -> preparing -> ready_for_pickup are driven here by the
seller; assigned / picked_up / delivered follow the delivery. Cancellation
is possible from any non-terminal status.
"""
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Union

from sqlalchemy import select, update, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.config import settings
from marketplace.core.exceptions import (
    ConsistencyWarning,
    InternalError,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from marketplace.core.logging import get_logger
from marketplace.core.rate_limit import RateLimitAction, check_rate_limit
from marketplace.core.results import ActionResult
from marketplace.core.validation import (
    AddressValidator,
    PhoneNumberValidator,
    TextSanitizer,
    to_money,
)
from marketplace.db.database import utcnow
from marketplace.db.models.audit_log import AuditAction
from marketplace.db.models.order import Order, OrderItem, OrderStatus
from marketplace.db.models.product import Product
from marketplace.db.models.user import UserRole
from marketplace.domain.transitions import (
    ORDER_TRANSITIONS,
    SELLER_ORDER_TARGETS,
    can_transition,
)
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.delivery_service import DeliveryService
from marketplace.domain.services.notification_service import change_notifier

logger = get_logger(__name__)

# Timestamp column stamped when an order enters each status
_STAMPS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.READY_FOR_PICKUP: "ready_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


@dataclass(frozen=True)
class OrderLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class DeliveryInfo:
    address: str
    phone: str
    notes: Optional[str] = None


class OrderService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def _load(self, order_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _validate_delivery_info(info: DeliveryInfo) -> Union[DeliveryInfo, ValidationError]:
        is_valid, error = AddressValidator.validate(info.address)
        if not is_valid:
            return ValidationError(error, field="address")

        if not PhoneNumberValidator.validate(info.phone):
            return ValidationError("Invalid phone number", field="phone")

        notes = None
        if info.notes:
            notes = TextSanitizer.sanitize(info.notes, max_length=500)
            is_safe, pattern = TextSanitizer.check_for_injection(notes)
            if not is_safe:
                return ValidationError(f"Invalid notes: {pattern}", field="notes")

        return DeliveryInfo(
            address=AddressValidator.normalize(info.address),
            phone=PhoneNumberValidator.normalize(info.phone),
            notes=notes or None,
        )

    async def create_order(
        self,
        actor: Actor,
        items: Iterable[OrderLine],
        delivery_info: DeliveryInfo,
    ) -> ActionResult[Order]:
        """
        Place an order against a single seller.

        Prices and names are snapshotted from the catalog. Stock is
        decremented in the same transaction; with STRICT_STOCK_CHECK an item
        that cannot be covered fails the whole order.
        """
        auth = require_role(actor, [UserRole.BUYER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        limited = await check_rate_limit(RateLimitAction.CHECKOUT, actor.user_id)
        if limited:
            return ActionResult.fail(limited)

        # Merge repeated products, keeping cart order
        quantities: "OrderedDict[int, int]" = OrderedDict()
        for line in items:
            if not isinstance(line.quantity, int) or isinstance(line.quantity, bool) or line.quantity < 1:
                return ActionResult.fail(ValidationError("Quantity must be a positive integer", field="quantity"))
            quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

        if not quantities:
            return ActionResult.fail(ValidationError("Cart is empty", field="items"))

        info = self._validate_delivery_info(delivery_info)
        if isinstance(info, ValidationError):
            return ActionResult.fail(info)

        try:
            result = await self.db.execute(
                select(Product).where(Product.id.in_(list(quantities)))
            )
            products = {p.id: p for p in result.scalars().all()}

            missing = [pid for pid in quantities if pid not in products or not products[pid].is_active]
            if missing:
                return ActionResult.fail(ValidationError(
                    "Some products are unavailable", field="items", details={"product_ids": missing}
                ))

            seller_ids = {products[pid].seller_id for pid in quantities}
            if len(seller_ids) > 1:
                return ActionResult.fail(ValidationError(
                    "All items must be from the same seller", field="items"
                ))
            seller_id = seller_ids.pop()

            order_items = []
            total = Decimal("0.00")
            for pid, quantity in quantities.items():
                product = products[pid]
                unit_price = to_money(product.price)
                line_total = to_money(unit_price * quantity)
                total += line_total
                order_items.append(OrderItem(
                    product_id=pid,
                    product_name=product.name,
                    unit_price=unit_price,
                    quantity=quantity,
                    line_total=line_total,
                ))

            for pid, quantity in quantities.items():
                if settings.STRICT_STOCK_CHECK:
                    decrement = (
                        update(Product)
                        .where(Product.id == pid, Product.stock >= quantity)
                        .values(stock=Product.stock - quantity)
                    )
                else:
                    decrement = (
                        update(Product)
                        .where(Product.id == pid)
                        .values(stock=case((Product.stock > quantity, Product.stock - quantity), else_=0))
                    )
                stock_result = await self.db.execute(
                    decrement.execution_options(synchronize_session=False)
                )
                if stock_result.rowcount == 0:
                    await self.db.rollback()
                    return ActionResult.fail(ValidationError(
                        "Insufficient stock", field="items", details={"product_id": pid}
                    ))

            order = Order(
                buyer_id=actor.user_id,
                seller_id=seller_id,
                status=OrderStatus.PLACED,
                total_amount=to_money(total),
                delivery_address=info.address,
                delivery_phone=info.phone,
                notes=info.notes,
                items=order_items,
            )
            self.db.add(order)
            await self.db.commit()
            order = await self._load(order.id)

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Order creation failed",
                extra_data={"buyer_id": actor.user_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError("Failed to create order"))

        logger.info(
            "Order placed",
            extra_data={
                "order_id": order.id,
                "buyer_id": actor.user_id,
                "seller_id": seller_id,
                "total_amount": str(order.total_amount),
                "items": len(order_items),
                "delivery_phone": PhoneNumberValidator.mask(order.delivery_phone),
            },
        )
        await change_notifier.notify("orders", order.id, actor.user_id, status=OrderStatus.PLACED.value, seller_id=seller_id)
        return ActionResult.ok(order)

    async def advance_status(
        self,
        actor: Actor,
        order_id: int,
        new_status: Union[OrderStatus, str],
    ) -> ActionResult[Order]:
        """Seller (own orders) or admin moves an order one step"""
        auth = require_role(actor, [UserRole.SELLER, UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        try:
            target = OrderStatus(new_status)
        except ValueError:
            return ActionResult.fail(ValidationError(f"Unknown order status: {new_status}", field="status"))

        try:
            current = (await self.db.execute(
                select(Order.status, Order.seller_id).where(Order.id == order_id)
            )).first()
        except SQLAlchemyError as e:
            logger.error("Failed to read order", extra_data={"order_id": order_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        if current is None:
            return ActionResult.fail(NotFound("Order", order_id))
        status, seller_id = current

        if not actor.is_admin and seller_id != actor.user_id:
            return ActionResult.fail(NotAuthorized("This order belongs to another seller"))
        if target not in SELLER_ORDER_TARGETS or not can_transition(ORDER_TRANSITIONS, status, target):
            return ActionResult.fail(InvalidTransition("order", status.value, target.value))

        return await self._transition(actor, order_id, status, target, override=seller_id != actor.user_id)

    async def cancel_order(self, actor: Actor, order_id: int, reason: Optional[str] = None) -> ActionResult[Order]:
        """Buyer withdraws an order the seller has not accepted yet"""
        auth = require_role(actor, [UserRole.BUYER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        try:
            current = (await self.db.execute(
                select(Order.status, Order.buyer_id).where(Order.id == order_id)
            )).first()
        except SQLAlchemyError as e:
            logger.error("Failed to read order", extra_data={"order_id": order_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        if current is None:
            return ActionResult.fail(NotFound("Order", order_id))
        status, buyer_id = current
        if buyer_id != actor.user_id:
            return ActionResult.fail(NotAuthorized("This order belongs to another buyer"))
        if status != OrderStatus.PLACED:
            return ActionResult.fail(InvalidTransition("order", status.value, OrderStatus.CANCELLED.value))

        reason = TextSanitizer.sanitize(reason or "", max_length=500) or None
        return await self._transition(actor, order_id, status, OrderStatus.CANCELLED, cancel_reason=reason)

    async def _transition(
        self,
        actor: Actor,
        order_id: int,
        expected: OrderStatus,
        target: OrderStatus,
        override: bool = False,
        cancel_reason: Optional[str] = None,
    ) -> ActionResult[Order]:
        values = {"status": target}
        if target in _STAMPS:
            values[_STAMPS[target]] = utcnow()
        if cancel_reason:
            values["cancel_reason"] = cancel_reason

        try:
            result = await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                latest = await self.db.scalar(select(Order.status).where(Order.id == order_id))
                await self.db.rollback()
                logger.info(
                    "Order transition lost",
                    extra_data={"order_id": order_id, "expected": expected.value, "target": target.value},
                )
                return ActionResult.fail(InvalidTransition(
                    "order", latest.value if latest else None, target.value
                ))

            if override:
                self.audit.record(
                    actor.user_id,
                    AuditAction.ORDER_STATUS_OVERRIDDEN,
                    "order",
                    order_id,
                    {"from": expected.value, "to": target.value},
                )
            await self.db.commit()
            order = await self._load(order_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Order transition failed",
                extra_data={"order_id": order_id, "target": target.value, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Order status changed",
            extra_data={
                "order_id": order_id,
                "from": expected.value,
                "to": target.value,
                "actor_id": actor.user_id,
                "role": actor.role.value,
            },
        )
        await change_notifier.notify("orders", order_id, actor.user_id, status=target.value)

        warnings: list[ConsistencyWarning] = []
        if target == OrderStatus.READY_FOR_PICKUP:
            warning = await self._open_delivery(order_id)
            if warning is not None:
                warnings.append(warning)
            # Delivery creation may have rolled back and expired the instance
            try:
                order = await self._load(order_id)
            except SQLAlchemyError as e:
                logger.error("Failed to reload order", extra_data={"order_id": order_id, "error": str(e)})
        return ActionResult.ok(order, warnings)

    async def _open_delivery(self, order_id: int) -> Optional[ConsistencyWarning]:
        """Create the delivery for a ready order; a failure leaves the order ready"""
        try:
            created = await DeliveryService(self.db).create_for_order(order_id)
            reason = None if created.success else created.error_message
        except Exception as e:
            reason = str(e)

        if reason is None:
            return None
        warning = ConsistencyWarning("order_ready_for_pickup", "delivery", order_id, reason)
        logger.warning(warning.message, extra_data=warning.details)
        return warning

    # Reads

    async def get_order(self, actor: Actor, order_id: int) -> ActionResult[Order]:
        """Visible to its buyer, its seller and admins"""
        auth = require_role(actor, [UserRole.BUYER, UserRole.SELLER, UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            order = await self._load(order_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load order", extra_data={"order_id": order_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        if order is None:
            return ActionResult.fail(NotFound("Order", order_id))
        if not actor.is_admin and actor.user_id not in (order.buyer_id, order.seller_id):
            return ActionResult.fail(NotFound("Order", order_id))
        return ActionResult.ok(order)

    async def list_buyer_orders(self, actor: Actor) -> ActionResult[list[Order]]:
        auth = require_role(actor, [UserRole.BUYER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._list([Order.buyer_id == actor.user_id])

    async def list_seller_orders(
        self,
        actor: Actor,
        status: Optional[OrderStatus] = None,
    ) -> ActionResult[list[Order]]:
        auth = require_role(actor, [UserRole.SELLER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        conditions = [Order.seller_id == actor.user_id]
        if status is not None:
            conditions.append(Order.status == status)
        return await self._list(conditions)

    async def list_orders(
        self,
        actor: Actor,
        status: Optional[OrderStatus] = None,
        limit: int = 200,
    ) -> ActionResult[list[Order]]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        conditions = [Order.status == status] if status is not None else []
        return await self._list(conditions, limit)

    async def _list(self, conditions: list, limit: int = 100) -> ActionResult[list[Order]]:
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
        if conditions:
            query = query.where(*conditions)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error("Failed to list orders", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))
