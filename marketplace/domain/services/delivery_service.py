"""
Delivery Service - creation, claiming and advancing deliveries

Every transition is a single conditional UPDATE keyed on the expected prior
status. Two drivers claiming the same delivery both issue
``UPDATE ... WHERE status = 'available'``; the database lets exactly one of
them match a row.

The order mirrors the delivery (assigned, picked_up, delivered) in the same
transaction. Settlement, cash collection and rewards follow a delivered
delivery after commit and are best-effort: a failure is reported as a
ConsistencyWarning, never undoing the delivery.
"""
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.exceptions import (
    AlreadyClaimed,
    ConsistencyWarning,
    InternalError,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from marketplace.core.logging import get_logger
from marketplace.core.results import ActionResult
from marketplace.core.validation import AmountValidator, to_money
from marketplace.db.database import utcnow
from marketplace.db.models.delivery import Delivery, DeliveryStatus
from marketplace.db.models.order import Order, OrderStatus
from marketplace.db.models.user import UserRole
from marketplace.domain.transitions import (
    DELIVERY_TRANSITIONS,
    DELIVERY_TO_ORDER_STATUS,
    ORDER_TRANSITIONS,
    can_transition,
    predecessors,
)
from marketplace.domain.services.notification_service import change_notifier

logger = get_logger(__name__)

# Timestamp column stamped when a delivery enters each status
_STAMPS = {
    DeliveryStatus.ASSIGNED: "assigned_at",
    DeliveryStatus.PICKED_UP: "picked_up_at",
    DeliveryStatus.DELIVERED: "delivered_at",
}


class DeliveryService:
    """Service for the delivery lifecycle"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, delivery_id: int) -> Optional[Delivery]:
        result = await self.db.execute(
            select(Delivery)
            .where(Delivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _by_order(self, order_id: int) -> Optional[Delivery]:
        result = await self.db.execute(
            select(Delivery).where(Delivery.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def create_for_order(self, order_id: int) -> ActionResult[Delivery]:
        """
        Open an available delivery for a ready order.

        Idempotent: a second call, or a concurrent one that loses on the
        unique order_id, returns the existing delivery.
        """
        try:
            existing = await self._by_order(order_id)
            if existing is not None:
                return ActionResult.ok(existing)

            order = await self.db.get(Order, order_id, populate_existing=True)
            if order is None:
                return ActionResult.fail(NotFound("Order", order_id))
            if order.status != OrderStatus.READY_FOR_PICKUP:
                return ActionResult.fail(InvalidTransition("order", order.status.value, "delivery_created"))

            delivery = Delivery(
                order_id=order.id,
                status=DeliveryStatus.AVAILABLE,
                delivery_address=order.delivery_address,
                delivery_phone=order.delivery_phone,
            )
            self.db.add(delivery)
            await self.db.commit()

        except IntegrityError:
            await self.db.rollback()
            existing = await self._by_order(order_id)
            if existing is None:
                logger.error("Delivery insert conflicted but no row found", extra_data={"order_id": order_id})
                return ActionResult.fail(InternalError())
            return ActionResult.ok(existing)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Delivery creation failed",
                extra_data={"order_id": order_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info("Delivery created", extra_data={"delivery_id": delivery.id, "order_id": order_id})
        await change_notifier.notify("deliveries", delivery.id, None, order_id=order_id, status=DeliveryStatus.AVAILABLE.value)
        return ActionResult.ok(delivery)

    async def claim(self, actor: Actor, delivery_id: int) -> ActionResult[Delivery]:
        """available -> assigned to the calling driver. Exactly one concurrent claim wins."""
        auth = require_role(actor, [UserRole.DRIVER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        now = utcnow()
        try:
            result = await self.db.execute(
                update(Delivery)
                .where(Delivery.id == delivery_id, Delivery.status == DeliveryStatus.AVAILABLE)
                .values(status=DeliveryStatus.ASSIGNED, driver_id=actor.user_id, assigned_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = await self.db.scalar(select(Delivery.id).where(Delivery.id == delivery_id))
                await self.db.rollback()
                if exists is None:
                    return ActionResult.fail(NotFound("Delivery", delivery_id))
                logger.info(
                    "Delivery claim lost",
                    extra_data={"delivery_id": delivery_id, "driver_id": actor.user_id},
                )
                return ActionResult.fail(AlreadyClaimed(delivery_id))

            order_id = await self.db.scalar(select(Delivery.order_id).where(Delivery.id == delivery_id))
            await self._mirror_order(order_id, DeliveryStatus.ASSIGNED, now)
            await self.db.commit()
            delivery = await self._load(delivery_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Delivery claim failed",
                extra_data={"delivery_id": delivery_id, "driver_id": actor.user_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info("Delivery claimed", extra_data={"delivery_id": delivery_id, "driver_id": actor.user_id})
        await change_notifier.notify(
            "deliveries", delivery_id, actor.user_id, status=DeliveryStatus.ASSIGNED.value, order_id=order_id
        )
        return ActionResult.ok(delivery)

    async def advance(
        self,
        actor: Actor,
        delivery_id: int,
        new_status: Union[DeliveryStatus, str],
        cash_collected: Any = None,
    ) -> ActionResult[Delivery]:
        """
        Move the caller's delivery one step forward.

        ``cash_collected`` may accompany ``delivered``: the amount taken at
        the door, copied onto the cash collection record.
        """
        auth = require_role(actor, [UserRole.DRIVER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        try:
            target = DeliveryStatus(new_status)
        except ValueError:
            return ActionResult.fail(ValidationError(f"Unknown delivery status: {new_status}", field="status"))

        if cash_collected is not None:
            if target != DeliveryStatus.DELIVERED:
                return ActionResult.fail(ValidationError(
                    "Cash can only be declared on delivery", field="cash_collected"
                ))
            is_valid, error = AmountValidator.validate(cash_collected)
            if not is_valid:
                return ActionResult.fail(ValidationError(error, field="cash_collected"))
            cash_collected = to_money(cash_collected)

        now = utcnow()
        try:
            current = (await self.db.execute(
                select(Delivery.status, Delivery.driver_id, Delivery.order_id)
                .where(Delivery.id == delivery_id)
            )).first()
            if current is None:
                return ActionResult.fail(NotFound("Delivery", delivery_id))
            status, driver_id, order_id = current

            if driver_id != actor.user_id:
                return ActionResult.fail(NotAuthorized("This delivery is assigned to another driver"))
            if not can_transition(DELIVERY_TRANSITIONS, status, target):
                return ActionResult.fail(InvalidTransition("delivery", status.value, target.value))

            values = {"status": target, _STAMPS[target]: now}
            if cash_collected is not None:
                values["cash_collected"] = cash_collected

            result = await self.db.execute(
                update(Delivery)
                .where(
                    Delivery.id == delivery_id,
                    Delivery.status == status,
                    Delivery.driver_id == actor.user_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                latest = await self.db.scalar(select(Delivery.status).where(Delivery.id == delivery_id))
                await self.db.rollback()
                return ActionResult.fail(InvalidTransition(
                    "delivery", latest.value if latest else None, target.value
                ))

            order_mirrored = await self._mirror_order(order_id, target, now)
            await self.db.commit()
            delivery = await self._load(delivery_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Delivery advance failed",
                extra_data={"delivery_id": delivery_id, "target": target.value, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Delivery advanced",
            extra_data={
                "delivery_id": delivery_id,
                "from": status.value,
                "to": target.value,
                "driver_id": actor.user_id,
            },
        )
        await change_notifier.notify(
            "deliveries", delivery_id, actor.user_id, status=target.value, order_id=order_id
        )

        warnings: list[ConsistencyWarning] = []
        if target == DeliveryStatus.DELIVERED:
            warnings = await self._after_delivered(delivery, order_mirrored)
            # A side effect may have rolled back and expired the instance
            try:
                delivery = await self._load(delivery_id)
            except SQLAlchemyError as e:
                logger.error("Failed to reload delivery", extra_data={"delivery_id": delivery_id, "error": str(e)})
        return ActionResult.ok(delivery, warnings)

    async def _mirror_order(self, order_id: int, delivery_status: DeliveryStatus, now) -> bool:
        """Move the order along with its delivery, inside the caller's transaction.

        Zero rows means the order left the expected status (cancelled
        meanwhile); the delivery transition still stands.
        """
        target = DELIVERY_TO_ORDER_STATUS[delivery_status]
        values: dict[str, Any] = {"status": target}
        if target == OrderStatus.DELIVERED:
            values["delivered_at"] = now

        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_(predecessors(ORDER_TRANSITIONS, target)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Order not mirrored from delivery",
                extra_data={"order_id": order_id, "delivery_status": delivery_status.value},
            )
            return False
        return True

    async def _after_delivered(self, delivery: Delivery, order_mirrored: bool) -> list[ConsistencyWarning]:
        """Settlement, cash collection and buyer rewards. Never raises."""
        from marketplace.domain.services.settlement_service import SettlementService
        from marketplace.domain.services.cash_service import CashService

        delivery_id = delivery.id
        order_id = delivery.order_id
        warnings: list[ConsistencyWarning] = []

        async def run(side_effect: str, call: Callable[[], Awaitable[ActionResult]]) -> None:
            try:
                result = await call()
            except Exception as e:
                reason = str(e)
            else:
                if result.success:
                    return
                reason = result.error_message
            warning = ConsistencyWarning("delivery_delivered", side_effect, delivery_id, reason or "unknown")
            logger.warning(warning.message, extra_data=warning.details)
            warnings.append(warning)

        await run("settlement", lambda: SettlementService(self.db).create_for_delivery(delivery_id))
        await run("cash_collection", lambda: CashService(self.db).create_for_delivery(delivery_id))
        if order_mirrored:
            await run("reward", lambda: self._reward_buyer(order_id))
        return warnings

    async def _reward_buyer(self, order_id: int) -> ActionResult:
        from marketplace.domain.services.reward_service import RewardService

        buyer_id = await self.db.scalar(select(Order.buyer_id).where(Order.id == order_id))
        if buyer_id is None:
            return ActionResult.fail(NotFound("Order", order_id))
        for result in await RewardService(self.db).reward_order_delivered(order_id, buyer_id):
            if not result.success:
                return result
        return ActionResult.ok()

    # Reads

    async def list_available(self, actor: Actor) -> ActionResult[list[Delivery]]:
        """Open deliveries, oldest first"""
        auth = require_role(actor, [UserRole.DRIVER, UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._list(
            [Delivery.status == DeliveryStatus.AVAILABLE],
            (Delivery.created_at.asc(), Delivery.id.asc()),
        )

    async def list_driver_deliveries(
        self,
        actor: Actor,
        status: Optional[DeliveryStatus] = None,
    ) -> ActionResult[list[Delivery]]:
        auth = require_role(actor, [UserRole.DRIVER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        conditions = [Delivery.driver_id == actor.user_id]
        if status is not None:
            conditions.append(Delivery.status == status)
        return await self._list(conditions, (Delivery.assigned_at.desc(), Delivery.id.desc()))

    async def _list(self, conditions: list, order_by: tuple, limit: int = 100) -> ActionResult[list[Delivery]]:
        try:
            result = await self.db.execute(
                select(Delivery).where(*conditions).order_by(*order_by).limit(limit)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to list deliveries", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))

    async def get_delivery(self, actor: Actor, delivery_id: int) -> ActionResult[Delivery]:
        """Drivers see open deliveries and their own; admins see all"""
        auth = require_role(actor, [UserRole.DRIVER, UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            delivery = await self._load(delivery_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load delivery", extra_data={"delivery_id": delivery_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        if delivery is None:
            return ActionResult.fail(NotFound("Delivery", delivery_id))
        if not actor.is_admin and delivery.status != DeliveryStatus.AVAILABLE and delivery.driver_id != actor.user_id:
            return ActionResult.fail(NotFound("Delivery", delivery_id))
        return ActionResult.ok(delivery)

    async def get_for_order(self, actor: Actor, order_id: int) -> ActionResult[Delivery]:
        """The delivery of an order, for its buyer, seller, driver or an admin"""
        auth = require_role(actor, [UserRole.BUYER, UserRole.SELLER, UserRole.DRIVER, UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            delivery = await self._by_order(order_id)
            order = await self.db.get(Order, order_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load delivery", extra_data={"order_id": order_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        if delivery is None or order is None:
            return ActionResult.fail(NotFound("Delivery", f"order {order_id}"))
        if not actor.is_admin and actor.user_id not in (order.buyer_id, order.seller_id, delivery.driver_id):
            return ActionResult.fail(NotFound("Delivery", f"order {order_id}"))
        return ActionResult.ok(delivery)
