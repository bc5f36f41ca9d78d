"""
Settlement Service - revenue split of a delivered order

    platform_fee  = round_half_up(order_amount * platform_rate, 0.01)
    driver_fee    = min(delivery_fee, order_amount - platform_fee)
    seller_amount = order_amount - platform_fee - driver_fee

The seller absorbs every rounding remainder, so the three parts always sum
to the order amount exactly. One settlement per order, enforced by a unique
constraint on settlements.order_id.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.exceptions import AlreadyPaid, InternalError, InvalidTransition, NotFound
from marketplace.core.logging import get_logger
from marketplace.core.results import ActionResult
from marketplace.core.validation import MONEY_QUANT, to_money
from marketplace.db.database import utcnow
from marketplace.db.models.audit_log import AuditAction
from marketplace.db.models.delivery import Delivery, DeliveryStatus
from marketplace.db.models.order import Order
from marketplace.db.models.settlement import Settlement, SettlementStatus
from marketplace.db.models.user import UserRole
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.notification_service import change_notifier
from marketplace.domain.services.platform_settings_service import PlatformSettingsService

logger = get_logger(__name__)


@dataclass(frozen=True)
class SettlementBreakdown:
    order_amount: Decimal
    platform_fee_rate: Decimal
    platform_fee: Decimal
    driver_fee: Decimal
    seller_amount: Decimal


def calculate_settlement(order_amount: Any, platform_rate: Any, delivery_fee: Any) -> SettlementBreakdown:
    """Pure split calculation. Decimal in, Decimal out."""
    amount = to_money(order_amount)
    rate = Decimal(str(platform_rate)) if isinstance(platform_rate, float) else Decimal(platform_rate)
    fee = to_money(delivery_fee)

    if amount < 0:
        raise ValueError("order_amount cannot be negative")
    if rate < 0 or rate > 1:
        raise ValueError("platform_rate must be between 0 and 1")
    if fee < 0:
        raise ValueError("delivery_fee cannot be negative")

    platform_fee = (amount * rate).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    driver_fee = min(fee, amount - platform_fee)
    seller_amount = amount - platform_fee - driver_fee

    return SettlementBreakdown(
        order_amount=amount,
        platform_fee_rate=rate,
        platform_fee=platform_fee,
        driver_fee=driver_fee,
        seller_amount=seller_amount,
    )


@dataclass(frozen=True)
class SettlementCreation:
    settlement: Settlement
    created: bool


@dataclass(frozen=True)
class SettlementStats:
    total_revenue: Decimal
    total_platform_fees: Decimal
    total_driver_fees: Decimal
    total_seller_earnings: Decimal
    pending_count: int
    paid_count: int


@dataclass(frozen=True)
class EarningsSummary:
    total_earned: Decimal
    pending_amount: Decimal
    paid_amount: Decimal
    settlement_count: int


class SettlementService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.platform_settings = PlatformSettingsService(db)

    async def _by_order(self, order_id: int) -> Optional[Settlement]:
        result = await self.db.execute(
            select(Settlement).where(Settlement.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def create_for_delivery(self, delivery_id: int) -> ActionResult[SettlementCreation]:
        """
        Compute and store the settlement for a delivered delivery.

        Repeat calls return the existing row with ``created=False``.
        """
        order_id = None
        try:
            delivery = await self.db.get(Delivery, delivery_id, populate_existing=True)
            if delivery is None:
                return ActionResult.fail(NotFound("Delivery", delivery_id))
            order_id = delivery.order_id
            if delivery.status != DeliveryStatus.DELIVERED:
                return ActionResult.fail(InvalidTransition("delivery", delivery.status.value, "settled"))

            existing = await self._by_order(order_id)
            if existing is not None:
                return ActionResult.ok(SettlementCreation(existing, created=False))

            order = await self.db.get(Order, order_id, populate_existing=True)
            if order is None:
                return ActionResult.fail(NotFound("Order", order_id))

            policy = await self.platform_settings.get_fee_policy()
            breakdown = calculate_settlement(
                order.total_amount, policy.platform_fee_rate, policy.default_delivery_fee
            )

            settlement = Settlement(
                order_id=order.id,
                delivery_id=delivery.id,
                seller_id=order.seller_id,
                driver_id=delivery.driver_id,
                order_amount=breakdown.order_amount,
                platform_fee_rate=breakdown.platform_fee_rate,
                platform_fee=breakdown.platform_fee,
                driver_fee=breakdown.driver_fee,
                seller_amount=breakdown.seller_amount,
                status=SettlementStatus.PENDING,
            )
            self.db.add(settlement)
            await self.db.commit()

        except IntegrityError:
            # Concurrent creation won; return its row
            await self.db.rollback()
            existing = await self._by_order(order_id)
            if existing is None:
                logger.error("Settlement insert conflicted but no row found", extra_data={"delivery_id": delivery_id})
                return ActionResult.fail(InternalError())
            return ActionResult.ok(SettlementCreation(existing, created=False))
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Settlement creation failed",
                extra_data={"delivery_id": delivery_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Settlement created",
            extra_data={
                "settlement_id": settlement.id,
                "order_id": settlement.order_id,
                "order_amount": str(breakdown.order_amount),
                "platform_fee": str(breakdown.platform_fee),
                "driver_fee": str(breakdown.driver_fee),
                "seller_amount": str(breakdown.seller_amount),
            },
        )
        await change_notifier.notify("settlements", settlement.id, None, order_id=settlement.order_id)
        return ActionResult.ok(SettlementCreation(settlement, created=True))

    async def mark_paid(self, actor: Actor, settlement_id: int) -> ActionResult[Settlement]:
        """pending -> paid (admin)"""
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        try:
            result = await self.db.execute(
                update(Settlement)
                .where(Settlement.id == settlement_id, Settlement.status == SettlementStatus.PENDING)
                .values(status=SettlementStatus.PAID, paid_at=utcnow(), paid_by=actor.user_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = await self.db.scalar(select(Settlement.id).where(Settlement.id == settlement_id))
                await self.db.rollback()
                if exists is None:
                    return ActionResult.fail(NotFound("Settlement", settlement_id))
                return ActionResult.fail(AlreadyPaid(settlement_id))

            self.audit.record(actor.user_id, AuditAction.SETTLEMENT_PAID, "settlement", settlement_id)
            await self.db.commit()
            settlement = await self._load(settlement_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to mark settlement paid",
                extra_data={"settlement_id": settlement_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info("Settlement paid", extra_data={"settlement_id": settlement_id, "admin_id": actor.user_id})
        await change_notifier.notify("settlements", settlement_id, actor.user_id, status=SettlementStatus.PAID.value)
        return ActionResult.ok(settlement)

    async def _load(self, settlement_id: int) -> Optional[Settlement]:
        result = await self.db.execute(
            select(Settlement)
            .where(Settlement.id == settlement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_order(self, actor: Actor, order_id: int) -> ActionResult[Settlement]:
        auth = require_role(actor, [UserRole.SELLER, UserRole.DRIVER, UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            settlement = await self._by_order(order_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load settlement", extra_data={"order_id": order_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        if settlement is None:
            return ActionResult.fail(NotFound("Settlement", f"order {order_id}"))
        if not actor.is_admin and actor.user_id not in (settlement.seller_id, settlement.driver_id):
            return ActionResult.fail(NotFound("Settlement", f"order {order_id}"))
        return ActionResult.ok(settlement)

    async def list_seller_settlements(self, actor: Actor) -> ActionResult[list[Settlement]]:
        auth = require_role(actor, [UserRole.SELLER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._list(Settlement.seller_id == actor.user_id)

    async def list_driver_settlements(self, actor: Actor) -> ActionResult[list[Settlement]]:
        auth = require_role(actor, [UserRole.DRIVER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._list(Settlement.driver_id == actor.user_id)

    async def list_settlements(
        self,
        actor: Actor,
        status: Optional[SettlementStatus] = None,
    ) -> ActionResult[list[Settlement]]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._list(Settlement.status == status if status is not None else None)

    async def _list(self, condition, limit: int = 200) -> ActionResult[list[Settlement]]:
        query = select(Settlement).order_by(Settlement.created_at.desc(), Settlement.id.desc()).limit(limit)
        if condition is not None:
            query = query.where(condition)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error("Failed to list settlements", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))

    async def settlement_stats(self, actor: Actor) -> ActionResult[SettlementStats]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            row = (await self.db.execute(
                select(
                    func.coalesce(func.sum(Settlement.order_amount), 0),
                    func.coalesce(func.sum(Settlement.platform_fee), 0),
                    func.coalesce(func.sum(Settlement.driver_fee), 0),
                    func.coalesce(func.sum(Settlement.seller_amount), 0),
                    func.count(case((Settlement.status == SettlementStatus.PENDING, 1))),
                    func.count(case((Settlement.status == SettlementStatus.PAID, 1))),
                )
            )).one()
        except SQLAlchemyError as e:
            logger.error("Failed to compute settlement stats", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        return ActionResult.ok(SettlementStats(
            total_revenue=to_money(row[0]),
            total_platform_fees=to_money(row[1]),
            total_driver_fees=to_money(row[2]),
            total_seller_earnings=to_money(row[3]),
            pending_count=row[4],
            paid_count=row[5],
        ))

    async def seller_earnings_summary(self, actor: Actor) -> ActionResult[EarningsSummary]:
        auth = require_role(actor, [UserRole.SELLER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            result = await self.db.execute(
                select(Settlement.status, func.count(Settlement.id), func.sum(Settlement.seller_amount))
                .where(Settlement.seller_id == actor.user_id)
                .group_by(Settlement.status)
            )
            rows = {status: (count, to_money(total or 0)) for status, count, total in result.all()}
        except SQLAlchemyError as e:
            logger.error("Failed to compute seller earnings", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        zero = (0, Decimal("0.00"))
        pending = rows.get(SettlementStatus.PENDING, zero)
        paid = rows.get(SettlementStatus.PAID, zero)
        return ActionResult.ok(EarningsSummary(
            total_earned=pending[1] + paid[1],
            pending_amount=pending[1],
            paid_amount=paid[1],
            settlement_count=pending[0] + paid[0],
        ))
