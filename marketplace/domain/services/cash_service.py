"""
Cash Service - reconciliation of cash collected at the door

pending -> collected -> confirmed. A mismatch between what was expected and
what the driver reports is recorded as a discrepancy, never rejected. Cash
is bookkeeping outside the QANZ ledger; nothing here touches wallets.
"""
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.exceptions import (
    InternalError,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from marketplace.core.logging import get_logger
from marketplace.core.rate_limit import RateLimitAction, check_rate_limit
from marketplace.core.results import ActionResult
from marketplace.core.validation import AmountValidator, to_money
from marketplace.db.database import utcnow
from marketplace.db.models.audit_log import AuditAction
from marketplace.db.models.cash_collection import CashCollection, CashCollectionStatus
from marketplace.db.models.delivery import Delivery, DeliveryStatus
from marketplace.db.models.order import Order
from marketplace.db.models.user import UserRole
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.notification_service import change_notifier

logger = get_logger(__name__)


class CashService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def _by_delivery(self, delivery_id: int) -> Optional[CashCollection]:
        result = await self.db.execute(
            select(CashCollection).where(CashCollection.delivery_id == delivery_id)
        )
        return result.scalar_one_or_none()

    async def _load(self, collection_id: int) -> Optional[CashCollection]:
        result = await self.db.execute(
            select(CashCollection)
            .where(CashCollection.id == collection_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_for_delivery(self, delivery_id: int) -> ActionResult[CashCollection]:
        """Open a pending collection for a delivered order. Idempotent per delivery."""
        try:
            delivery = await self.db.get(Delivery, delivery_id, populate_existing=True)
            if delivery is None:
                return ActionResult.fail(NotFound("Delivery", delivery_id))
            if delivery.status != DeliveryStatus.DELIVERED:
                return ActionResult.fail(InvalidTransition("delivery", delivery.status.value, "cash_collection"))

            existing = await self._by_delivery(delivery_id)
            if existing is not None:
                return ActionResult.ok(existing)

            order = await self.db.get(Order, delivery.order_id, populate_existing=True)
            if order is None:
                return ActionResult.fail(NotFound("Order", delivery.order_id))

            collection = CashCollection(
                delivery_id=delivery.id,
                order_id=order.id,
                driver_id=delivery.driver_id,
                amount_expected=order.total_amount,
                # What the driver declared at the door; stays pending until reported
                amount_collected=delivery.cash_collected,
                status=CashCollectionStatus.PENDING,
            )
            self.db.add(collection)
            await self.db.commit()

        except IntegrityError:
            await self.db.rollback()
            existing = await self._by_delivery(delivery_id)
            if existing is None:
                logger.error("Cash collection insert conflicted but no row found", extra_data={"delivery_id": delivery_id})
                return ActionResult.fail(InternalError())
            return ActionResult.ok(existing)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Cash collection creation failed",
                extra_data={"delivery_id": delivery_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Cash collection opened",
            extra_data={
                "collection_id": collection.id,
                "delivery_id": delivery_id,
                "amount_expected": str(collection.amount_expected),
            },
        )
        await change_notifier.notify("cash_collections", collection.id, None, delivery_id=delivery_id)
        return ActionResult.ok(collection)

    async def report_collected(self, actor: Actor, collection_id: int, amount: Any) -> ActionResult[CashCollection]:
        """pending -> collected, by the driver who made the delivery"""
        auth = require_role(actor, [UserRole.DRIVER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        is_valid, error = AmountValidator.validate(amount)
        if not is_valid:
            return ActionResult.fail(ValidationError(error, field="amount"))
        amount = to_money(amount)

        try:
            result = await self.db.execute(
                update(CashCollection)
                .where(
                    CashCollection.id == collection_id,
                    CashCollection.driver_id == actor.user_id,
                    CashCollection.status == CashCollectionStatus.PENDING,
                )
                .values(
                    status=CashCollectionStatus.COLLECTED,
                    amount_collected=amount,
                    collected_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = (await self.db.execute(
                    select(CashCollection.driver_id, CashCollection.status)
                    .where(CashCollection.id == collection_id)
                )).first()
                await self.db.rollback()
                if current is None:
                    return ActionResult.fail(NotFound("CashCollection", collection_id))
                driver_id, status = current
                if driver_id != actor.user_id:
                    return ActionResult.fail(NotAuthorized("This collection belongs to another driver"))
                return ActionResult.fail(InvalidTransition(
                    "cash_collection", status.value, CashCollectionStatus.COLLECTED.value
                ))

            await self.db.commit()
            collection = await self._load(collection_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to record cash collection",
                extra_data={"collection_id": collection_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        discrepancy = collection.discrepancy
        log = logger.warning if discrepancy else logger.info
        log(
            "Cash reported collected",
            extra_data={
                "collection_id": collection_id,
                "driver_id": actor.user_id,
                "amount_collected": str(amount),
                "discrepancy": str(discrepancy),
            },
        )
        await change_notifier.notify(
            "cash_collections", collection_id, actor.user_id, status=CashCollectionStatus.COLLECTED.value
        )
        return ActionResult.ok(collection)

    async def confirm(self, actor: Actor, collection_id: int) -> ActionResult[CashCollection]:
        """collected -> confirmed (admin)"""
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        limited = await check_rate_limit(RateLimitAction.ADMIN_ACTION, actor.user_id)
        if limited:
            return ActionResult.fail(limited)

        try:
            result = await self.db.execute(
                update(CashCollection)
                .where(
                    CashCollection.id == collection_id,
                    CashCollection.status == CashCollectionStatus.COLLECTED,
                )
                .values(
                    status=CashCollectionStatus.CONFIRMED,
                    confirmed_at=utcnow(),
                    confirmed_by=actor.user_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                status = await self.db.scalar(
                    select(CashCollection.status).where(CashCollection.id == collection_id)
                )
                await self.db.rollback()
                if status is None:
                    return ActionResult.fail(NotFound("CashCollection", collection_id))
                return ActionResult.fail(InvalidTransition(
                    "cash_collection", status.value, CashCollectionStatus.CONFIRMED.value
                ))

            self.audit.record(actor.user_id, AuditAction.CASH_CONFIRMED, "cash_collection", collection_id)
            await self.db.commit()
            collection = await self._load(collection_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to confirm cash collection",
                extra_data={"collection_id": collection_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Cash collection confirmed",
            extra_data={
                "collection_id": collection_id,
                "admin_id": actor.user_id,
                "discrepancy": str(collection.discrepancy),
            },
        )
        await change_notifier.notify(
            "cash_collections", collection_id, actor.user_id, status=CashCollectionStatus.CONFIRMED.value
        )
        return ActionResult.ok(collection)

    async def list_driver_collections(
        self,
        actor: Actor,
        status: Optional[CashCollectionStatus] = None,
    ) -> ActionResult[list[CashCollection]]:
        auth = require_role(actor, [UserRole.DRIVER])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        conditions = [CashCollection.driver_id == actor.user_id]
        if status is not None:
            conditions.append(CashCollection.status == status)
        return await self._list(conditions, newest_first=True)

    async def list_open_collections(self, actor: Actor) -> ActionResult[list[CashCollection]]:
        """Pending and collected, oldest first - the admin's work queue"""
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._list(
            [CashCollection.status.in_([CashCollectionStatus.PENDING, CashCollectionStatus.COLLECTED])],
            newest_first=False,
        )

    async def list_collections(
        self,
        actor: Actor,
        status: Optional[CashCollectionStatus] = None,
    ) -> ActionResult[list[CashCollection]]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        conditions = [CashCollection.status == status] if status is not None else []
        return await self._list(conditions, newest_first=True)

    async def _list(self, conditions: list, newest_first: bool, limit: int = 200) -> ActionResult[list[CashCollection]]:
        order = (
            (CashCollection.created_at.desc(), CashCollection.id.desc())
            if newest_first
            else (CashCollection.created_at.asc(), CashCollection.id.asc())
        )
        query = select(CashCollection).order_by(*order).limit(limit)
        if conditions:
            query = query.where(*conditions)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error("Failed to list cash collections", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))

    @staticmethod
    def total_discrepancy(collections: list[CashCollection]) -> Decimal:
        return sum(
            (c.discrepancy for c in collections if c.discrepancy is not None),
            Decimal("0.00"),
        )
