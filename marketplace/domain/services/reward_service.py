"""
Reward Service - automatic QANZ rewards

A RewardEvent row is the proof that a reward was issued for a given
(user, rule, reference). It is written in the same transaction as the
ledger entry it points to, and the unique constraint on that triple makes
a concurrent duplicate fail at commit instead of paying twice.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.exceptions import InternalError, NotFound, ValidationError
from marketplace.core.logging import get_logger
from marketplace.core.results import ActionResult
from marketplace.core.validation import AmountValidator, TextSanitizer, to_money
from marketplace.db.database import utcnow
from marketplace.db.models.audit_log import AuditAction
from marketplace.db.models.order import Order, OrderStatus
from marketplace.db.models.reward import RewardRule, RewardEvent
from marketplace.db.models.user import UserRole
from marketplace.db.models.wallet_ledger import LedgerEntryType
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.notification_service import change_notifier
from marketplace.domain.services.wallet_service import WalletService, ALL_ROLES

logger = get_logger(__name__)

FIRST_ORDER = "first_order"
ORDER_COMPLETED = "order_completed"


@dataclass(frozen=True)
class RewardIssue:
    """``issued`` is False for inactive/missing rules and duplicates"""
    issued: bool
    rule_key: str
    amount: Decimal = Decimal("0.00")
    event: Optional[RewardEvent] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class RewardStats:
    total_rewarded: Decimal
    rewards_this_month: Decimal
    active_rules: int
    total_events: int


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class RewardService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.wallet = WalletService(db)
        self.audit = AuditService(db)

    async def issue_if_eligible(
        self,
        user_id: int,
        rule_key: str,
        reference_type: str,
        reference_id: Any,
    ) -> ActionResult[RewardIssue]:
        """Issue the rule's reward once per (user, rule, reference)."""
        reference_id = str(reference_id)
        try:
            rule_result = await self.db.execute(
                select(RewardRule).where(RewardRule.key == rule_key)
            )
            rule = rule_result.scalar_one_or_none()
            if rule is None or not rule.is_active:
                return ActionResult.ok(RewardIssue(False, rule_key, reason="rule inactive"))
            amount = to_money(rule.amount)

            existing = await self.db.execute(
                select(RewardEvent.id).where(
                    RewardEvent.user_id == user_id,
                    RewardEvent.rule_key == rule_key,
                    RewardEvent.reference_id == reference_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                return ActionResult.ok(RewardIssue(False, rule_key, reason="already issued"))

            appended = await self.wallet.append(
                user_id,
                amount,
                LedgerEntryType.REWARD,
                description=f"Reward: {rule_key}",
                reference_type=reference_type,
                reference_id=reference_id,
                commit=False,
            )
            if not appended.success:
                await self.db.rollback()
                return ActionResult.fail(appended.error)

            event = RewardEvent(
                rule_key=rule_key,
                user_id=user_id,
                issued_amount=amount,
                reference_type=reference_type,
                reference_id=reference_id,
                ledger_entry_id=appended.value.id,
            )
            self.db.add(event)
            await self.db.commit()

        except IntegrityError:
            # Lost the race to a concurrent issuance; its ledger row stands, ours rolls back
            await self.db.rollback()
            logger.info(
                "Reward already issued concurrently",
                extra_data={"user_id": user_id, "rule_key": rule_key, "reference_id": reference_id},
            )
            return ActionResult.ok(RewardIssue(False, rule_key, reason="already issued"))
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Reward issuance failed",
                extra_data={"user_id": user_id, "rule_key": rule_key, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Reward issued",
            extra_data={
                "user_id": user_id,
                "rule_key": rule_key,
                "amount": str(amount),
                "reference_type": reference_type,
                "reference_id": reference_id,
            },
        )
        await change_notifier.notify("wallet", user_id, None, rule_key=rule_key)
        return ActionResult.ok(RewardIssue(True, rule_key, amount, event))

    async def reward_order_delivered(self, order_id: int, buyer_id: int) -> list[ActionResult[RewardIssue]]:
        """Built-in trigger run after an order is delivered"""
        results = []

        # The buyer's earliest delivered order carries first_order, however the
        # deliveries interleave
        earliest_delivered = await self.db.scalar(
            select(func.min(Order.id)).where(
                Order.buyer_id == buyer_id,
                Order.status == OrderStatus.DELIVERED,
            )
        )
        prior_first = await self.db.scalar(
            select(func.count(RewardEvent.id)).where(
                RewardEvent.user_id == buyer_id,
                RewardEvent.rule_key == FIRST_ORDER,
            )
        )
        if earliest_delivered == order_id and not prior_first:
            results.append(await self.issue_if_eligible(buyer_id, FIRST_ORDER, "order", order_id))

        results.append(await self.issue_if_eligible(buyer_id, ORDER_COMPLETED, "order", order_id))
        return results

    # Rules

    async def list_rules(self, actor: Actor) -> ActionResult[list[RewardRule]]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            result = await self.db.execute(select(RewardRule).order_by(RewardRule.id))
        except SQLAlchemyError as e:
            logger.error("Failed to list reward rules", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))

    async def upsert_rule(
        self,
        actor: Actor,
        key: str,
        amount: Any,
        is_active: bool = True,
        description: Optional[str] = None,
    ) -> ActionResult[RewardRule]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        key = (key or "").strip().lower()
        if not key:
            return ActionResult.fail(ValidationError("Rule key is required", field="key"))
        is_valid, error = AmountValidator.validate(amount, allow_zero=False)
        if not is_valid:
            return ActionResult.fail(ValidationError(error, field="amount"))
        amount = to_money(amount)

        try:
            result = await self.db.execute(select(RewardRule).where(RewardRule.key == key))
            rule = result.scalar_one_or_none()
            previous = None
            if rule is None:
                rule = RewardRule(key=key, amount=amount, is_active=is_active)
                self.db.add(rule)
            else:
                previous = {"amount": str(rule.amount), "is_active": rule.is_active}
                rule.amount = amount
                rule.is_active = is_active
                rule.updated_at = utcnow()
            if description is not None:
                rule.description = TextSanitizer.sanitize(description, max_length=300)

            self.audit.record(
                actor.user_id,
                AuditAction.REWARD_RULE_UPDATED,
                "reward_rule",
                key,
                {"from": previous, "to": {"amount": str(amount), "is_active": is_active}},
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to save reward rule", extra_data={"key": key, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        logger.info("Reward rule saved", extra_data={"key": key, "amount": str(amount), "is_active": is_active})
        await change_notifier.notify("reward_rules", key, actor.user_id)
        return ActionResult.ok(rule)

    async def update_rule_amount(self, actor: Actor, rule_id: int, amount: Any) -> ActionResult[RewardRule]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        is_valid, error = AmountValidator.validate(amount, allow_zero=False)
        if not is_valid:
            return ActionResult.fail(ValidationError(error, field="amount"))
        amount = to_money(amount)

        return await self._update_rule(actor, rule_id, amount=amount)

    async def toggle_rule(self, actor: Actor, rule_id: int, is_active: bool) -> ActionResult[RewardRule]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._update_rule(actor, rule_id, is_active=is_active)

    async def _update_rule(self, actor: Actor, rule_id: int, **changes: Any) -> ActionResult[RewardRule]:
        try:
            rule = await self.db.get(RewardRule, rule_id)
            if rule is None:
                return ActionResult.fail(NotFound("RewardRule", rule_id))

            previous = {name: str(getattr(rule, name)) for name in changes}
            for name, value in changes.items():
                setattr(rule, name, value)
            rule.updated_at = utcnow()

            self.audit.record(
                actor.user_id,
                AuditAction.REWARD_RULE_UPDATED,
                "reward_rule",
                rule.key,
                {"from": previous, "to": {name: str(value) for name, value in changes.items()}},
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to update reward rule", extra_data={"rule_id": rule_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        logger.info("Reward rule updated", extra_data={"rule_id": rule_id, "changes": {k: str(v) for k, v in changes.items()}})
        await change_notifier.notify("reward_rules", rule_id, actor.user_id)
        return ActionResult.ok(rule)

    # Events

    async def recent_events(self, actor: Actor, limit: int = 50) -> ActionResult[list[RewardEvent]]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._events(None, limit)

    async def user_events(self, actor: Actor, limit: int = 10) -> ActionResult[list[RewardEvent]]:
        auth = require_role(actor, ALL_ROLES)
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._events(actor.user_id, limit)

    async def _events(self, user_id: Optional[int], limit: int) -> ActionResult[list[RewardEvent]]:
        query = select(RewardEvent).order_by(RewardEvent.created_at.desc(), RewardEvent.id.desc()).limit(limit)
        if user_id is not None:
            query = query.where(RewardEvent.user_id == user_id)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error("Failed to list reward events", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))

    async def rewards_this_month(self, actor: Actor) -> ActionResult[Decimal]:
        auth = require_role(actor, ALL_ROLES)
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            total = await self.db.scalar(
                select(func.coalesce(func.sum(RewardEvent.issued_amount), 0)).where(
                    RewardEvent.user_id == actor.user_id,
                    RewardEvent.created_at >= _month_start(utcnow()),
                )
            )
        except SQLAlchemyError as e:
            logger.error("Failed to sum monthly rewards", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(to_money(total))

    async def reward_stats(self, actor: Actor) -> ActionResult[RewardStats]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            total_rewarded = await self.db.scalar(
                select(func.coalesce(func.sum(RewardEvent.issued_amount), 0))
            )
            this_month = await self.db.scalar(
                select(func.coalesce(func.sum(RewardEvent.issued_amount), 0))
                .where(RewardEvent.created_at >= _month_start(utcnow()))
            )
            active_rules = await self.db.scalar(
                select(func.count(RewardRule.id)).where(RewardRule.is_active.is_(True))
            )
            total_events = await self.db.scalar(select(func.count(RewardEvent.id)))
        except SQLAlchemyError as e:
            logger.error("Failed to compute reward stats", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        return ActionResult.ok(RewardStats(
            total_rewarded=to_money(total_rewarded),
            rewards_this_month=to_money(this_month),
            active_rules=active_rules or 0,
            total_events=total_events or 0,
        ))
