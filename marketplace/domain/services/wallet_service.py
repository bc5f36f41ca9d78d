"""
Wallet Service - QANZ balances over the append-only ledger

There is no balance column anywhere. A balance is SUM(amount) over the
user's ledger rows, computed on every read, so concurrent appends never
conflict and the figure cannot drift.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.exceptions import InternalError, NotFound, ValidationError
from marketplace.core.logging import get_logger
from marketplace.core.results import ActionResult
from marketplace.core.validation import AmountValidator, TextSanitizer, to_money
from marketplace.db.models.audit_log import AuditAction
from marketplace.db.models.user import User, UserRole
from marketplace.db.models.wallet_ledger import WalletLedgerEntry, LedgerEntryType
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.notification_service import change_notifier

logger = get_logger(__name__)

ALL_ROLES = (UserRole.BUYER, UserRole.SELLER, UserRole.DRIVER, UserRole.ADMIN)

ADJUSTMENT_LIMIT = Decimal("1000000")


@dataclass(frozen=True)
class WalletSummary:
    user_id: int
    balance: Decimal
    entries: list[WalletLedgerEntry]


@dataclass(frozen=True)
class WalletStats:
    total_in_circulation: Decimal
    total_topups: Decimal
    total_rewards: Decimal
    total_spent: Decimal
    total_adjustments: Decimal


class WalletService:
    """Ledger writes and derived balances"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def append(
        self,
        user_id: int,
        amount: Any,
        entry_type: LedgerEntryType,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Any = None,
        commit: bool = True,
    ) -> ActionResult[WalletLedgerEntry]:
        """
        The only ledger write path.

        Does not check for sufficient balance; callers issuing negative
        entries must do that themselves. With ``commit=False`` the entry is
        flushed into the caller's open transaction, and on failure the caller
        owns the rollback.
        """
        entry = WalletLedgerEntry(
            user_id=user_id,
            amount=to_money(amount),
            entry_type=entry_type,
            description=description,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
        )
        try:
            self.db.add(entry)
            await self.db.flush()
            if commit:
                await self.db.commit()
        except SQLAlchemyError as e:
            if commit:
                await self.db.rollback()
            logger.error(
                "Ledger append failed",
                extra_data={"user_id": user_id, "entry_type": entry_type.value, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError("Could not record wallet entry"))

        logger.info(
            "Ledger entry appended",
            extra_data={
                "user_id": user_id,
                "entry_id": entry.id,
                "entry_type": entry_type.value,
                "amount": str(entry.amount),
                "committed": commit,
            },
        )
        return ActionResult.ok(entry)

    async def balance(self, user_id: int) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(WalletLedgerEntry.amount), 0))
            .where(WalletLedgerEntry.user_id == user_id)
        )
        return to_money(result.scalar_one())

    async def history(self, user_id: int, limit: int = 50) -> list[WalletLedgerEntry]:
        """Newest first"""
        result = await self.db.execute(
            select(WalletLedgerEntry)
            .where(WalletLedgerEntry.user_id == user_id)
            .order_by(WalletLedgerEntry.created_at.desc(), WalletLedgerEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_wallet(self, actor: Actor, limit: int = 50) -> ActionResult[WalletSummary]:
        """The caller's own balance and recent entries"""
        auth = require_role(actor, ALL_ROLES)
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._summary(actor.user_id, limit)

    async def get_user_wallet(self, actor: Actor, user_id: int, limit: int = 50) -> ActionResult[WalletSummary]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        return await self._summary(user_id, limit)

    async def _summary(self, user_id: int, limit: int) -> ActionResult[WalletSummary]:
        try:
            balance = await self.balance(user_id)
            entries = await self.history(user_id, limit)
        except SQLAlchemyError as e:
            logger.error("Failed to read wallet", extra_data={"user_id": user_id, "error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(WalletSummary(user_id=user_id, balance=balance, entries=entries))

    async def admin_adjust(
        self,
        actor: Actor,
        user_id: int,
        amount: Any,
        description: Optional[str] = None,
    ) -> ActionResult[WalletSummary]:
        """Manual credit or debit by an admin, recorded as ``admin_adjustment``"""
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        # Signed: negative amounts debit
        is_valid, error = AmountValidator.validate(
            amount, min_value=-ADJUSTMENT_LIMIT, max_value=ADJUSTMENT_LIMIT, allow_zero=False
        )
        if not is_valid:
            return ActionResult.fail(ValidationError(error, field="amount"))
        amount = to_money(amount)

        description = TextSanitizer.sanitize(description or "", max_length=500) or "Admin adjustment"

        try:
            user = await self.db.get(User, user_id)
            if user is None:
                return ActionResult.fail(NotFound("User", user_id))

            appended = await self.append(
                user_id,
                amount,
                LedgerEntryType.ADMIN_ADJUSTMENT,
                description=description,
                reference_type="admin",
                reference_id=actor.user_id,
                commit=False,
            )
            if not appended.success:
                await self.db.rollback()
                return ActionResult.fail(appended.error)

            self.audit.record(
                actor.user_id,
                AuditAction.WALLET_ADJUSTED,
                "wallet",
                user_id,
                {"amount": str(amount), "ledger_entry_id": appended.value.id, "description": description},
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Admin wallet adjustment failed",
                extra_data={"user_id": user_id, "admin_id": actor.user_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Admin wallet adjustment",
            extra_data={"user_id": user_id, "admin_id": actor.user_id, "amount": str(amount)},
        )
        await change_notifier.notify("wallet", user_id, actor.user_id, amount=str(amount))
        return await self._summary(user_id, limit=10)

    async def wallet_stats(self, actor: Actor) -> ActionResult[WalletStats]:
        """Platform-wide totals per entry type"""
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        try:
            result = await self.db.execute(
                select(WalletLedgerEntry.entry_type, func.sum(WalletLedgerEntry.amount))
                .group_by(WalletLedgerEntry.entry_type)
            )
            totals = {entry_type: to_money(total or 0) for entry_type, total in result.all()}
        except SQLAlchemyError as e:
            logger.error("Failed to compute wallet stats", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        zero = Decimal("0.00")
        return ActionResult.ok(WalletStats(
            total_in_circulation=to_money(sum(totals.values(), zero)),
            total_topups=totals.get(LedgerEntryType.TOPUP, zero),
            total_rewards=totals.get(LedgerEntryType.REWARD, zero),
            total_spent=abs(totals.get(LedgerEntryType.SPEND, zero)),
            total_adjustments=totals.get(LedgerEntryType.ADMIN_ADJUSTMENT, zero),
        ))
