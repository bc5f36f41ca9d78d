"""
Top-up Code Service - QANZ code generation, redemption and voiding

Redemption is one transaction:
1. UPDATE topup_codes SET status='redeemed' ... WHERE code=? AND status='active'
   RETURNING id, amount
2. Append a ``topup`` ledger entry referencing the code
3. Commit

Step 1 is the only arbiter between concurrent redeemers: the loser's UPDATE
matches zero rows, and nothing is written for it.
"""
import re
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.config import settings
from marketplace.core.exceptions import (
    AlreadyRedeemed,
    CodeAlreadyUsed,
    CodeNotFound,
    CodeVoided,
    InternalError,
    NotFound,
    ValidationError,
)
from marketplace.core.logging import get_logger
from marketplace.core.rate_limit import RateLimitAction, check_rate_limit
from marketplace.core.results import ActionResult
from marketplace.core.validation import AmountValidator, to_money
from marketplace.db.database import utcnow
from marketplace.db.models.audit_log import AuditAction
from marketplace.db.models.topup_code import TopupCode, TopupCodeStatus
from marketplace.db.models.user import UserRole
from marketplace.db.models.wallet_ledger import LedgerEntryType
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.notification_service import change_notifier
from marketplace.domain.services.wallet_service import WalletService, ALL_ROLES

logger = get_logger(__name__)

# No 0/O or 1/I - codes are read aloud and typed by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 12
CODE_GROUP = 4

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def normalize_code(raw: str) -> str:
    """Canonical XXXX-XXXX-XXXX form of user input.

    >>> normalize_code(" ab12cd34 ef56 ")
    'AB12-CD34-EF56'
    """
    cleaned = _NON_ALNUM.sub("", raw or "").upper()
    return "-".join(cleaned[i:i + CODE_GROUP] for i in range(0, len(cleaned), CODE_GROUP))


def generate_code() -> str:
    raw = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return normalize_code(raw)


@dataclass(frozen=True)
class Redemption:
    code_id: int
    amount: Decimal
    balance: Decimal


@dataclass(frozen=True)
class CodeStats:
    total_generated: int
    active: int
    redeemed: int
    voided: int
    outstanding_liability: Decimal
    total_redeemed: Decimal


class TopupCodeService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.wallet = WalletService(db)
        self.audit = AuditService(db)

    async def redeem(self, actor: Actor, raw_code: str) -> ActionResult[Redemption]:
        """Redeem a code into the caller's wallet. Returns the new balance."""
        auth = require_role(actor, ALL_ROLES)
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        limited = await check_rate_limit(RateLimitAction.QANZ_REDEEM, actor.user_id)
        if limited:
            return ActionResult.fail(limited)

        code = normalize_code(raw_code)
        if not code:
            return ActionResult.fail(ValidationError("Code is required", field="code"))

        try:
            result = await self.db.execute(
                update(TopupCode)
                .where(TopupCode.code == code, TopupCode.status == TopupCodeStatus.ACTIVE)
                .values(
                    status=TopupCodeStatus.REDEEMED,
                    redeemed_by=actor.user_id,
                    redeemed_at=utcnow(),
                )
                .returning(TopupCode.id, TopupCode.amount)
                .execution_options(synchronize_session=False)
            )
            claimed = result.first()

            if claimed is None:
                status_result = await self.db.execute(
                    select(TopupCode.status).where(TopupCode.code == code)
                )
                status = status_result.scalar_one_or_none()
                await self.db.rollback()
                logger.info(
                    "Code redemption rejected",
                    extra_data={
                        "user_id": actor.user_id,
                        "status": status.value if status else None,
                    },
                )
                if status is None:
                    return ActionResult.fail(CodeNotFound(code))
                if status == TopupCodeStatus.VOIDED:
                    return ActionResult.fail(CodeVoided(code))
                return ActionResult.fail(CodeAlreadyUsed(code))

            code_id, amount = claimed
            appended = await self.wallet.append(
                actor.user_id,
                amount,
                LedgerEntryType.TOPUP,
                description=f"Top-up code {code}",
                reference_type="topup_code",
                reference_id=code_id,
                commit=False,
            )
            if not appended.success:
                await self.db.rollback()
                return ActionResult.fail(appended.error)

            await self.db.commit()
            balance = await self.wallet.balance(actor.user_id)

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Code redemption failed",
                extra_data={"user_id": actor.user_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Code redeemed",
            extra_data={"user_id": actor.user_id, "code_id": code_id, "amount": str(amount)},
        )
        await change_notifier.notify("wallet", actor.user_id, actor.user_id, code_id=code_id)
        await change_notifier.notify("topup_codes", code_id, actor.user_id, status=TopupCodeStatus.REDEEMED.value)
        return ActionResult.ok(Redemption(code_id=code_id, amount=to_money(amount), balance=balance))

    async def generate(self, actor: Actor, amount: Any, quantity: int) -> ActionResult[list[TopupCode]]:
        """
        Mint ``quantity`` active codes worth ``amount`` each.

        Each code commits on its own; a collision on the unique code column
        skips that code and the rest continue. A storage error stops the batch,
        but codes already committed are still audited and returned.
        """
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        limited = await check_rate_limit(RateLimitAction.ADMIN_ACTION, actor.user_id)
        if limited:
            return ActionResult.fail(limited)

        is_valid, error = AmountValidator.validate(amount, allow_zero=False)
        if not is_valid:
            return ActionResult.fail(ValidationError(error, field="amount"))
        amount = to_money(amount)
        if quantity < 1 or quantity > settings.TOPUP_CODE_MAX_BATCH:
            return ActionResult.fail(ValidationError(
                f"Quantity must be between 1 and {settings.TOPUP_CODE_MAX_BATCH}",
                field="quantity",
            ))

        created_ids: list[int] = []
        interrupted = False
        for _ in range(quantity):
            code = TopupCode(
                code=generate_code(),
                amount=amount,
                status=TopupCodeStatus.ACTIVE,
                created_by=actor.user_id,
            )
            self.db.add(code)
            try:
                await self.db.flush()
                code_id = code.id
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                logger.warning("Generated code collided - skipped", extra_data={"admin_id": actor.user_id})
                continue
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(
                    "Code generation interrupted",
                    extra_data={"admin_id": actor.user_id, "created": len(created_ids), "error": str(e)},
                    exc_info=True,
                )
                interrupted = True
                break
            created_ids.append(code_id)

        if interrupted and not created_ids:
            return ActionResult.fail(InternalError())

        try:
            self.audit.record(
                actor.user_id,
                AuditAction.CODES_GENERATED,
                "topup_code",
                None,
                {"amount": str(amount), "requested": quantity, "created": len(created_ids),
                 "code_ids": created_ids, "interrupted": interrupted},
            )
            await self.db.commit()

            result = await self.db.execute(
                select(TopupCode)
                .where(TopupCode.id.in_(created_ids))
                .order_by(TopupCode.id)
                .execution_options(populate_existing=True)
            )
            created = list(result.scalars().all())
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Code generation failed",
                extra_data={"admin_id": actor.user_id, "created": len(created_ids), "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Top-up codes generated",
            extra_data={"admin_id": actor.user_id, "amount": str(amount), "count": len(created)},
        )
        await change_notifier.notify("topup_codes", None, actor.user_id, created=len(created))
        return ActionResult.ok(created)

    async def void(self, actor: Actor, code_id: int) -> ActionResult[TopupCode]:
        """active -> voided. A redeemed or already voided code fails with AlreadyRedeemed."""
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        try:
            result = await self.db.execute(
                update(TopupCode)
                .where(TopupCode.id == code_id, TopupCode.status == TopupCodeStatus.ACTIVE)
                .values(status=TopupCodeStatus.VOIDED, voided_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                status_result = await self.db.execute(
                    select(TopupCode.status).where(TopupCode.id == code_id)
                )
                status = status_result.scalar_one_or_none()
                await self.db.rollback()
                if status is None:
                    return ActionResult.fail(NotFound("TopupCode", code_id))
                return ActionResult.fail(AlreadyRedeemed(code_id, status.value))

            self.audit.record(actor.user_id, AuditAction.CODE_VOIDED, "topup_code", code_id)
            await self.db.commit()
            code = await self._load(code_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Code void failed",
                extra_data={"code_id": code_id, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info("Top-up code voided", extra_data={"code_id": code_id, "admin_id": actor.user_id})
        await change_notifier.notify("topup_codes", code_id, actor.user_id, status=TopupCodeStatus.VOIDED.value)
        return ActionResult.ok(code)

    async def _load(self, code_id: int) -> Optional[TopupCode]:
        result = await self.db.execute(
            select(TopupCode)
            .where(TopupCode.id == code_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_codes(
        self,
        actor: Actor,
        status: Optional[TopupCodeStatus] = None,
        limit: int = 200,
    ) -> ActionResult[list[TopupCode]]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        query = select(TopupCode).order_by(TopupCode.created_at.desc(), TopupCode.id.desc()).limit(limit)
        if status is not None:
            query = query.where(TopupCode.status == status)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error("Failed to list codes", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))

    async def outstanding_liability(self) -> Decimal:
        """Value of every code still redeemable"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(TopupCode.amount), 0))
            .where(TopupCode.status == TopupCodeStatus.ACTIVE)
        )
        return to_money(result.scalar_one())

    async def code_stats(self, actor: Actor) -> ActionResult[CodeStats]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        try:
            result = await self.db.execute(
                select(TopupCode.status, func.count(TopupCode.id), func.sum(TopupCode.amount))
                .group_by(TopupCode.status)
            )
            rows = {status: (count, to_money(total or 0)) for status, count, total in result.all()}
        except SQLAlchemyError as e:
            logger.error("Failed to compute code stats", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

        zero = (0, Decimal("0.00"))
        active = rows.get(TopupCodeStatus.ACTIVE, zero)
        redeemed = rows.get(TopupCodeStatus.REDEEMED, zero)
        voided = rows.get(TopupCodeStatus.VOIDED, zero)
        return ActionResult.ok(CodeStats(
            total_generated=active[0] + redeemed[0] + voided[0],
            active=active[0],
            redeemed=redeemed[0],
            voided=voided[0],
            outstanding_liability=active[1],
            total_redeemed=redeemed[1],
        ))
