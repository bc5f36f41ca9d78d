"""
Platform Settings Service - fee policy persisted as key/value rows

Rows are seeded lazily from config: a missing key reads as the configured
default until an admin writes it.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.config import settings
from marketplace.core.exceptions import InternalError, ValidationError
from marketplace.core.logging import get_logger
from marketplace.core.results import ActionResult
from marketplace.core.validation import AmountValidator, to_money
from marketplace.db.database import utcnow
from marketplace.db.models.audit_log import AuditAction
from marketplace.db.models.platform_setting import PlatformSetting
from marketplace.db.models.user import UserRole
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.notification_service import change_notifier

logger = get_logger(__name__)

PLATFORM_FEE_RATE_KEY = "platform_fee_rate"
# Matches settlements.platform_fee_rate, Numeric(5, 4)
RATE_QUANT = Decimal("0.0001")
DEFAULT_DELIVERY_FEE_KEY = "default_delivery_fee"


@dataclass(frozen=True)
class FeePolicy:
    platform_fee_rate: Decimal
    default_delivery_fee: Decimal


def _parse_decimal(value) -> Decimal | None:
    if isinstance(value, float):
        value = str(value)
    try:
        parsed = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    return parsed if parsed.is_finite() else None


class PlatformSettingsService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def _get_decimal(self, key: str, default: Decimal) -> Decimal:
        result = await self.db.execute(
            select(PlatformSetting.value).where(PlatformSetting.key == key)
        )
        raw = result.scalar_one_or_none()
        if raw is None:
            return default
        try:
            return Decimal(raw)
        except InvalidOperation:
            logger.warning(
                "Unparseable platform setting - using default",
                extra_data={"key": key, "value": raw, "default": str(default)},
            )
            return default

    async def get_fee_policy(self) -> FeePolicy:
        """Current policy, used when a settlement is computed"""
        return FeePolicy(
            platform_fee_rate=(
                await self._get_decimal(PLATFORM_FEE_RATE_KEY, settings.PLATFORM_FEE_RATE)
            ).quantize(RATE_QUANT),
            default_delivery_fee=await self._get_decimal(DEFAULT_DELIVERY_FEE_KEY, settings.DEFAULT_DELIVERY_FEE),
        )

    async def get_platform_settings(self, actor: Actor) -> ActionResult[FeePolicy]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)
        try:
            return ActionResult.ok(await self.get_fee_policy())
        except SQLAlchemyError as e:
            logger.error("Failed to read platform settings", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())

    async def update_platform_fee_rate(self, actor: Actor, rate: Decimal) -> ActionResult[FeePolicy]:
        """Rate is a fraction in [0, 1]; affects future settlements only"""
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        rate = _parse_decimal(rate)
        if rate is None or rate < 0 or rate > 1:
            return ActionResult.fail(ValidationError("Platform fee rate must be between 0 and 1", field="rate"))
        if rate != rate.quantize(RATE_QUANT):
            return ActionResult.fail(ValidationError(
                "Platform fee rate cannot have more than 4 decimal places", field="rate"
            ))

        return await self._set(actor, PLATFORM_FEE_RATE_KEY, rate.quantize(RATE_QUANT))

    async def update_default_delivery_fee(self, actor: Actor, fee: Decimal) -> ActionResult[FeePolicy]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        is_valid, error = AmountValidator.validate(fee)
        if not is_valid:
            return ActionResult.fail(ValidationError(error, field="fee"))

        return await self._set(actor, DEFAULT_DELIVERY_FEE_KEY, to_money(fee))

    async def _set(self, actor: Actor, key: str, value: Decimal) -> ActionResult[FeePolicy]:
        try:
            result = await self.db.execute(
                select(PlatformSetting).where(PlatformSetting.key == key)
            )
            row = result.scalar_one_or_none()
            previous = row.value if row else None
            if row is None:
                row = PlatformSetting(key=key, value=str(value), updated_by=actor.user_id)
                self.db.add(row)
            else:
                row.value = str(value)
                row.updated_by = actor.user_id
                row.updated_at = utcnow()

            self.audit.record(
                actor.user_id,
                AuditAction.PLATFORM_SETTING_UPDATED,
                "platform_setting",
                key,
                {"from": previous, "to": str(value)},
            )
            await self.db.commit()
            policy = await self.get_fee_policy()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to update platform setting",
                extra_data={"key": key, "error": str(e)},
                exc_info=True,
            )
            return ActionResult.fail(InternalError())

        logger.info(
            "Platform setting updated",
            extra_data={"key": key, "from": previous, "to": str(value), "admin_id": actor.user_id},
        )
        await change_notifier.notify("platform_settings", key, actor.user_id, value=str(value))
        return ActionResult.ok(policy)
