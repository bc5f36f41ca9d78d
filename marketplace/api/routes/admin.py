"""
Admin API Routes - platform settings and the audit trail
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.dependencies.auth import get_current_actor
from marketplace.api.schemas import Money
from marketplace.core.auth import Actor
from marketplace.db.database import get_db
from marketplace.db.models.audit_log import AuditAction
from marketplace.domain.services.audit_service import AuditService
from marketplace.domain.services.platform_settings_service import PlatformSettingsService

router = APIRouter()


class PlatformSettingsResponse(BaseModel):
    platform_fee_rate: Decimal
    default_delivery_fee: Money

    model_config = {"from_attributes": True}


class FeeRateRequest(BaseModel):
    rate: Decimal = Field(ge=0, le=1)


class DeliveryFeeRequest(BaseModel):
    fee: Decimal = Field(ge=0)


class AuditLogResponse(BaseModel):
    id: int
    actor_id: int | None
    action: AuditAction
    entity_type: str
    entity_id: str | None
    details: dict[str, Any] | None
    created_at: datetime

    model_config = {"from_attributes": True}


@router.get("/settings", response_model=PlatformSettingsResponse, summary="Current fee policy")
async def get_settings(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> PlatformSettingsResponse:
    result = await PlatformSettingsService(db).get_platform_settings(actor)
    return PlatformSettingsResponse.model_validate(result.raise_for_error())


@router.put(
    "/settings/platform-fee-rate",
    response_model=PlatformSettingsResponse,
    summary="Set the platform fee rate",
    description="Fraction of the order amount, 0 to 1. Existing settlements keep the rate they were created with.",
)
async def set_platform_fee_rate(
    payload: FeeRateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> PlatformSettingsResponse:
    result = await PlatformSettingsService(db).update_platform_fee_rate(actor, payload.rate)
    return PlatformSettingsResponse.model_validate(result.raise_for_error())


@router.put("/settings/delivery-fee", response_model=PlatformSettingsResponse, summary="Set the default delivery fee")
async def set_delivery_fee(
    payload: DeliveryFeeRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> PlatformSettingsResponse:
    result = await PlatformSettingsService(db).update_default_delivery_fee(actor, payload.fee)
    return PlatformSettingsResponse.model_validate(result.raise_for_error())


@router.get("/audit-logs", response_model=List[AuditLogResponse], summary="Recent admin actions")
async def list_audit_logs(
    action: AuditAction | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[AuditLogResponse]:
    result = await AuditService(db).list_audit_logs(actor, limit, action)
    return [AuditLogResponse.model_validate(a) for a in result.raise_for_error()]
