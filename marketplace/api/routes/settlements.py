"""
Settlement API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.dependencies.auth import get_current_actor
from marketplace.api.schemas import Money
from marketplace.core.auth import Actor
from marketplace.db.database import get_db
from marketplace.db.models.settlement import SettlementStatus
from marketplace.db.models.user import UserRole
from marketplace.domain.services.settlement_service import SettlementService

router = APIRouter()


class SettlementResponse(BaseModel):
    id: int
    order_id: int
    delivery_id: int
    seller_id: int
    driver_id: int | None
    order_amount: Money
    platform_fee_rate: Decimal
    platform_fee: Money
    driver_fee: Money
    seller_amount: Money
    status: SettlementStatus
    created_at: datetime
    paid_at: datetime | None

    model_config = {"from_attributes": True}


class SettlementStatsResponse(BaseModel):
    total_revenue: Money
    total_platform_fees: Money
    total_driver_fees: Money
    total_seller_earnings: Money
    pending_count: int
    paid_count: int

    model_config = {"from_attributes": True}


class EarningsResponse(BaseModel):
    total_earned: Money
    pending_amount: Money
    paid_amount: Money
    settlement_count: int

    model_config = {"from_attributes": True}


@router.get(
    "",
    response_model=List[SettlementResponse],
    summary="List settlements",
    description="Sellers and drivers see the settlements they are party to; admins can filter all by status.",
)
async def list_settlements(
    status: SettlementStatus | None = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[SettlementResponse]:
    service = SettlementService(db)
    if actor.role == UserRole.SELLER:
        result = await service.list_seller_settlements(actor)
    elif actor.role == UserRole.DRIVER:
        result = await service.list_driver_settlements(actor)
    else:
        result = await service.list_settlements(actor, status)
    return [SettlementResponse.model_validate(s) for s in result.raise_for_error()]


@router.get("/stats", response_model=SettlementStatsResponse, summary="Platform settlement totals")
async def settlement_stats(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> SettlementStatsResponse:
    result = await SettlementService(db).settlement_stats(actor)
    return SettlementStatsResponse.model_validate(result.raise_for_error())


@router.get("/earnings", response_model=EarningsResponse, summary="Seller earnings summary")
async def seller_earnings(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> EarningsResponse:
    result = await SettlementService(db).seller_earnings_summary(actor)
    return EarningsResponse.model_validate(result.raise_for_error())


@router.get("/order/{order_id}", response_model=SettlementResponse, summary="Settlement of an order")
async def get_for_order(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> SettlementResponse:
    result = await SettlementService(db).get_for_order(actor, order_id)
    return SettlementResponse.model_validate(result.raise_for_error())


@router.post(
    "/{settlement_id}/pay",
    response_model=SettlementResponse,
    summary="Mark a settlement paid",
    description="Admin only. A second attempt returns 409 with ERR_3004.",
)
async def mark_paid(
    settlement_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> SettlementResponse:
    result = await SettlementService(db).mark_paid(actor, settlement_id)
    return SettlementResponse.model_validate(result.raise_for_error())
