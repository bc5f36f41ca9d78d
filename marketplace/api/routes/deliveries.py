"""
Delivery API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.dependencies.auth import get_current_actor
from marketplace.api.schemas import Money, WarningResponse, warnings_of
from marketplace.core.auth import Actor
from marketplace.db.database import get_db
from marketplace.db.models.delivery import DeliveryStatus
from marketplace.domain.services.delivery_service import DeliveryService

router = APIRouter()


class DeliveryResponse(BaseModel):
    """Response schema for delivery data"""
    id: int
    order_id: int
    driver_id: int | None
    status: DeliveryStatus
    delivery_address: str
    delivery_phone: str
    cash_collected: Money | None
    created_at: datetime
    assigned_at: datetime | None
    picked_up_at: datetime | None
    delivered_at: datetime | None

    model_config = {"from_attributes": True}


class DeliveryStatusRequest(BaseModel):
    status: DeliveryStatus
    cash_collected: Decimal | None = Field(default=None, ge=0)


class DeliveryTransitionResponse(BaseModel):
    delivery: DeliveryResponse
    warnings: List[WarningResponse] = []


@router.get(
    "/available",
    response_model=List[DeliveryResponse],
    summary="Open deliveries",
    description="Deliveries waiting for a driver, oldest first.",
)
async def list_available(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[DeliveryResponse]:
    result = await DeliveryService(db).list_available(actor)
    return [DeliveryResponse.model_validate(d) for d in result.raise_for_error()]


@router.get("/mine", response_model=List[DeliveryResponse], summary="The caller's deliveries")
async def list_mine(
    status: DeliveryStatus | None = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[DeliveryResponse]:
    result = await DeliveryService(db).list_driver_deliveries(actor, status)
    return [DeliveryResponse.model_validate(d) for d in result.raise_for_error()]


@router.get("/{delivery_id}", response_model=DeliveryResponse, summary="Get a delivery")
async def get_delivery(
    delivery_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    result = await DeliveryService(db).get_delivery(actor, delivery_id)
    return DeliveryResponse.model_validate(result.raise_for_error())


@router.post(
    "/{delivery_id}/claim",
    response_model=DeliveryResponse,
    summary="Claim a delivery",
    description="First driver wins; everyone else gets a 409 with ERR_3001.",
)
async def claim_delivery(
    delivery_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    result = await DeliveryService(db).claim(actor, delivery_id)
    return DeliveryResponse.model_validate(result.raise_for_error())


@router.post(
    "/{delivery_id}/status",
    response_model=DeliveryTransitionResponse,
    summary="Advance a delivery",
    description="picked_up or delivered. Delivering settles the order and opens the cash collection.",
)
async def advance_delivery(
    delivery_id: int,
    payload: DeliveryStatusRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> DeliveryTransitionResponse:
    result = await DeliveryService(db).advance(actor, delivery_id, payload.status, payload.cash_collected)
    delivery = result.raise_for_error()
    return DeliveryTransitionResponse(
        delivery=DeliveryResponse.model_validate(delivery),
        warnings=warnings_of(result),
    )
