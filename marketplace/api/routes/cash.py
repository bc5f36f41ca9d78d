"""
Cash collection API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.dependencies.auth import get_current_actor
from marketplace.api.schemas import Money
from marketplace.core.auth import Actor
from marketplace.db.database import get_db
from marketplace.db.models.cash_collection import CashCollectionStatus
from marketplace.db.models.user import UserRole
from marketplace.domain.services.cash_service import CashService

router = APIRouter()


class CashCollectionResponse(BaseModel):
    id: int
    delivery_id: int
    order_id: int
    driver_id: int | None
    amount_expected: Money
    amount_collected: Money | None
    discrepancy: Money | None
    status: CashCollectionStatus
    created_at: datetime
    collected_at: datetime | None
    confirmed_at: datetime | None

    model_config = {"from_attributes": True}


class CashCollectionListResponse(BaseModel):
    collections: List[CashCollectionResponse]
    total_discrepancy: Money


class ReportCollectedRequest(BaseModel):
    amount: Decimal = Field(ge=0)


def _listing(collections) -> CashCollectionListResponse:
    return CashCollectionListResponse(
        collections=[CashCollectionResponse.model_validate(c) for c in collections],
        total_discrepancy=CashService.total_discrepancy(collections),
    )


@router.get(
    "",
    response_model=CashCollectionListResponse,
    summary="List cash collections",
    description="Drivers see their own collections; admins see all, optionally filtered by status.",
)
async def list_collections(
    status: CashCollectionStatus | None = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> CashCollectionListResponse:
    service = CashService(db)
    if actor.role == UserRole.DRIVER:
        result = await service.list_driver_collections(actor, status)
    else:
        result = await service.list_collections(actor, status)
    return _listing(result.raise_for_error())


@router.get("/open", response_model=CashCollectionListResponse, summary="Unconfirmed collections, oldest first")
async def list_open(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> CashCollectionListResponse:
    result = await CashService(db).list_open_collections(actor)
    return _listing(result.raise_for_error())


@router.post("/{collection_id}/collected", response_model=CashCollectionResponse, summary="Report cash collected")
async def report_collected(
    collection_id: int,
    payload: ReportCollectedRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> CashCollectionResponse:
    result = await CashService(db).report_collected(actor, collection_id, payload.amount)
    return CashCollectionResponse.model_validate(result.raise_for_error())


@router.post("/{collection_id}/confirm", response_model=CashCollectionResponse, summary="Confirm a collection")
async def confirm_collection(
    collection_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> CashCollectionResponse:
    result = await CashService(db).confirm(actor, collection_id)
    return CashCollectionResponse.model_validate(result.raise_for_error())
