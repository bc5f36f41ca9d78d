"""
Top-up code API Routes (admin)
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
from marketplace.core.config import settings
from marketplace.db.database import get_db
from marketplace.db.models.topup_code import TopupCodeStatus
from marketplace.domain.services.topup_code_service import TopupCodeService

router = APIRouter()


class GenerateCodesRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    quantity: int = Field(ge=1, le=settings.TOPUP_CODE_MAX_BATCH)


class TopupCodeResponse(BaseModel):
    id: int
    code: str
    amount: Money
    status: TopupCodeStatus
    created_by: int | None
    redeemed_by: int | None
    created_at: datetime
    redeemed_at: datetime | None
    voided_at: datetime | None

    model_config = {"from_attributes": True}


class CodeStatsResponse(BaseModel):
    total_generated: int
    active: int
    redeemed: int
    voided: int
    outstanding_liability: Money
    total_redeemed: Money

    model_config = {"from_attributes": True}


@router.post(
    "",
    response_model=List[TopupCodeResponse],
    status_code=201,
    summary="Generate top-up codes",
    description="Creates a batch of active codes of the same amount.",
)
async def generate_codes(
    payload: GenerateCodesRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[TopupCodeResponse]:
    result = await TopupCodeService(db).generate(actor, payload.amount, payload.quantity)
    return [TopupCodeResponse.model_validate(c) for c in result.raise_for_error()]


@router.get("", response_model=List[TopupCodeResponse], summary="List top-up codes")
async def list_codes(
    status: TopupCodeStatus | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[TopupCodeResponse]:
    result = await TopupCodeService(db).list_codes(actor, status, limit)
    return [TopupCodeResponse.model_validate(c) for c in result.raise_for_error()]


@router.get("/stats", response_model=CodeStatsResponse, summary="Code counts and outstanding liability")
async def code_stats(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> CodeStatsResponse:
    result = await TopupCodeService(db).code_stats(actor)
    return CodeStatsResponse.model_validate(result.raise_for_error())


@router.post("/{code_id}/void", response_model=TopupCodeResponse, summary="Void an unredeemed code")
async def void_code(
    code_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> TopupCodeResponse:
    result = await TopupCodeService(db).void(actor, code_id)
    return TopupCodeResponse.model_validate(result.raise_for_error())
