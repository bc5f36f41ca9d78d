"""
Wallet API Routes

QANZ balance, history and code redemption for the caller; manual
adjustments and circulation totals for admins.
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
from marketplace.db.models.wallet_ledger import LedgerEntryType
from marketplace.domain.services.topup_code_service import TopupCodeService
from marketplace.domain.services.wallet_service import WalletService

router = APIRouter()


class LedgerEntryResponse(BaseModel):
    id: int
    entry_type: LedgerEntryType
    amount: Money
    description: str | None
    reference_type: str | None
    reference_id: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class WalletResponse(BaseModel):
    user_id: int
    balance: Money
    entries: List[LedgerEntryResponse]

    model_config = {"from_attributes": True}


class RedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class RedeemResponse(BaseModel):
    code_id: int
    amount: Money
    balance: Money

    model_config = {"from_attributes": True}


class AdjustRequest(BaseModel):
    amount: Decimal
    description: str | None = Field(default=None, max_length=500)


class WalletStatsResponse(BaseModel):
    total_in_circulation: Money
    total_topups: Money
    total_rewards: Money
    total_spent: Money
    total_adjustments: Money

    model_config = {"from_attributes": True}


@router.get(
    "",
    response_model=WalletResponse,
    summary="Get the caller's wallet",
    description="Balance and most recent ledger entries, newest first.",
)
async def get_wallet(
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    result = await WalletService(db).get_wallet(actor, limit)
    return WalletResponse.model_validate(result.raise_for_error())


@router.post(
    "/redeem",
    response_model=RedeemResponse,
    summary="Redeem a top-up code",
    description="Dashes, spaces and case are ignored. Each code can be redeemed once.",
)
async def redeem_code(
    payload: RedeemRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> RedeemResponse:
    result = await TopupCodeService(db).redeem(actor, payload.code)
    return RedeemResponse.model_validate(result.raise_for_error())


@router.get("/stats", response_model=WalletStatsResponse, summary="QANZ circulation totals")
async def wallet_stats(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> WalletStatsResponse:
    result = await WalletService(db).wallet_stats(actor)
    return WalletStatsResponse.model_validate(result.raise_for_error())


@router.get("/users/{user_id}", response_model=WalletResponse, summary="Get a user's wallet")
async def get_user_wallet(
    user_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    result = await WalletService(db).get_user_wallet(actor, user_id, limit)
    return WalletResponse.model_validate(result.raise_for_error())


@router.post("/users/{user_id}/adjust", response_model=WalletResponse, summary="Adjust a user's balance")
async def adjust_wallet(
    user_id: int,
    payload: AdjustRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    result = await WalletService(db).admin_adjust(actor, user_id, payload.amount, payload.description)
    return WalletResponse.model_validate(result.raise_for_error())
