"""
Reward API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.dependencies.auth import get_current_actor
from marketplace.api.schemas import Money
from marketplace.core.auth import Actor
from marketplace.db.database import get_db
from marketplace.domain.services.reward_service import RewardService

router = APIRouter()


class RewardRuleResponse(BaseModel):
    id: int
    key: str
    amount: Money
    is_active: bool
    description: str | None

    model_config = {"from_attributes": True}


class RewardEventResponse(BaseModel):
    id: int
    rule_key: str
    user_id: int
    issued_amount: Money
    reference_type: str | None
    reference_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


class MyRewardsResponse(BaseModel):
    this_month: Money
    events: List[RewardEventResponse]


class UpsertRuleRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    is_active: bool = True
    description: str | None = Field(default=None, max_length=255)


class UpdateRuleRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    is_active: bool | None = None


class RewardStatsResponse(BaseModel):
    total_rewarded: Money
    rewards_this_month: Money
    active_rules: int
    total_events: int

    model_config = {"from_attributes": True}


@router.get("/me", response_model=MyRewardsResponse, summary="The caller's rewards")
async def my_rewards(
    limit: int = Query(default=10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> MyRewardsResponse:
    service = RewardService(db)
    this_month = (await service.rewards_this_month(actor)).raise_for_error()
    events = (await service.user_events(actor, limit)).raise_for_error()
    return MyRewardsResponse(
        this_month=this_month,
        events=[RewardEventResponse.model_validate(e) for e in events],
    )


@router.get("/rules", response_model=List[RewardRuleResponse], summary="List reward rules")
async def list_rules(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[RewardRuleResponse]:
    result = await RewardService(db).list_rules(actor)
    return [RewardRuleResponse.model_validate(r) for r in result.raise_for_error()]


@router.put(
    "/rules/{key}",
    response_model=RewardRuleResponse,
    summary="Create or replace a reward rule",
    description="Rules are keyed by trigger, e.g. first_order or order_completed.",
)
async def upsert_rule(
    key: str,
    payload: UpsertRuleRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> RewardRuleResponse:
    result = await RewardService(db).upsert_rule(actor, key, payload.amount, payload.is_active, payload.description)
    return RewardRuleResponse.model_validate(result.raise_for_error())


@router.patch("/rules/{rule_id}", response_model=RewardRuleResponse, summary="Change a rule's amount or state")
async def update_rule(
    rule_id: int,
    payload: UpdateRuleRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> RewardRuleResponse:
    if payload.amount is None and payload.is_active is None:
        raise HTTPException(status_code=422, detail="Nothing to update")

    service = RewardService(db)
    result = None
    if payload.amount is not None:
        result = await service.update_rule_amount(actor, rule_id, payload.amount)
        result.raise_for_error()
    if payload.is_active is not None:
        result = await service.toggle_rule(actor, rule_id, payload.is_active)
    return RewardRuleResponse.model_validate(result.raise_for_error())


@router.get("/events", response_model=List[RewardEventResponse], summary="Recent reward events")
async def recent_events(
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[RewardEventResponse]:
    result = await RewardService(db).recent_events(actor, limit)
    return [RewardEventResponse.model_validate(e) for e in result.raise_for_error()]


@router.get("/stats", response_model=RewardStatsResponse, summary="Reward totals")
async def reward_stats(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> RewardStatsResponse:
    result = await RewardService(db).reward_stats(actor)
    return RewardStatsResponse.model_validate(result.raise_for_error())
