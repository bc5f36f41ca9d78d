"""
Order API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.dependencies.auth import get_current_actor
from marketplace.api.routes.deliveries import DeliveryResponse
from marketplace.api.schemas import Money, WarningResponse, warnings_of
from marketplace.core.auth import Actor
from marketplace.core.validation import AddressValidator, PhoneNumberValidator
from marketplace.db.database import get_db
from marketplace.db.models.order import OrderStatus
from marketplace.db.models.user import UserRole
from marketplace.domain.services.delivery_service import DeliveryService
from marketplace.domain.services.order_service import DeliveryInfo, OrderLine, OrderService

router = APIRouter()


class OrderItemRequest(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    """Checkout payload: items from one seller plus where to bring them"""
    items: List[OrderItemRequest] = Field(min_length=1)
    delivery_address: str
    delivery_phone: str
    notes: str | None = None

    @field_validator("delivery_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        is_valid, error = AddressValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return v

    @field_validator("delivery_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not PhoneNumberValidator.validate(v):
            raise ValueError("Invalid phone number format")
        return v


class StatusChangeRequest(BaseModel):
    status: OrderStatus


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class OrderItemResponse(BaseModel):
    product_id: int
    product_name: str
    unit_price: Money
    quantity: int
    line_total: Money

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: int
    buyer_id: int
    seller_id: int
    status: OrderStatus
    total_amount: Money
    delivery_address: str
    delivery_phone: str
    notes: str | None
    cancel_reason: str | None
    created_at: datetime
    items: List[OrderItemResponse]

    model_config = {"from_attributes": True}


class OrderTransitionResponse(BaseModel):
    order: OrderResponse
    warnings: List[WarningResponse] = []


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Place an order",
    description="Checkout for a buyer. All items must belong to one seller; stock is reserved immediately.",
)
async def create_order(
    payload: CreateOrderRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    result = await OrderService(db).create_order(
        actor,
        [OrderLine(product_id=i.product_id, quantity=i.quantity) for i in payload.items],
        DeliveryInfo(address=payload.delivery_address, phone=payload.delivery_phone, notes=payload.notes),
    )
    return OrderResponse.model_validate(result.raise_for_error())


@router.get(
    "",
    response_model=List[OrderResponse],
    summary="List orders",
    description="Buyers see their purchases, sellers their incoming orders, admins everything.",
)
async def list_orders(
    status: OrderStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> List[OrderResponse]:
    service = OrderService(db)
    if actor.role == UserRole.SELLER:
        result = await service.list_seller_orders(actor, status)
    elif actor.role == UserRole.ADMIN:
        result = await service.list_orders(actor, status, limit)
    else:
        result = await service.list_buyer_orders(actor)
    return [OrderResponse.model_validate(o) for o in result.raise_for_error()]


@router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    result = await OrderService(db).get_order(actor, order_id)
    return OrderResponse.model_validate(result.raise_for_error())


@router.post(
    "/{order_id}/status",
    response_model=OrderTransitionResponse,
    summary="Advance an order",
    description="Seller moves the order to accepted, preparing or ready_for_pickup. "
                "Reaching ready_for_pickup opens a delivery for drivers.",
)
async def advance_order(
    order_id: int,
    payload: StatusChangeRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderTransitionResponse:
    result = await OrderService(db).advance_status(actor, order_id, payload.status)
    order = result.raise_for_error()
    return OrderTransitionResponse(order=OrderResponse.model_validate(order), warnings=warnings_of(result))


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel a placed order")
async def cancel_order(
    order_id: int,
    payload: CancelRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    reason = payload.reason if payload else None
    result = await OrderService(db).cancel_order(actor, order_id, reason)
    return OrderResponse.model_validate(result.raise_for_error())


@router.get("/{order_id}/delivery", response_model=DeliveryResponse, summary="Delivery of an order")
async def get_order_delivery(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResponse:
    result = await DeliveryService(db).get_for_order(actor, order_id)
    return DeliveryResponse.model_validate(result.raise_for_error())
