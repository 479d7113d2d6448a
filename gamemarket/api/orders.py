from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.core.auth import get_current_user_id
from gamemarket.database import get_db
from gamemarket.schemas.order import (
    DirectOrderRequest,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
)
from gamemarket.services import order_service

router = APIRouter(prefix="/orders", tags=["orders"])

_ROLES = {"purchases": "buyer", "sales": "seller"}


@router.post("", response_model=OrderResponse, status_code=201)
async def create_direct_order(
    req: DirectOrderRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    order = await order_service.create_direct_order(
        db, req.listing_id, current_user, req.buyer_notes
    )
    return OrderResponse.model_validate(order)


@router.get("", response_model=OrderListResponse)
async def list_orders(
    type: str | None = Query(None, pattern="^(purchases|sales)$"),
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    orders, total = await order_service.list_orders(
        db, current_user, role=_ROLES.get(type), status=status, page=page, page_size=page_size
    )
    return OrderListResponse(
        total=total,
        page=page,
        page_size=page_size,
        orders=[OrderResponse.model_validate(o) for o in orders],
    )


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    order = await order_service.get_order(db, order_id, current_user)
    return OrderDetailResponse.model_validate(order)


@router.put("/{order_id}/status", response_model=OrderDetailResponse)
async def update_order_status(
    order_id: str,
    req: OrderStatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    order = await order_service.update_order_status(
        db,
        order_id,
        current_user,
        req.status,
        seller_notes=req.seller_notes,
        account_details=req.account_details.model_dump() if req.account_details else None,
    )
    return OrderDetailResponse.model_validate(order)


@router.put("/{order_id}/payment-received", response_model=OrderResponse)
async def mark_payment_received(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    order = await order_service.mark_payment_received(db, order_id, current_user)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    order = await order_service.cancel_order(db, order_id, current_user)
    return OrderResponse.model_validate(order)
