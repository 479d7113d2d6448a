from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.core.auth import get_current_user_id
from gamemarket.database import get_db
from gamemarket.models.offer import Offer
from gamemarket.schemas.offer import (
    OfferCreateRequest,
    OfferListResponse,
    OfferRespondRequest,
    OfferRespondResponse,
    OfferResponse,
)
from gamemarket.services import offer_service

router = APIRouter(prefix="/offers", tags=["offers"])


@router.post("", response_model=OfferResponse, status_code=201)
async def create_offer(
    req: OfferCreateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    offer = await offer_service.create_offer(
        db, req.listing_id, current_user, req.amount, req.message
    )
    return _offer_to_response(offer)


@router.get("", response_model=OfferListResponse)
async def list_offers(
    type: str | None = Query(None, pattern="^(sent|received)$"),
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    offers, total = await offer_service.list_offers(
        db, current_user, kind=type, status=status, page=page, page_size=page_size
    )
    return OfferListResponse(
        total=total,
        page=page,
        page_size=page_size,
        offers=[_offer_to_response(o) for o in offers],
    )


@router.get("/{offer_id}", response_model=OfferResponse)
async def get_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    offer = await offer_service.get_offer(db, offer_id, current_user)
    return _offer_to_response(offer)


@router.put("/{offer_id}/respond", response_model=OfferRespondResponse)
async def respond_to_offer(
    offer_id: str,
    req: OfferRespondRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    offer, order = await offer_service.respond_to_offer(
        db, offer_id, current_user, req.status, req.response_message
    )
    return OfferRespondResponse(
        offer=_offer_to_response(offer),
        order_id=order.id if order else None,
    )


@router.delete("/{offer_id}", status_code=204)
async def cancel_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    await offer_service.cancel_offer(db, offer_id, current_user)
    return Response(status_code=204)


def _offer_to_response(offer: Offer) -> OfferResponse:
    resp = OfferResponse.model_validate(offer)
    resp.status = offer_service.effective_status(offer)
    return resp
