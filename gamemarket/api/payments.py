"""Payment link, status and gateway callback endpoints."""

import json
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.config import settings
from gamemarket.core.auth import get_current_user_id
from gamemarket.core.exceptions import InvalidArgumentError
from gamemarket.database import get_db
from gamemarket.schemas.payment import (
    PaymentLinkRequest,
    PaymentLinkResponse,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatusResponse,
)
from gamemarket.services import payment_service

router = APIRouter(prefix="/payments", tags=["payments"])

_RESULT_PAGES = {"completed": "success", "failed": "failed", "cancelled": "failed"}


@router.post("/create-link", response_model=PaymentLinkResponse, status_code=201)
async def create_payment_link(
    req: PaymentLinkRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    payment, created = await payment_service.create_payment_session(
        db,
        req.order_id,
        current_user,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )
    body = PaymentLinkResponse(
        payment_id=payment.id,
        payment_link=payment.gateway_payment_link,
        amount=payment.amount,
        expires_at=payment.expires_at,
        message="Payment link created successfully" if created else "Payment link already exists",
    )
    if created:
        return body
    return JSONResponse(status_code=200, content=body.model_dump(mode="json"))


@router.post("/callback", include_in_schema=False)
async def payment_callback(
    request: Request,
    payment_id: str | None = Query(None, alias="paymentId"),
    db: AsyncSession = Depends(get_db),
):
    """Paytm posts the transaction result here and the buyer's browser follows the redirect."""
    if not payment_id:
        raise InvalidArgumentError("paymentId is required")
    payload = await _read_callback_payload(request)
    payment = await payment_service.handle_callback(db, payment_id, payload)
    page = _RESULT_PAGES.get(payment.status, "pending")
    return RedirectResponse(
        url=f"{settings.client_url}/payment/{page}?paymentId={payment.id}",
        status_code=303,
    )


@router.get("", response_model=PaymentListResponse)
async def list_payments(
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    payments, total = await payment_service.list_payments(
        db, current_user, status=status, page=page, page_size=page_size
    )
    return PaymentListResponse(
        total=total,
        page=page,
        page_size=page_size,
        payments=[PaymentResponse.model_validate(p) for p in payments],
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    payment = await payment_service.get_payment(db, payment_id, current_user)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse)
async def check_payment_status(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    payment = await payment_service.check_status(db, payment_id, current_user)
    return PaymentStatusResponse(
        payment_id=payment.id,
        status=payment.status,
        amount=payment.amount,
        completed_at=payment.completed_at,
        failure_reason=payment.failure_reason,
    )


async def _read_callback_payload(request: Request) -> dict:
    raw = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = json.loads(raw or b"{}")
        except ValueError as exc:
            raise InvalidArgumentError("Malformed callback body") from exc
        if not isinstance(payload, dict):
            raise InvalidArgumentError("Malformed callback body")
        return {str(k): "" if v is None else str(v) for k, v in payload.items()}
    return dict(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))
