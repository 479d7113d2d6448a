"""Payment sessions and their reconciliation with the gateway.

A Payment is opened for an accepted order, handed to the gateway for a
hosted-checkout link, and settled by either a signed callback or a status
poll. Both settlement paths go through :func:`reconcile`, which is the only
place a payment becomes ``completed`` or an order becomes ``paid``.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.config import settings
from gamemarket.core.exceptions import (
    CallbackValidationError,
    ConflictError,
    ForbiddenError,
    OrderNotFoundError,
    PaymentGatewayError,
    PaymentNotFoundError,
)
from gamemarket.models.order import Order
from gamemarket.models.payment import LIVE_PAYMENT_STATES, OPEN_PAYMENT_STATES, Payment
from gamemarket.models.user import User
from gamemarket.services import listing_service, paytm_service
from gamemarket.services.notification_service import (
    NotificationType,
    PaymentNotice,
    format_inr,
    notify,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _merged_response(payment: Payment, key: str, payload) -> str:
    data = payment.gateway_response
    data[key] = payload
    return json.dumps(data, default=str)


async def _get_order(db: AsyncSession, order_id: str) -> Order:
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if not order:
        raise OrderNotFoundError(order_id)
    return order


async def _load_payment(db: AsyncSession, payment_id: str) -> Payment:
    result = await db.execute(
        select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if not payment:
        raise PaymentNotFoundError(payment_id)
    return payment


async def _live_payment(db: AsyncSession, order_id: str) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(
            Payment.order_id == order_id,
            Payment.status.in_(LIVE_PAYMENT_STATES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _close_open_payment(
    db: AsyncSession, payment: Payment, status: str, reason: str, now: datetime,
    response_key: str | None = None, response=None,
) -> bool:
    """Move an open payment to ``failed`` or ``cancelled``. Commits. Returns whether it moved."""
    values = {"status": status, "failure_reason": reason, "updated_at": now}
    if status == "failed":
        values["failed_at"] = now
    if response_key:
        values["gateway_response_json"] = _merged_response(payment, response_key, response)
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(OPEN_PAYMENT_STATES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(payment)
    return result.rowcount == 1


async def cancel_open_payments(
    db: AsyncSession, order_id: str, reason: str, now: datetime | None = None
) -> int:
    """Cancel every open session of an order inside the caller's transaction.

    A gateway success arriving afterwards is treated as a late success and
    flagged for refund by :func:`reconcile`.
    """
    now = now or _utcnow()
    result = await db.execute(
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status.in_(OPEN_PAYMENT_STATES))
        .values(status="cancelled", failure_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _retire_or_reuse(db: AsyncSession, existing: Payment, now: datetime) -> Payment | None:
    """Decide what to do with the order's current live payment.

    Returns the payment when its link can be handed out again, or None once it
    has been retired and a fresh session may be opened.
    """
    if existing.status == "completed":
        raise ConflictError("Payment already completed for this order")

    if existing.status == "initiated":
        if existing.gateway_payment_link and _as_utc(existing.expires_at) > now:
            return existing
        await _close_open_payment(db, existing, "cancelled", "Payment link expired", now)
        return None

    # pending: another request is talking to the gateway right now, unless it died.
    stale_after = timedelta(seconds=settings.payment_pending_stale_seconds)
    if _as_utc(existing.initiated_at) + stale_after > now:
        raise ConflictError("A payment link is already being created for this order")
    await _close_open_payment(
        db, existing, "failed", "Abandoned before the gateway acknowledged", now
    )
    return None


async def create_payment_session(
    db: AsyncSession,
    order_id: str,
    actor_id: str,
    *,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[Payment, bool]:
    """Open (or reuse) the hosted-checkout session for an accepted order.

    Returns ``(payment, created)``; ``created`` is False when a still-valid
    link was handed back instead of opening a new one.
    """
    order = await _get_order(db, order_id)
    if actor_id not in (order.buyer_id, order.seller_id):
        raise ForbiddenError("Not authorized to pay for this order")
    if order.status != "accepted":
        raise ConflictError("Payment link can only be created for accepted orders")
    if order.payment_status == "paid":
        raise ConflictError("Payment already completed for this order")

    now = _utcnow()
    existing = await _live_payment(db, order.id)
    if existing:
        reusable = await _retire_or_reuse(db, existing, now)
        if reusable:
            return reusable, False

    listing = await listing_service.get_listing(db, order.listing_id)
    payment = Payment(
        order_id=order.id,
        transaction_id=f"TXN_{time.time_ns() // 1000}_{order.id}",
        payer_user_id=order.buyer_id,
        payee_user_id=order.seller_id,
        amount=order.amount,
        status="pending",
        initiated_at=now,
        expires_at=now + timedelta(hours=settings.payment_link_ttl_hours),
        user_agent=(user_agent or "")[:255] or None,
        ip_address=ip_address,
        notes=f"Payment for {listing.title}",
    )
    db.add(payment)
    try:
        await db.commit()
    except IntegrityError:
        # Lost the race to open the order's live payment.
        await db.rollback()
        existing = await _live_payment(db, order.id)
        if existing:
            reusable = await _retire_or_reuse(db, existing, now)
            if reusable:
                return reusable, False
        raise ConflictError("A payment link is already being created for this order")
    await db.refresh(payment)

    buyer = await db.get(User, order.buyer_id)
    try:
        session = await paytm_service.paytm_gateway.create_payment_order(
            order_id=order.id,
            amount=order.amount,
            customer_id=order.buyer_id,
            customer_email=buyer.email if buyer else "",
            customer_phone=(buyer.phone if buyer and buyer.phone else settings.default_customer_phone),
            callback_url=f"{settings.paytm_callback_url}?paymentId={payment.id}",
        )
    except paytm_service.PaytmError as exc:
        logger.warning("Payment link creation failed for order %s: %s", order.id, exc.reason)
        await _close_open_payment(
            db, payment, "failed", f"Payment link creation failed: {exc.reason}", _utcnow(),
            response_key="initiate_error", response=exc.response,
        )
        raise PaymentGatewayError("Payment link creation failed, please try again later") from exc
    except Exception as exc:
        logger.exception("Unexpected error creating payment link for order %s", order.id)
        await _close_open_payment(
            db, payment, "failed", "Payment link creation failed: internal error", _utcnow()
        )
        raise PaymentGatewayError("Payment link creation failed, please try again later") from exc

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == "pending")
        .values(
            status="initiated",
            gateway_order_id=session["gateway_order_id"],
            gateway_transaction_token=session["transaction_token"],
            gateway_payment_link=session["payment_link"],
            gateway_response_json=_merged_response(payment, "initiate", session["gateway_response"]),
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(payment)
    if result.rowcount != 1:
        # The order was cancelled while the gateway call was in flight.
        raise ConflictError("Order is no longer awaiting payment")

    logger.info(
        "Payment %s initiated for order %s (gateway order %s)",
        payment.id, order.id, payment.gateway_order_id,
    )
    amount = format_inr(order.amount)
    await notify(
        db,
        PaymentNotice(
            NotificationType.PAYMENT_LINK_CREATED, order.buyer_id,
            "Payment Link Ready",
            f'Complete your payment of {amount} for "{listing.title}".',
            listing.id, order.id, payment.id,
        ),
        PaymentNotice(
            NotificationType.PAYMENT_LINK_CREATED, order.seller_id,
            "Payment Link Sent",
            f'The buyer has received a payment link of {amount} for "{listing.title}".',
            listing.id, order.id, payment.id,
        ),
    )
    await db.refresh(payment)
    return payment, True


def _amount_matches(reported, expected: int) -> bool:
    try:
        return Decimal(str(reported)) == Decimal(expected)
    except (InvalidOperation, ValueError):
        return False


async def handle_callback(db: AsyncSession, payment_id: str, payload: dict) -> Payment:
    """Verify a gateway callback and reconcile the payment with it.

    Unverified callbacks never move a payment towards success: an open payment
    is marked failed and CallbackValidationError propagates.
    """
    payment = await _load_payment(db, payment_id)
    try:
        data = paytm_service.paytm_gateway.validate_callback(payload)
        if not payment.gateway_order_id or data.get("ORDERID") != payment.gateway_order_id:
            raise CallbackValidationError("Callback does not match this payment")
        if "TXNAMOUNT" in data and not _amount_matches(data["TXNAMOUNT"], payment.amount):
            raise CallbackValidationError("Callback amount does not match this payment")
    except CallbackValidationError as exc:
        logger.warning("Rejected callback for payment %s: %s", payment.id, exc.message)
        await _close_open_payment(
            db, payment, "failed", f"Callback validation failed: {exc.message}", _utcnow(),
            response_key="rejected_callback", response=payload,
        )
        raise

    return await reconcile(
        db,
        payment,
        data.get("STATUS"),
        transaction_id=data.get("TXNID"),
        bank_txn_id=data.get("BANKTXNID"),
        reason=data.get("RESPMSG"),
        source="callback",
        raw=data,
    )


async def reconcile(
    db: AsyncSession,
    payment: Payment,
    gateway_status: str | None,
    *,
    transaction_id: str | None = None,
    bank_txn_id: str | None = None,
    reason: str | None = None,
    source: str = "callback",
    raw=None,
) -> Payment:
    """Apply a verified gateway outcome to a payment and its order.

    Idempotent: replays and late duplicates leave state unchanged. Success
    only completes a payment that is still open; the order's paid flag and
    the listing's sold flag follow in the same transaction.
    """
    now = _utcnow()

    if gateway_status == paytm_service.STATUS_SUCCESS:
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(OPEN_PAYMENT_STATES))
            .values(
                status="completed",
                completed_at=now,
                gateway_transaction_id=transaction_id,
                gateway_bank_txn_id=bank_txn_id,
                gateway_response_json=_merged_response(payment, source, raw),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            await db.refresh(payment)
            if payment.status != "completed":
                # Money moved for a session we already closed; needs a human.
                logger.error(
                    "Verified success for payment %s in state %s (gateway txn %s); manual refund required",
                    payment.id, payment.status, transaction_id,
                )
                await db.execute(
                    update(Payment)
                    .where(Payment.id == payment.id)
                    .values(gateway_response_json=_merged_response(payment, "late_success", raw))
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                await db.refresh(payment)
            return payment

        order = await _get_order(db, payment.order_id)
        await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status == "pending")
            .values(payment_status="paid")
            .execution_options(synchronize_session=False)
        )
        await listing_service.ensure_sold(db, order.listing_id)
        await db.commit()
        await db.refresh(payment)
        logger.info("Payment %s completed via %s (gateway txn %s)", payment.id, source, transaction_id)

        listing = await listing_service.get_listing(db, order.listing_id)
        amount = format_inr(payment.amount)
        await notify(
            db,
            PaymentNotice(
                NotificationType.PAYMENT_COMPLETED, payment.payer_user_id,
                "Payment Successful",
                f'Your payment of {amount} for "{listing.title}" was successful. '
                "The seller will deliver the account details shortly.",
                listing.id, order.id, payment.id,
            ),
            PaymentNotice(
                NotificationType.PAYMENT_RECEIVED, payment.payee_user_id,
                "Payment Received",
                f'Payment of {amount} received for "{listing.title}". '
                "Please deliver the account details to the buyer.",
                listing.id, order.id, payment.id,
            ),
        )
        await db.refresh(payment)
        return payment

    if gateway_status == paytm_service.STATUS_FAILURE:
        failure = reason or "Transaction failed"
        moved = await _close_open_payment(
            db, payment, "failed", failure, now, response_key=source, response=raw
        )
        if moved:
            logger.info("Payment %s failed via %s: %s", payment.id, source, failure)
            order = await _get_order(db, payment.order_id)
            listing = await listing_service.get_listing(db, order.listing_id)
            await notify(
                db,
                PaymentNotice(
                    NotificationType.PAYMENT_FAILED, payment.payer_user_id,
                    "Payment Failed",
                    f'Your payment for "{listing.title}" did not go through: {failure}. '
                    "You can request a new payment link from the order page.",
                    listing.id, order.id, payment.id,
                ),
            )
            await db.refresh(payment)
        return payment

    logger.debug("Payment %s still pending at gateway (%s)", payment.id, source)
    return payment


async def check_status(db: AsyncSession, payment_id: str, actor_id: str) -> Payment:
    """Poll the gateway for an open payment and reconcile with the answer.

    A gateway outage is not an error for the caller: the stored state is returned.
    """
    payment = await get_payment(db, payment_id, actor_id)
    if payment.status not in OPEN_PAYMENT_STATES or not payment.gateway_order_id:
        return payment

    try:
        result = await paytm_service.paytm_gateway.check_payment_status(payment.gateway_order_id)
    except paytm_service.PaytmError as exc:
        logger.warning("Status check failed for payment %s: %s", payment.id, exc.reason)
        return payment

    status = result.get("status")
    if status in (paytm_service.STATUS_SUCCESS, paytm_service.STATUS_FAILURE):
        return await reconcile(
            db,
            payment,
            status,
            transaction_id=result.get("transaction_id"),
            bank_txn_id=result.get("bank_txn_id"),
            reason=result.get("message"),
            source="status_check",
            raw=result.get("gateway_response"),
        )

    now = _utcnow()
    if payment.status == "initiated" and _as_utc(payment.expires_at) <= now:
        await _close_open_payment(db, payment, "cancelled", "Payment link expired", now)
    return payment


async def get_payment(db: AsyncSession, payment_id: str, actor_id: str) -> Payment:
    payment = await _load_payment(db, payment_id)
    if actor_id not in (payment.payer_user_id, payment.payee_user_id):
        raise ForbiddenError("Not authorized to view this payment")
    return payment


async def list_payments(
    db: AsyncSession,
    user_id: str,
    status: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Payment], int]:
    """Payments the user made or received, newest first."""
    cond = or_(Payment.payer_user_id == user_id, Payment.payee_user_id == user_id)
    query = select(Payment).where(cond)
    count_query = select(func.count(Payment.id)).where(cond)
    if status:
        query = query.where(Payment.status == status)
        count_query = count_query.where(Payment.status == status)

    total = (await db.execute(count_query)).scalar() or 0
    query = query.order_by(Payment.initiated_at.desc())
    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return list(result.scalars().all()), total


async def expire_stale_payments(db: AsyncSession, now: datetime | None = None) -> int:
    """Cancel initiated payments whose checkout link has lapsed. Returns how many."""
    now = now or _utcnow()
    result = await db.execute(
        update(Payment)
        .where(Payment.status == "initiated", Payment.expires_at <= now)
        .values(status="cancelled", failure_reason="Payment link expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    count = result.rowcount or 0
    if count:
        logger.info("Cancelled %d expired payment link(s)", count)
    return count
