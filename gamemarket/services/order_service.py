"""Order lifecycle: direct purchases, seller decisions, delivery and cancellation.

Every status change is a conditional UPDATE guarded by the expected current
state, so two requests racing on the same order cannot both succeed.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidOrderTransitionError,
    ListingSoldError,
    OrderNotFoundError,
    PreconditionFailedError,
)
from gamemarket.models.offer import Offer
from gamemarket.models.order import ORDER_STATUSES, Order
from gamemarket.models.user import User
from gamemarket.services import listing_service, payment_service
from gamemarket.services.notification_service import (
    NotificationType,
    OrderNotice,
    PaymentNotice,
    format_inr,
    notify,
)

logger = logging.getLogger(__name__)

# (from, to) pairs a seller may request through update_order_status.
_SELLER_TRANSITIONS = {
    ("pending", "accepted"),
    ("pending", "rejected"),
    ("accepted", "completed"),
}

_ACCOUNT_DETAIL_FIELDS = ("game_id", "email", "password", "additional_info")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _load_order(db: AsyncSession, order_id: str) -> Order:
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if not order:
        raise OrderNotFoundError(order_id)
    return order


async def _display_name(db: AsyncSession, user_id: str) -> str:
    user = await db.get(User, user_id)
    return user.name if user and user.name else "A buyer"


async def _set_status(db: AsyncSession, order_id: str, where: dict, **values) -> bool:
    """Conditional order update inside the caller's transaction."""
    conditions = [Order.id == order_id]
    conditions.extend(getattr(Order, column) == expected for column, expected in where.items())
    result = await db.execute(
        update(Order)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def issue_payment_link(db: AsyncSession, order: Order, actor_id: str) -> None:
    """Best-effort payment session right after an acceptance.

    The acceptance is already committed; a gateway failure here only means the
    buyer has to request the link again.
    """
    try:
        await payment_service.create_payment_session(db, order.id, actor_id)
    except Exception:
        logger.exception("Automatic payment link creation failed for order %s", order.id)
        await db.rollback()


async def create_direct_order(
    db: AsyncSession, listing_id: str, buyer_id: str, buyer_notes: str = ""
) -> Order:
    """Ask to buy a listing at its asking price. The seller still has to accept."""
    listing = await listing_service.get_listing(db, listing_id)
    if listing.sold:
        raise ListingSoldError()
    if listing.seller_id == buyer_id:
        raise ForbiddenError("You cannot purchase your own listing")

    open_request = await db.execute(
        select(func.count(Order.id)).where(
            Order.listing_id == listing_id,
            Order.buyer_id == buyer_id,
            Order.status == "pending",
        )
    )
    if open_request.scalar():
        raise ConflictError("You already have a pending purchase request for this account")

    order = Order(
        listing_id=listing.id,
        buyer_id=buyer_id,
        seller_id=listing.seller_id,
        amount=listing.price,
        type="direct_purchase",
        status="pending",
        payment_status="pending",
        buyer_notes=buyer_notes or "",
    )
    db.add(order)
    await db.commit()
    await db.refresh(order)
    logger.info("Direct purchase order %s created for listing %s", order.id, listing.id)

    buyer_name = await _display_name(db, buyer_id)
    amount = format_inr(order.amount)
    await notify(
        db,
        OrderNotice(
            NotificationType.PURCHASE_REQUEST, order.seller_id,
            "New Purchase Request!",
            f'{buyer_name} wants to buy your "{listing.title}" for {amount}',
            listing.id, order.id,
        ),
        OrderNotice(
            NotificationType.PURCHASE_REQUEST, buyer_id,
            "Purchase Request Sent!",
            f'Your purchase request for "{listing.title}" has been sent to the seller',
            listing.id, order.id,
        ),
    )
    await db.refresh(order)
    return order


def _validated_account_details(account_details) -> str:
    if not isinstance(account_details, dict) or not any(
        account_details.get(field) for field in _ACCOUNT_DETAIL_FIELDS
    ):
        raise InvalidArgumentError("Account details are required to complete the order")
    return json.dumps({field: account_details.get(field) or "" for field in _ACCOUNT_DETAIL_FIELDS})


async def update_order_status(
    db: AsyncSession,
    order_id: str,
    actor_id: str,
    new_status: str,
    seller_notes: str | None = None,
    account_details: dict | None = None,
) -> Order:
    """Seller-driven transitions: accept, reject, or complete with account delivery."""
    if new_status not in ORDER_STATUSES:
        raise InvalidArgumentError(f"Unknown order status '{new_status}'")

    order = await _load_order(db, order_id)
    if order.seller_id != actor_id:
        raise ForbiddenError("Only the seller can update this order")
    if (order.status, new_status) not in _SELLER_TRANSITIONS:
        raise InvalidOrderTransitionError(order.status, new_status)

    now = _utcnow()
    notes = {"seller_notes": seller_notes} if seller_notes is not None else {}

    if new_status == "completed":
        details_json = _validated_account_details(account_details)
        if order.payment_status != "paid":
            raise PreconditionFailedError(
                "Payment must be confirmed before the account can be delivered"
            )
        moved = await _set_status(
            db, order.id, {"status": "accepted", "payment_status": "paid"},
            status="completed",
            account_details_json=details_json,
            account_delivered=True,
            account_delivered_at=now,
            completed_at=now,
            **notes,
        )
        if not moved:
            await db.rollback()
            raise ConflictError("Order changed while it was being completed, please retry")
        await db.commit()
        await db.refresh(order)
        logger.info("Order %s completed, account delivered", order.id)
        listing = await listing_service.get_listing(db, order.listing_id)
        await notify(
            db,
            OrderNotice(
                NotificationType.ACCOUNT_DELIVERED, order.buyer_id,
                "Account Delivered!",
                f'The seller has delivered the account details for "{listing.title}". '
                "Check your order page.",
                listing.id, order.id,
            ),
        )
        await db.refresh(order)
        return order

    if new_status == "rejected":
        moved = await _set_status(db, order.id, {"status": "pending"}, status="rejected", **notes)
        if not moved:
            await db.rollback()
            await db.refresh(order)
            raise InvalidOrderTransitionError(order.status, new_status)
        await db.commit()
        await db.refresh(order)
        listing = await listing_service.get_listing(db, order.listing_id)
        await notify(
            db,
            OrderNotice(
                NotificationType.PURCHASE_REJECTED, order.buyer_id,
                "Purchase Request Declined",
                f'Your purchase request for "{listing.title}" was declined by the seller',
                listing.id, order.id,
            ),
        )
        await db.refresh(order)
        return order

    # accepted: order CAS and listing reservation commit together or not at all.
    try:
        if not await _set_status(
            db, order.id, {"status": "pending"}, status="accepted", accepted_at=now, **notes
        ):
            raise ConflictError("This order has already been responded to")
        if not await listing_service.mark_sold(db, order.listing_id):
            raise ListingSoldError()
        closed = await listing_service.reject_pending_offers(db, order.listing_id, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(order)
    logger.info("Order %s accepted, listing %s reserved", order.id, order.listing_id)

    listing = await listing_service.get_listing(db, order.listing_id)
    await notify(
        db,
        OrderNotice(
            NotificationType.PURCHASE_ACCEPTED, order.buyer_id,
            "Purchase Request Accepted!",
            f'Your purchase request for "{listing.title}" has been accepted! '
            f"Complete the payment of {format_inr(order.amount)} to receive the account.",
            listing.id, order.id,
        ),
        *listing_service.sold_offer_notices(listing, closed),
    )
    await issue_payment_link(db, order, actor_id)
    await db.refresh(order)
    return order


async def mark_payment_received(db: AsyncSession, order_id: str, actor_id: str) -> Order:
    """Seller confirms payment received outside the gateway. Idempotent.

    Open gateway sessions for the order are cancelled in the same transaction.
    """
    order = await _load_order(db, order_id)
    if order.seller_id != actor_id:
        raise ForbiddenError("Only the seller can confirm payment")
    if order.payment_status == "paid":
        return order
    if order.status not in ("accepted", "completed"):
        raise ConflictError("Payment can only be confirmed for accepted orders")

    try:
        moved = await _set_status(
            db, order.id, {"payment_status": "pending"}, payment_status="paid"
        )
        if moved:
            await listing_service.ensure_sold(db, order.listing_id)
            # The buyer must not be able to pay a second time through a live link.
            await payment_service.cancel_open_payments(
                db, order.id, "Payment confirmed manually"
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(order)
    if not moved:
        return order

    logger.info("Order %s marked paid by seller", order.id)
    listing = await listing_service.get_listing(db, order.listing_id)
    await notify(
        db,
        PaymentNotice(
            NotificationType.PAYMENT_RECEIVED, order.buyer_id,
            "Payment Confirmed",
            f'The seller has confirmed your payment for "{listing.title}".',
            listing.id, order.id,
        ),
    )
    await db.refresh(order)
    return order


async def cancel_order(db: AsyncSession, order_id: str, actor_id: str) -> Order:
    """Either party walks away before payment.

    Cancelling an accepted order releases the listing, cancels any open
    payment session and withdraws the accepted offer it came from, all in one
    transaction.
    """
    order = await _load_order(db, order_id)
    if actor_id not in (order.buyer_id, order.seller_id):
        raise ForbiddenError("Not authorized to cancel this order")

    now = _utcnow()
    if order.status == "pending":
        moved = await _set_status(
            db, order.id, {"status": "pending"}, status="cancelled", cancelled_at=now
        )
        if not moved:
            await db.rollback()
            raise ConflictError("Order changed while it was being cancelled, please retry")
        await db.commit()
    elif order.status == "accepted" and order.payment_status == "pending":
        try:
            if not await _set_status(
                db, order.id, {"status": "accepted", "payment_status": "pending"},
                status="cancelled", cancelled_at=now,
            ):
                raise ConflictError("Order changed while it was being cancelled, please retry")
            await listing_service.release(db, order.listing_id)
            await payment_service.cancel_open_payments(db, order.id, "Order cancelled", now)
            if order.related_offer_id:
                await db.execute(
                    update(Offer)
                    .where(Offer.id == order.related_offer_id, Offer.status == "accepted")
                    .values(status="cancelled")
                    .execution_options(synchronize_session=False)
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    else:
        raise ConflictError(
            f"Cannot cancel an order that is {order.status} with payment {order.payment_status}"
        )

    await db.refresh(order)
    logger.info("Order %s cancelled by %s", order.id, actor_id)

    counterparty = order.seller_id if actor_id == order.buyer_id else order.buyer_id
    listing = await listing_service.get_listing(db, order.listing_id)
    await notify(
        db,
        OrderNotice(
            NotificationType.GENERAL, counterparty,
            "Order Cancelled",
            f'The order for "{listing.title}" has been cancelled',
            listing.id, order.id,
        ),
    )
    await db.refresh(order)
    return order


async def get_order(db: AsyncSession, order_id: str, actor_id: str) -> Order:
    order = await _load_order(db, order_id)
    if actor_id not in (order.buyer_id, order.seller_id):
        raise ForbiddenError("Not authorized to view this order")
    return order


async def list_orders(
    db: AsyncSession,
    user_id: str,
    role: str | None = None,
    status: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Order], int]:
    """Orders the user is party to. ``role`` narrows to ``buyer`` or ``seller``."""
    if role == "buyer":
        cond = Order.buyer_id == user_id
    elif role == "seller":
        cond = Order.seller_id == user_id
    else:
        cond = or_(Order.buyer_id == user_id, Order.seller_id == user_id)

    query = select(Order).where(cond)
    count_query = select(func.count(Order.id)).where(cond)
    if status:
        query = query.where(Order.status == status)
        count_query = count_query.where(Order.status == status)

    total = (await db.execute(count_query)).scalar() or 0
    query = query.order_by(Order.created_at.desc())
    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return list(result.scalars().all()), total
