"""Price negotiation between a buyer and a listing's seller.

An offer lives for ``offer_ttl_days``. Expiry is applied lazily: every
transition is conditional on ``expires_at > now``, so an overdue offer can
no longer be accepted even before the sweep marks it ``expired``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.config import settings
from gamemarket.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    ListingSoldError,
    OfferNotFoundError,
)
from gamemarket.models.offer import Offer
from gamemarket.models.order import Order
from gamemarket.models.user import User
from gamemarket.services import listing_service
from gamemarket.services.notification_service import (
    NotificationType,
    OfferNotice,
    OrderNotice,
    format_inr,
    notify,
)
from gamemarket.services.order_service import issue_payment_link

logger = logging.getLogger(__name__)

DECISIONS = ("accepted", "rejected")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def effective_status(offer: Offer, now: datetime | None = None) -> str:
    """Status as clients should see it: an overdue pending offer reads as expired."""
    now = now or _utcnow()
    if offer.status == "pending" and _as_utc(offer.expires_at) <= now:
        return "expired"
    return offer.status


async def _load_offer(db: AsyncSession, offer_id: str) -> Offer:
    result = await db.execute(
        select(Offer).where(Offer.id == offer_id).execution_options(populate_existing=True)
    )
    offer = result.scalar_one_or_none()
    if not offer:
        raise OfferNotFoundError(offer_id)
    return offer


async def _close_pending(db: AsyncSession, offer_id: str, now: datetime, **values) -> bool:
    """Move a still-actionable pending offer out of ``pending``. Caller commits."""
    result = await db.execute(
        update(Offer)
        .where(Offer.id == offer_id, Offer.status == "pending", Offer.expires_at > now)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _require_actionable(db: AsyncSession, offer: Offer, now: datetime) -> None:
    if offer.status != "pending":
        raise ConflictError(f"This offer has already been {offer.status}")
    if _as_utc(offer.expires_at) <= now:
        await db.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == "pending")
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        raise ConflictError("This offer has expired")


async def create_offer(
    db: AsyncSession,
    listing_id: str,
    buyer_id: str,
    amount: int,
    message: str = "",
) -> Offer:
    """Open a negotiation on a listing below its asking price."""
    listing = await listing_service.get_listing(db, listing_id)
    if listing.sold:
        raise ListingSoldError()
    if listing.seller_id == buyer_id:
        raise ForbiddenError("You cannot make an offer on your own listing")

    now = _utcnow()
    # An overdue pending offer must not block a fresh one.
    await db.execute(
        update(Offer)
        .where(
            Offer.listing_id == listing_id,
            Offer.buyer_id == buyer_id,
            Offer.status == "pending",
            Offer.expires_at <= now,
        )
        .values(status="expired")
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    existing = await db.execute(
        select(func.count(Offer.id)).where(
            Offer.listing_id == listing_id,
            Offer.buyer_id == buyer_id,
            Offer.status == "pending",
        )
    )
    if existing.scalar():
        raise ConflictError("You already have a pending offer on this account")

    if amount is None or amount <= 0:
        raise InvalidArgumentError("Offer amount must be greater than 0")
    if amount >= listing.price:
        raise InvalidArgumentError(
            "Offer amount must be less than the listing price. Consider purchasing directly instead."
        )

    offer = Offer(
        listing_id=listing.id,
        buyer_id=buyer_id,
        seller_id=listing.seller_id,
        amount=amount,
        message=message or "",
        status="pending",
        created_at=now,
        expires_at=now + timedelta(days=settings.offer_ttl_days),
    )
    db.add(offer)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("You already have a pending offer on this account")
    await db.refresh(offer)
    logger.info("Offer %s created on listing %s for %d", offer.id, listing.id, amount)

    buyer = await db.get(User, buyer_id)
    buyer_name = buyer.name if buyer and buyer.name else "A buyer"
    await notify(
        db,
        OfferNotice(
            NotificationType.OFFER_RECEIVED, listing.seller_id,
            "New Offer Received!",
            f'{buyer_name} offered {format_inr(amount)} for your "{listing.title}"',
            listing.id, offer.id,
        ),
    )
    await db.refresh(offer)
    return offer


async def respond_to_offer(
    db: AsyncSession,
    offer_id: str,
    actor_id: str,
    decision: str,
    response_message: str = "",
) -> tuple[Offer, Order | None]:
    """Seller accepts or rejects a pending offer.

    Acceptance flips the offer, reserves the listing and creates the accepted
    order in a single transaction. Returns ``(offer, order)``; ``order`` is
    None for a rejection.
    """
    if decision not in DECISIONS:
        raise InvalidArgumentError("Status must be either 'accepted' or 'rejected'")

    offer = await _load_offer(db, offer_id)
    if offer.seller_id != actor_id:
        raise ForbiddenError("Only the seller can respond to this offer")

    now = _utcnow()
    await _require_actionable(db, offer, now)
    listing = await listing_service.get_listing(db, offer.listing_id)
    if listing.sold:
        raise ListingSoldError()

    if decision == "rejected":
        if not await _close_pending(
            db, offer.id, now,
            status="rejected", response_message=response_message or "", responded_at=now,
        ):
            await db.rollback()
            raise ConflictError("This offer has already been responded to")
        await db.commit()
        await db.refresh(offer)
        logger.info("Offer %s rejected", offer.id)
        await notify(
            db,
            OfferNotice(
                NotificationType.OFFER_REJECTED, offer.buyer_id,
                "Offer Declined",
                f'Your offer of {format_inr(offer.amount)} for "{listing.title}" was declined'
                + (f": {response_message}" if response_message else ""),
                listing.id, offer.id,
            ),
        )
        await db.refresh(offer)
        return offer, None

    order = Order(
        listing_id=offer.listing_id,
        buyer_id=offer.buyer_id,
        seller_id=offer.seller_id,
        amount=offer.amount,
        type="accepted_offer",
        related_offer_id=offer.id,
        status="accepted",
        payment_status="pending",
        buyer_notes=offer.message or "",
        accepted_at=now,
    )
    try:
        if not await _close_pending(
            db, offer.id, now,
            status="accepted", response_message=response_message or "", responded_at=now,
        ):
            raise ConflictError("This offer has already been responded to")
        if not await listing_service.mark_sold(db, offer.listing_id):
            raise ListingSoldError()
        closed = await listing_service.reject_pending_offers(
            db, offer.listing_id, now, keep_offer_id=offer.id
        )
        db.add(order)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(offer)
    await db.refresh(order)
    logger.info("Offer %s accepted, order %s created", offer.id, order.id)

    amount = format_inr(offer.amount)
    await notify(
        db,
        OfferNotice(
            NotificationType.OFFER_ACCEPTED, offer.buyer_id,
            "Offer Accepted!",
            f'Your offer of {amount} for "{listing.title}" has been accepted! '
            "Complete the payment to receive the account.",
            listing.id, offer.id, order.id,
        ),
        OrderNotice(
            NotificationType.ACCOUNT_SOLD, offer.seller_id,
            "Account Sold!",
            f'You accepted an offer of {amount} for "{listing.title}". '
            "Deliver the account details once payment is confirmed.",
            listing.id, order.id,
        ),
        *listing_service.sold_offer_notices(listing, closed),
    )
    await issue_payment_link(db, order, actor_id)
    await db.refresh(offer)
    await db.refresh(order)
    return offer, order


async def cancel_offer(db: AsyncSession, offer_id: str, actor_id: str) -> Offer:
    """Buyer withdraws a pending offer."""
    offer = await _load_offer(db, offer_id)
    if offer.buyer_id != actor_id:
        raise ForbiddenError("Only the buyer can cancel this offer")

    now = _utcnow()
    await _require_actionable(db, offer, now)
    if not await _close_pending(db, offer.id, now, status="cancelled", responded_at=now):
        await db.rollback()
        raise ConflictError("This offer has already been responded to")
    await db.commit()
    await db.refresh(offer)
    logger.info("Offer %s cancelled by buyer", offer.id)
    return offer


async def get_offer(db: AsyncSession, offer_id: str, actor_id: str) -> Offer:
    offer = await _load_offer(db, offer_id)
    if actor_id not in (offer.buyer_id, offer.seller_id):
        raise ForbiddenError("Not authorized to view this offer")
    return offer


async def list_offers(
    db: AsyncSession,
    user_id: str,
    kind: str | None = None,
    status: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Offer], int]:
    """Offers the user sent (``kind="sent"``), received, or both; newest first."""
    if kind == "sent":
        cond = Offer.buyer_id == user_id
    elif kind == "received":
        cond = Offer.seller_id == user_id
    else:
        cond = or_(Offer.buyer_id == user_id, Offer.seller_id == user_id)

    filters = [cond]
    now = _utcnow()
    if status == "pending":
        filters.append(and_(Offer.status == "pending", Offer.expires_at > now))
    elif status == "expired":
        filters.append(
            or_(Offer.status == "expired", and_(Offer.status == "pending", Offer.expires_at <= now))
        )
    elif status:
        filters.append(Offer.status == status)

    total = (await db.execute(select(func.count(Offer.id)).where(*filters))).scalar() or 0
    query = (
        select(Offer)
        .where(*filters)
        .order_by(Offer.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(query)
    return list(result.scalars().all()), total


async def expire_stale_offers(db: AsyncSession, now: datetime | None = None) -> int:
    """Mark overdue pending offers expired and tell their buyers. Returns how many."""
    now = now or _utcnow()
    result = await db.execute(
        select(Offer).where(Offer.status == "pending", Offer.expires_at <= now)
    )
    expired = []
    for offer in result.scalars().all():
        moved = await db.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == "pending")
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount == 1:
            expired.append(offer)
    await db.commit()
    if not expired:
        return 0

    logger.info("Expired %d stale offer(s)", len(expired))
    notices = []
    for offer in expired:
        listing = await listing_service.get_listing(db, offer.listing_id)
        notices.append(
            OfferNotice(
                NotificationType.OFFER_EXPIRED, offer.buyer_id,
                "Offer Expired",
                f'Your offer of {format_inr(offer.amount)} for "{listing.title}" expired '
                "without a response",
                listing.id, offer.id,
            )
        )
    await notify(db, *notices)
    return len(expired)
