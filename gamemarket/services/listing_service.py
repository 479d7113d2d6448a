"""Listing store access for the trade lifecycle.

Availability (``Listing.sold``) is only ever changed here, and only through
conditional UPDATE statements whose row count tells the caller whether it won
the race. Nothing outside this module should assign ``listing.sold``.
Selling a listing also closes the negotiations still open on it.
"""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.core.exceptions import ListingNotFoundError
from gamemarket.models.listing import Listing
from gamemarket.models.offer import Offer
from gamemarket.services.notification_service import (
    NotificationType,
    OfferNotice,
    format_inr,
)

SOLD_RESPONSE = "This account has been sold to another buyer"


async def get_listing(db: AsyncSession, listing_id: str) -> Listing:
    """Get a listing by ID or raise 404."""
    result = await db.execute(
        select(Listing)
        .where(Listing.id == listing_id)
        .execution_options(populate_existing=True)
    )
    listing = result.scalar_one_or_none()
    if not listing:
        raise ListingNotFoundError(listing_id)
    return listing


async def mark_sold(db: AsyncSession, listing_id: str) -> bool:
    """Compare-and-set ``sold: false -> true``.

    Runs inside the caller's transaction. Returns False when another
    acceptance already sold the listing; the caller must then roll back.
    """
    result = await db.execute(
        update(Listing)
        .where(Listing.id == listing_id, Listing.sold.is_(False))
        .values(sold=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def ensure_sold(db: AsyncSession, listing_id: str) -> None:
    """Idempotently set ``sold = true`` (payment reconciliation path)."""
    await db.execute(
        update(Listing)
        .where(Listing.id == listing_id, Listing.sold.is_(False))
        .values(sold=True)
        .execution_options(synchronize_session=False)
    )


async def release(db: AsyncSession, listing_id: str) -> bool:
    """Compare-and-set ``sold: true -> false`` when an unpaid acceptance is cancelled."""
    result = await db.execute(
        update(Listing)
        .where(Listing.id == listing_id, Listing.sold.is_(True))
        .values(sold=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def reject_pending_offers(
    db: AsyncSession, listing_id: str, now: datetime, keep_offer_id: str | None = None
) -> list[Offer]:
    """Reject the live pending offers on a listing that has just been sold.

    Runs inside the caller's transaction. Overdue offers are left for the
    expiry sweep. Returns the offers that were closed.
    """
    conditions = [
        Offer.listing_id == listing_id,
        Offer.status == "pending",
        Offer.expires_at > now,
    ]
    if keep_offer_id:
        conditions.append(Offer.id != keep_offer_id)
    result = await db.execute(select(Offer).where(*conditions))
    offers = list(result.scalars().all())
    if offers:
        await db.execute(
            update(Offer)
            .where(Offer.id.in_([offer.id for offer in offers]), Offer.status == "pending")
            .values(status="rejected", response_message=SOLD_RESPONSE, responded_at=now)
            .execution_options(synchronize_session=False)
        )
    return offers


def sold_offer_notices(listing: Listing, offers: list[Offer]) -> list[OfferNotice]:
    return [
        OfferNotice(
            NotificationType.OFFER_REJECTED, offer.buyer_id,
            "Offer Declined",
            f'Your offer of {format_inr(offer.amount)} for "{listing.title}" was declined: '
            f"{SOLD_RESPONSE.lower()}",
            listing.id, offer.id,
        )
        for offer in offers
    ]
