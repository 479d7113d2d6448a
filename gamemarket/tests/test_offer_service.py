"""Negotiation engine: offer creation, seller responses, cancellation and expiry."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from gamemarket.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from gamemarket.models.listing import Listing
from gamemarket.models.notification import Notification
from gamemarket.models.offer import Offer
from gamemarket.models.order import Order
from gamemarket.models.payment import Payment
from gamemarket.services import listing_service, offer_service


async def _backdate(db, offer_id: str, days: int = 1):
    await db.execute(
        update(Offer)
        .where(Offer.id == offer_id)
        .values(expires_at=datetime.now(timezone.utc) - timedelta(days=days))
    )
    await db.commit()


async def _count(db, model, *conds) -> int:
    return (await db.execute(select(func.count(model.id)).where(*conds))).scalar()


# ---------------------------------------------------------------------------
# create_offer
# ---------------------------------------------------------------------------

async def test_create_offer_pending_and_notifies_seller(db, make_trade):
    seller, buyer, listing = await make_trade(price=1000)

    offer = await offer_service.create_offer(db, listing.id, buyer.id, 750, "Would you take 750?")

    assert offer.status == "pending"
    assert offer.amount == 750
    assert offer.seller_id == seller.id
    assert offer.expires_at is not None
    notes = (
        await db.execute(select(Notification).where(Notification.user_id == seller.id))
    ).scalars().all()
    assert [n.type for n in notes] == ["offer_received"]
    assert notes[0].related_offer_id == offer.id
    assert "₹750" in notes[0].message


async def test_create_offer_unknown_listing(db, make_user):
    buyer, _ = await make_user()
    with pytest.raises(NotFoundError):
        await offer_service.create_offer(db, "missing-listing", buyer.id, 100)


async def test_create_offer_on_sold_listing(db, make_user, make_listing):
    seller, _ = await make_user()
    buyer, _ = await make_user()
    listing = await make_listing(seller.id, sold=True)
    with pytest.raises(ConflictError):
        await offer_service.create_offer(db, listing.id, buyer.id, 100)


async def test_create_offer_on_own_listing_forbidden(db, make_trade):
    seller, _, listing = await make_trade()
    with pytest.raises(ForbiddenError):
        await offer_service.create_offer(db, listing.id, seller.id, 100)


@pytest.mark.parametrize("amount", [0, -5, 1000, 1500])
async def test_create_offer_amount_must_be_below_price(db, make_trade, amount):
    _, buyer, listing = await make_trade(price=1000)
    with pytest.raises(InvalidArgumentError):
        await offer_service.create_offer(db, listing.id, buyer.id, amount)


async def test_create_offer_second_pending_offer_conflicts(db, make_trade):
    _, buyer, listing = await make_trade()
    await offer_service.create_offer(db, listing.id, buyer.id, 500)
    with pytest.raises(ConflictError):
        await offer_service.create_offer(db, listing.id, buyer.id, 600)
    assert await _count(db, Offer, Offer.listing_id == listing.id) == 1


async def test_overdue_offer_does_not_block_a_new_one(db, make_trade, fetch):
    _, buyer, listing = await make_trade()
    old = await offer_service.create_offer(db, listing.id, buyer.id, 500)
    await _backdate(db, old.id)

    fresh = await offer_service.create_offer(db, listing.id, buyer.id, 600)

    assert fresh.status == "pending"
    assert (await fetch(db, Offer, old.id)).status == "expired"


async def test_pending_uniqueness_enforced_by_database(db, make_trade):
    seller, buyer, listing = await make_trade()
    db.add(Offer(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id, amount=100))
    await db.commit()
    db.add(Offer(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id, amount=200))
    with pytest.raises(IntegrityError):
        await db.commit()
    await db.rollback()


# ---------------------------------------------------------------------------
# respond_to_offer
# ---------------------------------------------------------------------------

async def test_accept_creates_order_and_sells_listing(db, make_trade, fetch):
    seller, buyer, listing = await make_trade(price=1000)
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 499)

    offer, order = await offer_service.respond_to_offer(db, offer.id, seller.id, "accepted", "Deal")

    assert offer.status == "accepted"
    assert offer.response_message == "Deal"
    assert order.amount == 499
    assert order.type == "accepted_offer"
    assert order.related_offer_id == offer.id
    assert order.status == "accepted"
    assert order.payment_status == "pending"
    assert (await fetch(db, Listing, listing.id)).sold is True


async def test_accept_notifies_both_parties_and_opens_payment(db, make_trade):
    seller, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 800)

    _, order = await offer_service.respond_to_offer(db, offer.id, seller.id, "accepted")

    buyer_kinds = {
        n.type for n in (
            await db.execute(select(Notification).where(Notification.user_id == buyer.id))
        ).scalars()
    }
    seller_kinds = {
        n.type for n in (
            await db.execute(select(Notification).where(Notification.user_id == seller.id))
        ).scalars()
    }
    assert {"offer_accepted", "payment_link_created"} <= buyer_kinds
    assert {"offer_received", "account_sold"} <= seller_kinds

    payment = (await db.execute(select(Payment).where(Payment.order_id == order.id))).scalar_one()
    assert payment.status == "initiated"
    assert payment.gateway_payment_link


async def test_accept_survives_gateway_failure(db, make_trade, fetch, failing_gateway):
    seller, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 800)

    offer, order = await offer_service.respond_to_offer(db, offer.id, seller.id, "accepted")

    assert offer.status == "accepted"
    assert order.status == "accepted"
    assert (await fetch(db, Listing, listing.id)).sold is True
    payment = (await db.execute(select(Payment).where(Payment.order_id == order.id))).scalar_one()
    assert payment.status == "failed"
    assert "timed out" in payment.failure_reason


async def test_reject_leaves_listing_available(db, make_trade, fetch):
    seller, buyer, listing = await make_trade(price=1000)
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)

    offer, order = await offer_service.respond_to_offer(db, offer.id, seller.id, "rejected", "Too low")

    assert offer.status == "rejected"
    assert order is None
    assert (await fetch(db, Listing, listing.id)).sold is False
    assert await _count(db, Order, Order.listing_id == listing.id) == 0
    note = (
        await db.execute(
            select(Notification).where(
                Notification.user_id == buyer.id, Notification.type == "offer_rejected"
            )
        )
    ).scalar_one()
    assert "Too low" in note.message


async def test_only_seller_may_respond(db, make_trade):
    _, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)
    with pytest.raises(ForbiddenError):
        await offer_service.respond_to_offer(db, offer.id, buyer.id, "accepted")


async def test_unknown_decision_rejected(db, make_trade):
    seller, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)
    with pytest.raises(InvalidArgumentError):
        await offer_service.respond_to_offer(db, offer.id, seller.id, "maybe")


async def test_respond_twice_conflicts(db, make_trade):
    seller, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)
    await offer_service.respond_to_offer(db, offer.id, seller.id, "rejected")
    with pytest.raises(ConflictError):
        await offer_service.respond_to_offer(db, offer.id, seller.id, "accepted")


async def test_expired_offer_cannot_be_accepted(db, make_trade, fetch):
    seller, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)
    await _backdate(db, offer.id)

    with pytest.raises(ConflictError):
        await offer_service.respond_to_offer(db, offer.id, seller.id, "accepted")

    assert (await fetch(db, Offer, offer.id)).status == "expired"
    assert (await fetch(db, Listing, listing.id)).sold is False
    assert await _count(db, Order, Order.listing_id == listing.id) == 0


async def test_acceptance_closes_competing_offers(db, make_user, make_trade, fetch):
    seller, buyer_a, listing = await make_trade(price=1000)
    buyer_b, _ = await make_user()
    offer_a = await offer_service.create_offer(db, listing.id, buyer_a.id, 700)
    offer_b = await offer_service.create_offer(db, listing.id, buyer_b.id, 800)

    await offer_service.respond_to_offer(db, offer_b.id, seller.id, "accepted")

    closed = await fetch(db, Offer, offer_a.id)
    assert closed.status == "rejected"
    assert closed.response_message == listing_service.SOLD_RESPONSE
    assert await _count(
        db, Notification,
        Notification.user_id == buyer_a.id, Notification.type == "offer_rejected",
    ) == 1

    with pytest.raises(ConflictError):
        await offer_service.respond_to_offer(db, offer_a.id, seller.id, "accepted")
    assert await _count(db, Order, Order.listing_id == listing.id) == 1


# ---------------------------------------------------------------------------
# cancel / read / expiry sweep
# ---------------------------------------------------------------------------

async def test_buyer_cancels_pending_offer(db, make_trade):
    seller, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)

    with pytest.raises(ForbiddenError):
        await offer_service.cancel_offer(db, offer.id, seller.id)

    cancelled = await offer_service.cancel_offer(db, offer.id, buyer.id)
    assert cancelled.status == "cancelled"

    with pytest.raises(ConflictError):
        await offer_service.cancel_offer(db, offer.id, buyer.id)


async def test_get_offer_restricted_to_participants(db, make_user, make_trade):
    seller, buyer, listing = await make_trade()
    stranger, _ = await make_user()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)

    assert (await offer_service.get_offer(db, offer.id, seller.id)).id == offer.id
    with pytest.raises(ForbiddenError):
        await offer_service.get_offer(db, offer.id, stranger.id)
    with pytest.raises(NotFoundError):
        await offer_service.get_offer(db, "nope", buyer.id)


async def test_list_offers_sent_and_received(db, make_trade):
    seller, buyer, listing = await make_trade()
    await offer_service.create_offer(db, listing.id, buyer.id, 400)

    sent, sent_total = await offer_service.list_offers(db, buyer.id, kind="sent")
    received, received_total = await offer_service.list_offers(db, seller.id, kind="received")
    nothing, _ = await offer_service.list_offers(db, buyer.id, kind="received")

    assert sent_total == received_total == 1
    assert sent[0].id == received[0].id
    assert nothing == []


async def test_effective_status_reports_overdue_offer_as_expired(db, make_trade, fetch):
    _, buyer, listing = await make_trade()
    offer = await offer_service.create_offer(db, listing.id, buyer.id, 400)
    assert offer_service.effective_status(offer) == "pending"

    await _backdate(db, offer.id)
    offer = await fetch(db, Offer, offer.id)
    assert offer.status == "pending"
    assert offer_service.effective_status(offer) == "expired"


async def test_expire_stale_offers_sweeps_and_notifies(db, make_trade, fetch):
    _, buyer, listing = await make_trade()
    stale = await offer_service.create_offer(db, listing.id, buyer.id, 400)
    await _backdate(db, stale.id)

    assert await offer_service.expire_stale_offers(db) == 1
    assert await offer_service.expire_stale_offers(db) == 0

    assert (await fetch(db, Offer, stale.id)).status == "expired"
    assert await _count(
        db, Notification, Notification.user_id == buyer.id, Notification.type == "offer_expired"
    ) == 1
