"""Races between independent sessions on the same listing, offer or payment.

Each contender gets its own AsyncSession on a file-backed SQLite database in
WAL mode, so the requests really interleave at the driver level and the
outcome is decided by the conditional UPDATEs and partial unique indexes,
not by a shared connection serialising them.
"""

from __future__ import annotations

import asyncio
import uuid

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gamemarket.core.exceptions import ConflictError
from gamemarket.database import Base
from gamemarket.models.listing import Listing
from gamemarket.models.notification import Notification
from gamemarket.models.offer import Offer
from gamemarket.models.order import Order
from gamemarket.models.payment import Payment
from gamemarket.models.user import User
from gamemarket.services import offer_service, order_service, payment_service


@pytest.fixture
async def sessions(tmp_path):
    """Session factory over a fresh on-disk database; one session per contender."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'races.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def _seed(sessions, buyers: int = 1, price: int = 1000):
    """Returns (seller_id, [buyer_ids], listing_id)."""
    ids = [str(uuid.uuid4()) for _ in range(buyers + 1)]
    listing_id = str(uuid.uuid4())
    async with sessions() as db:
        for user_id in ids:
            db.add(User(id=user_id, name=f"player-{user_id[:8]}", email=f"{user_id[:8]}@test.com"))
        db.add(Listing(id=listing_id, seller_id=ids[0], title="Mythic rank account", price=price))
        await db.commit()
    return ids[0], ids[1:], listing_id


async def _count(sessions, model, *conds) -> int:
    async with sessions() as db:
        return (await db.execute(select(func.count(model.id)).where(*conds))).scalar()


def _split(results):
    errors = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    return successes, errors


# ===================================================================
# Negotiation races
# ===================================================================


class TestOfferRaces:

    async def test_duplicate_offers_from_one_buyer(self, sessions):
        """Same buyer, same listing, two simultaneous offers: one lands, one conflicts."""
        _, (buyer_id,), listing_id = await _seed(sessions)

        async def _offer(amount: int):
            async with sessions() as db:
                return await offer_service.create_offer(db, listing_id, buyer_id, amount)

        results = await asyncio.gather(_offer(700), _offer(750), return_exceptions=True)
        successes, errors = _split(results)

        assert len(successes) == 1
        assert len(errors) == 1 and isinstance(errors[0], ConflictError)
        assert await _count(
            sessions, Offer, Offer.listing_id == listing_id, Offer.status == "pending"
        ) == 1

    async def test_simultaneous_acceptances_sell_once(self, sessions):
        """Seller accepts two buyers' offers at once: one order, one sold listing."""
        seller_id, (buyer_a, buyer_b), listing_id = await _seed(sessions, buyers=2)
        async with sessions() as db:
            offer_a = await offer_service.create_offer(db, listing_id, buyer_a, 700)
            offer_b = await offer_service.create_offer(db, listing_id, buyer_b, 800)

        async def _accept(offer_id: str):
            async with sessions() as db:
                return await offer_service.respond_to_offer(db, offer_id, seller_id, "accepted")

        results = await asyncio.gather(
            _accept(offer_a.id), _accept(offer_b.id), return_exceptions=True
        )
        successes, errors = _split(results)

        assert len(successes) == 1
        assert len(errors) == 1 and isinstance(errors[0], ConflictError)
        assert await _count(sessions, Order, Order.listing_id == listing_id) == 1
        assert await _count(
            sessions, Offer, Offer.listing_id == listing_id, Offer.status == "accepted"
        ) == 1
        async with sessions() as db:
            assert (await db.get(Listing, listing_id)).sold is True


# ===================================================================
# Cross-path acceptance
# ===================================================================


class TestAcceptanceRaces:

    async def test_direct_and_offer_acceptance_race(self, sessions):
        """A direct purchase and an offer accepted together: exactly one reserves the listing."""
        seller_id, (buyer_a, buyer_b), listing_id = await _seed(sessions, buyers=2)
        async with sessions() as db:
            direct = await order_service.create_direct_order(db, listing_id, buyer_a)
            offer = await offer_service.create_offer(db, listing_id, buyer_b, 900)

        async def _accept_direct():
            async with sessions() as db:
                return await order_service.update_order_status(db, direct.id, seller_id, "accepted")

        async def _accept_offer():
            async with sessions() as db:
                return await offer_service.respond_to_offer(db, offer.id, seller_id, "accepted")

        results = await asyncio.gather(_accept_direct(), _accept_offer(), return_exceptions=True)
        successes, errors = _split(results)

        assert len(successes) == 1
        assert len(errors) == 1 and isinstance(errors[0], ConflictError)
        assert await _count(
            sessions, Order, Order.listing_id == listing_id, Order.status == "accepted"
        ) == 1


# ===================================================================
# Settlement races
# ===================================================================


class TestSettlementRaces:

    async def test_duplicate_success_callbacks_settle_once(self, sessions, signed_callback):
        """The same success delivered twice at once completes the payment and notifies once."""
        seller_id, (buyer_id,), listing_id = await _seed(sessions)
        async with sessions() as db:
            order = await order_service.create_direct_order(db, listing_id, buyer_id)
            await order_service.update_order_status(db, order.id, seller_id, "accepted")
            payment = (
                await db.execute(select(Payment).where(Payment.order_id == order.id))
            ).scalar_one()
        payload = signed_callback(payment)

        async def _deliver():
            async with sessions() as db:
                return await payment_service.handle_callback(db, payment.id, dict(payload))

        results = await asyncio.gather(_deliver(), _deliver(), return_exceptions=True)
        successes, errors = _split(results)

        assert errors == []
        assert all(p.status == "completed" for p in successes)
        assert await _count(
            sessions, Notification,
            Notification.user_id == buyer_id, Notification.type == "payment_completed",
        ) == 1
        async with sessions() as db:
            assert (await db.get(Order, order.id)).payment_status == "paid"
