"""Shared test fixtures for the trade lifecycle test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions).
"""

import uuid

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gamemarket.database import Base, get_db
from gamemarket.main import app
from gamemarket.models import *  # noqa: ensure all models are loaded for create_all


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
async def client():
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header from a JWT."""
    def _build(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}
    return _build


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def make_user(db: AsyncSession):
    """Factory fixture: create a User and return (user, jwt_token)."""
    from gamemarket.core.auth import create_user_token
    from gamemarket.models.user import User

    async def _make(name: str = None, phone: str = "9876543210"):
        name = name or f"player-{_new_id()[:8]}"
        user = User(
            id=_new_id(),
            name=name,
            email=f"{name}@test.com",
            phone=phone,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user, create_user_token(user.id, user.email)

    return _make


@pytest.fixture
def make_listing(db: AsyncSession):
    """Factory fixture: create a Listing for a seller."""
    from gamemarket.models.listing import Listing

    async def _make(seller_id: str, price: int = 1000, sold: bool = False, **kwargs):
        listing = Listing(
            id=_new_id(),
            seller_id=seller_id,
            title=kwargs.get("title", f"Level 80 account {_new_id()[:6]}"),
            price=price,
            sold=sold,
        )
        db.add(listing)
        await db.commit()
        await db.refresh(listing)
        return listing

    return _make


@pytest.fixture
def make_trade(make_user, make_listing):
    """Factory fixture: a seller, a buyer and a listing. Returns (seller, buyer, listing)."""

    async def _make(price: int = 1000):
        seller, _ = await make_user()
        buyer, _ = await make_user()
        listing = await make_listing(seller.id, price=price)
        return seller, buyer, listing

    return _make


@pytest.fixture
def fetch():
    """Fresh read of a row, bypassing whatever the session already holds."""

    async def _fetch(db: AsyncSession, model, obj_id: str):
        result = await db.execute(
            select(model).where(model.id == obj_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    return _fetch


# ---------------------------------------------------------------------------
# Gateway helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def failing_gateway(monkeypatch):
    """Swap in a gateway whose session creation always times out."""
    from gamemarket.services import paytm_service

    class _TimingOutGateway(paytm_service.PaytmGateway):
        async def create_payment_order(self, **kwargs):
            raise paytm_service.PaytmError("Payment gateway timed out")

    stub = _TimingOutGateway(merchant_key=paytm_service.paytm_gateway.merchant_key)
    monkeypatch.setattr(paytm_service, "paytm_gateway", stub)
    return stub


@pytest.fixture
def signed_callback():
    """Build a gateway callback for a payment, signed with the configured merchant key."""
    from gamemarket.services import paytm_service

    def _build(payment, status: str = "TXN_SUCCESS", **overrides) -> dict:
        success = status == "TXN_SUCCESS"
        params = {
            "ORDERID": payment.gateway_order_id,
            "MID": "SIMULATED",
            "TXNID": f"T{uuid.uuid4().hex[:16]}",
            "BANKTXNID": "777001234567",
            "TXNAMOUNT": f"{payment.amount}.00",
            "STATUS": status,
            "RESPCODE": "01" if success else "227",
            "RESPMSG": "Txn Success" if success else "Insufficient balance",
        }
        params.update(overrides)
        params["CHECKSUMHASH"] = paytm_service.paytm_gateway.generate_checksum(params)
        return params

    return _build
