import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.config import settings
from gamemarket.database import get_db
from gamemarket.models.listing import Listing
from gamemarket.models.order import Order
from gamemarket.schemas.common import HealthResponse
from gamemarket.services.paytm_service import paytm_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    listings = (await db.execute(select(func.count(Listing.id)))).scalar() or 0
    open_orders = (
        await db.execute(
            select(func.count(Order.id)).where(Order.status.in_(("pending", "accepted")))
        )
    ).scalar() or 0

    return HealthResponse(
        status="healthy",
        version=_VERSION,
        environment=settings.environment,
        gateway_mode="simulated" if paytm_gateway.simulated else "live",
        listings_count=listings,
        open_orders_count=open_orders,
    )


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness probe: verifies DB connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception:
        logger.exception("Readiness check failed, database unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "unavailable"},
        )
