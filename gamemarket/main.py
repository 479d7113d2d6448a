import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from gamemarket.config import settings
from gamemarket.core.async_tasks import cancel_background_tasks, fire_and_forget
from gamemarket.database import async_session, dispose_engine, init_db
from gamemarket.models import *  # noqa: F403

APP_VERSION = "0.1.0"
logger = logging.getLogger(__name__)


async def run_expiry_sweep() -> dict[str, int]:
    """One pass over overdue offers and lapsed payment links."""
    from gamemarket.services import offer_service, payment_service

    async with async_session() as db:
        offers = await offer_service.expire_stale_offers(db)
        payments = await payment_service.expire_stale_payments(db)
    return {"offers": offers, "payments": payments}


async def _expiry_sweep_loop() -> None:
    await asyncio.sleep(30)  # let startup settle before the first pass
    while True:
        try:
            await run_expiry_sweep()
        except Exception:
            logger.exception("Expiry sweep failed")
        await asyncio.sleep(settings.expiry_sweep_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db()
    if settings.expiry_sweep_enabled:
        fire_and_forget(_expiry_sweep_loop(), task_name="expiry_sweep")

    yield

    await cancel_background_tasks()
    await dispose_engine()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=(), usb=()"
        return response


def create_app() -> FastAPI:
    app = FastAPI(
        title="Game Account Marketplace",
        description="Offers, orders and Paytm payments for peer-to-peer game account trades",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    from gamemarket.api import API_PREFIX, API_ROUTERS

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "name": "Game Account Marketplace",
            "version": APP_VERSION,
            "docs": "/docs",
            "health": f"{API_PREFIX}/health",
        }

    return app


app = create_app()
