"""API router registry used by the app factory.

Route module imports and inclusion order live here so ``gamemarket.main``
stays focused on startup wiring.
"""

from __future__ import annotations

from fastapi import APIRouter

from . import health, notifications, offers, orders, payments

API_PREFIX = "/api/v1"

API_ROUTERS: tuple[APIRouter, ...] = (
    health.router,
    offers.router,
    orders.router,
    payments.router,
    notifications.router,
)

__all__ = ["API_PREFIX", "API_ROUTERS"]
