"""Notification emitter and the polling read API behind the client's bell icon.

Emission is a side channel: ``notify`` is always called after the primary
state transition has been committed, and a failure to persist a notice is
logged and swallowed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.core.exceptions import ForbiddenError, NotificationNotFoundError
from gamemarket.models.notification import Notification

logger = logging.getLogger(__name__)

_TITLE_MAX = 100
_MESSAGE_MAX = 500


class NotificationType(str, enum.Enum):
    OFFER_RECEIVED = "offer_received"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    OFFER_EXPIRED = "offer_expired"
    PURCHASE_REQUEST = "purchase_request"
    PURCHASE_ACCEPTED = "purchase_accepted"
    PURCHASE_REJECTED = "purchase_rejected"
    ACCOUNT_SOLD = "account_sold"
    PAYMENT_LINK_CREATED = "payment_link_created"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    ACCOUNT_DELIVERED = "account_delivered"
    GENERAL = "general"


_OFFER_KINDS = frozenset({
    NotificationType.OFFER_RECEIVED,
    NotificationType.OFFER_ACCEPTED,
    NotificationType.OFFER_REJECTED,
    NotificationType.OFFER_EXPIRED,
})
_ORDER_KINDS = frozenset({
    NotificationType.PURCHASE_REQUEST,
    NotificationType.PURCHASE_ACCEPTED,
    NotificationType.PURCHASE_REJECTED,
    NotificationType.ACCOUNT_SOLD,
    NotificationType.ACCOUNT_DELIVERED,
    NotificationType.GENERAL,
})
_PAYMENT_KINDS = frozenset({
    NotificationType.PAYMENT_LINK_CREATED,
    NotificationType.PAYMENT_COMPLETED,
    NotificationType.PAYMENT_RECEIVED,
    NotificationType.PAYMENT_FAILED,
})


def format_inr(amount: int) -> str:
    return f"₹{amount:,}"


@dataclass(frozen=True)
class OfferNotice:
    """Negotiation events. Only an acceptance also points at the resulting order."""

    kind: NotificationType
    user_id: str
    title: str
    message: str
    listing_id: str
    offer_id: str
    order_id: str | None = None

    def __post_init__(self):
        if self.kind not in _OFFER_KINDS:
            raise ValueError(f"{self.kind} is not an offer notification")
        if self.order_id and self.kind is not NotificationType.OFFER_ACCEPTED:
            raise ValueError("only accepted offers reference an order")

    def to_model(self) -> Notification:
        if self.order_id:
            action_url = f"/orders/{self.order_id}"
        elif self.kind is NotificationType.OFFER_REJECTED:
            action_url = f"/products/{self.listing_id}"
        else:
            action_url = "/dashboard?tab=notifications"
        return _row(self, related_listing_id=self.listing_id, related_offer_id=self.offer_id,
                    related_order_id=self.order_id, action_url=action_url)


@dataclass(frozen=True)
class OrderNotice:
    kind: NotificationType
    user_id: str
    title: str
    message: str
    listing_id: str
    order_id: str

    def __post_init__(self):
        if self.kind not in _ORDER_KINDS:
            raise ValueError(f"{self.kind} is not an order notification")

    def to_model(self) -> Notification:
        if self.kind is NotificationType.PURCHASE_REJECTED:
            action_url = f"/products/{self.listing_id}"
        else:
            action_url = f"/orders/{self.order_id}"
        return _row(self, related_listing_id=self.listing_id, related_order_id=self.order_id,
                    action_url=action_url)


@dataclass(frozen=True)
class PaymentNotice:
    kind: NotificationType
    user_id: str
    title: str
    message: str
    listing_id: str
    order_id: str
    payment_id: str | None = None

    def __post_init__(self):
        if self.kind not in _PAYMENT_KINDS:
            raise ValueError(f"{self.kind} is not a payment notification")

    def to_model(self) -> Notification:
        if self.payment_id and self.kind in {
            NotificationType.PAYMENT_LINK_CREATED,
            NotificationType.PAYMENT_FAILED,
        }:
            action_url = f"/payment/{self.payment_id}"
        else:
            action_url = f"/orders/{self.order_id}"
        return _row(self, related_listing_id=self.listing_id, related_order_id=self.order_id,
                    related_payment_id=self.payment_id, action_url=action_url)


@dataclass(frozen=True)
class GeneralNotice:
    user_id: str
    title: str
    message: str
    kind: NotificationType = NotificationType.GENERAL

    def __post_init__(self):
        if self.kind is not NotificationType.GENERAL:
            raise ValueError("general notices cannot carry a specific kind")

    def to_model(self) -> Notification:
        return _row(self, action_url="/dashboard?tab=notifications")


Notice = OfferNotice | OrderNotice | PaymentNotice | GeneralNotice


def _row(notice, **related) -> Notification:
    return Notification(
        user_id=notice.user_id,
        type=notice.kind.value,
        title=notice.title[:_TITLE_MAX],
        message=notice.message[:_MESSAGE_MAX],
        **related,
    )


async def notify(db: AsyncSession, *notices: Notice) -> None:
    """Persist notices for polling clients. Never raises."""
    if not notices:
        return
    try:
        for notice in notices:
            db.add(notice.to_model())
        await db.commit()
    except Exception:
        logger.exception(
            "Failed to persist %d notification(s): %s",
            len(notices),
            ", ".join(n.kind.value for n in notices),
        )
        try:
            await db.rollback()
        except Exception:
            logger.exception("Rollback after notification failure also failed")


# ---------------------------------------------------------------------------
# Polling read API
# ---------------------------------------------------------------------------

async def list_notifications(
    db: AsyncSession,
    user_id: str,
    unread_only: bool = False,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Notification], int, int]:
    """Return (page of notifications, total matching, unread count)."""
    cond = Notification.user_id == user_id
    query = select(Notification).where(cond)
    count_query = select(func.count(Notification.id)).where(cond)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
        count_query = count_query.where(Notification.is_read.is_(False))

    total = (await db.execute(count_query)).scalar() or 0
    unread = (
        await db.execute(
            select(func.count(Notification.id)).where(cond, Notification.is_read.is_(False))
        )
    ).scalar() or 0

    query = query.order_by(Notification.created_at.desc())
    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return list(result.scalars().all()), total, unread


async def mark_read(db: AsyncSession, notification_id: str, user_id: str) -> Notification:
    notification = await _get_owned(db, notification_id, user_id)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        await db.commit()
        await db.refresh(notification)
    return notification


async def mark_all_read(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def delete_notification(db: AsyncSession, notification_id: str, user_id: str) -> None:
    await _get_owned(db, notification_id, user_id)
    await db.execute(delete(Notification).where(Notification.id == notification_id))
    await db.commit()


async def _get_owned(db: AsyncSession, notification_id: str, user_id: str) -> Notification:
    result = await db.execute(select(Notification).where(Notification.id == notification_id))
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotificationNotFoundError(notification_id)
    if notification.user_id != user_id:
        raise ForbiddenError("Not authorized to access this notification")
    return notification
