from datetime import datetime

from pydantic import BaseModel


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    related_listing_id: str | None = None
    related_offer_id: str | None = None
    related_order_id: str | None = None
    related_payment_id: str | None = None
    action_url: str | None = None
    is_read: bool
    created_at: datetime
    read_at: datetime | None = None

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    total: int
    unread_count: int
    page: int
    page_size: int
    notifications: list[NotificationResponse]


class MarkAllReadResponse(BaseModel):
    updated: int
