from datetime import datetime

from pydantic import BaseModel, Field


class AccountDetails(BaseModel):
    game_id: str = ""
    email: str = ""
    password: str = ""
    additional_info: str = ""


class DirectOrderRequest(BaseModel):
    listing_id: str
    buyer_notes: str = Field(default="", max_length=1000)


class OrderStatusUpdateRequest(BaseModel):
    status: str
    seller_notes: str | None = Field(default=None, max_length=1000)
    account_details: AccountDetails | None = None


class OrderResponse(BaseModel):
    """Order summary. Never carries the delivered credentials."""

    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: int
    type: str
    related_offer_id: str | None = None
    status: str
    payment_status: str
    account_delivered: bool = False
    account_delivered_at: datetime | None = None
    buyer_notes: str | None = ""
    seller_notes: str | None = ""
    created_at: datetime
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}


class OrderDetailResponse(OrderResponse):
    account_details: AccountDetails | None = None


class OrderListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    orders: list[OrderResponse]
