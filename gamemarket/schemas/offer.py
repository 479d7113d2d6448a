from datetime import datetime

from pydantic import BaseModel, Field


class OfferCreateRequest(BaseModel):
    listing_id: str
    amount: int = Field(..., description="Offer in whole rupees; must be below the asking price")
    message: str = Field(default="", max_length=500)


class OfferRespondRequest(BaseModel):
    status: str = Field(..., description="accepted or rejected")
    response_message: str = Field(default="", max_length=500)


class OfferResponse(BaseModel):
    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: int
    message: str | None = ""
    status: str
    response_message: str | None = ""
    created_at: datetime
    expires_at: datetime
    responded_at: datetime | None = None

    model_config = {"from_attributes": True}


class OfferRespondResponse(BaseModel):
    offer: OfferResponse
    order_id: str | None = None


class OfferListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    offers: list[OfferResponse]
