from datetime import datetime

from pydantic import BaseModel


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    transaction_id: str
    payer_user_id: str
    payee_user_id: str
    amount: int
    currency: str
    payment_method: str
    status: str
    gateway_order_id: str | None = None
    gateway_transaction_token: str | None = None
    gateway_payment_link: str | None = None
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None
    initiated_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    expires_at: datetime

    model_config = {"from_attributes": True}


class PaymentLinkRequest(BaseModel):
    order_id: str


class PaymentLinkResponse(BaseModel):
    payment_id: str
    payment_link: str | None = None
    amount: int
    expires_at: datetime
    message: str


class PaymentStatusResponse(BaseModel):
    payment_id: str
    status: str
    amount: int
    completed_at: datetime | None = None
    failure_reason: str | None = None


class PaymentListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    payments: list[PaymentResponse]
