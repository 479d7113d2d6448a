import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from gamemarket.config import settings
from gamemarket.database import Base

LIVE_PAYMENT_STATES = ("pending", "initiated", "completed")
OPEN_PAYMENT_STATES = ("pending", "initiated")


def utcnow():
    return datetime.now(timezone.utc)


def _default_expiry():
    return utcnow() + timedelta(hours=settings.payment_link_ttl_hours)


class Payment(Base):
    """A hosted-checkout session at the gateway and its reconciled outcome."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    transaction_id = Column(String(100), unique=True, nullable=False)
    payer_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    payee_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # whole rupees
    currency = Column(String(3), nullable=False, default="INR")
    payment_method = Column(String(20), nullable=False, default="paytm")

    # State machine: pending -> initiated -> completed | failed
    #                pending -> failed (gateway rejected / timed out)
    #                initiated -> cancelled (link expired or order cancelled)
    status = Column(String(20), nullable=False, default="pending")

    gateway_order_id = Column(String(100), unique=True)  # NULL until the gateway acknowledges
    gateway_transaction_token = Column(String(255))
    gateway_payment_link = Column(Text)
    gateway_transaction_id = Column(String(100))
    gateway_bank_txn_id = Column(String(100))
    gateway_response_json = Column(Text, default="{}")  # verbatim gateway payloads, audit only
    failure_reason = Column(Text)

    initiated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True), nullable=False, default=_default_expiry)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    user_agent = Column(String(255))
    ip_address = Column(String(45))
    notes = Column(Text, default="")

    __table_args__ = (
        # At most one live payment per order.
        Index(
            "uq_payments_live_order",
            "order_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'initiated', 'completed')"),
            postgresql_where=text("status IN ('pending', 'initiated', 'completed')"),
        ),
        Index("idx_payments_order", "order_id"),
        Index("idx_payments_payer_status", "payer_user_id", "status"),
        Index("idx_payments_payee_status", "payee_user_id", "status"),
        Index("idx_payments_status_expires", "status", "expires_at"),
    )

    @property
    def gateway_response(self) -> dict:
        return json.loads(self.gateway_response_json or "{}")
