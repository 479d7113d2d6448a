import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from gamemarket.database import Base

ORDER_STATUSES = ("pending", "accepted", "rejected", "completed", "cancelled", "disputed")


def utcnow():
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # whole rupees
    type = Column(String(20), nullable=False, default="direct_purchase")
    related_offer_id = Column(String(36), ForeignKey("offers.id"))  # set iff type == accepted_offer

    # State machine: pending -> accepted -> completed
    #                pending -> rejected
    #                pending | accepted -> cancelled
    #                any -> disputed (administrative)
    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")

    # Credentials payload, written only once payment_status == "paid"
    account_details_json = Column(Text)
    account_delivered = Column(Boolean, nullable=False, default=False)
    account_delivered_at = Column(DateTime(timezone=True))

    buyer_notes = Column(Text, default="")
    seller_notes = Column(Text, default="")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    accepted_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_orders_buyer", "buyer_id"),
        Index("idx_orders_seller", "seller_id"),
        Index("idx_orders_listing", "listing_id"),
        Index("idx_orders_status", "status"),
    )

    @property
    def account_details(self) -> dict | None:
        if not self.account_details_json:
            return None
        return json.loads(self.account_details_json)

    @property
    def is_terminal(self) -> bool:
        return self.status in {"completed", "rejected", "cancelled"}
