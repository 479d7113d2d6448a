import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String

from gamemarket.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Listing(Base):
    """A game account for sale.

    Only the columns the offer/order/payment lifecycle reads are mapped here.
    ``sold`` is flipped exclusively through ``listing_service``.
    """

    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    title = Column(String(255), nullable=False)
    price = Column(Integer, nullable=False)  # whole rupees
    sold = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_listings_seller", "seller_id"),
        Index("idx_listings_sold", "sold"),
    )
