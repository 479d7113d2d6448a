import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from gamemarket.config import settings
from gamemarket.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def _default_expiry():
    return utcnow() + timedelta(days=settings.offer_ttl_days)


class Offer(Base):
    __tablename__ = "offers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # whole rupees, 0 < amount < listing.price
    message = Column(Text, default="")

    # State machine: pending -> accepted | rejected | cancelled | expired
    status = Column(String(20), nullable=False, default="pending")
    response_message = Column(Text, default="")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, default=_default_expiry)
    responded_at = Column(DateTime(timezone=True))

    __table_args__ = (
        # One live negotiation per buyer per listing, enforced by the database.
        Index(
            "uq_offers_pending_listing_buyer",
            "listing_id",
            "buyer_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_offers_buyer", "buyer_id"),
        Index("idx_offers_seller", "seller_id"),
        Index("idx_offers_expires", "expires_at"),
    )
