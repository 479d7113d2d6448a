import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from gamemarket.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    """Marketplace member. Registration and credentials live in the auth service."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(10))  # 10-digit mobile, passed to the gateway as customer contact
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
