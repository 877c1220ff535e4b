import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from shortlink_app.database.connection import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Link(Base):
    """
    Short code -> target mapping (transactional data).

    Click events live in their own table; only the aggregate click_count is
    kept here, and it is only ever changed by atomic increments.
    """
    __tablename__ = "links"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # unique=True is what makes code generation safe under concurrency
    short_code = Column(String(50), unique=True, nullable=False, index=True)
    original_url = Column(Text, nullable=False)
    owner_id = Column(String(64), nullable=False, index=True)

    title = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    campaign = Column(String(100), nullable=True, index=True)

    is_custom = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    click_count = Column(Integer, nullable=False, default=0)

    # bcrypt hash; NULL means the link is public
    password_hash = Column(String(128), nullable=True)
    webhook_url = Column(Text, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Link {self.short_code} -> {self.original_url[:50]}>"
