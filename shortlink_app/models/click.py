from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from shortlink_app.database.connection import Base


class Click(Base):
    """
    One recorded click (append-only).

    link_id is not a foreign key: deleting a link must never
    wait on, or fail because of, click rows that are still being flushed.
    """
    __tablename__ = "clicks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), nullable=False, index=True)
    link_id = Column(String(36), nullable=False, index=True)
    short_code = Column(String(50), nullable=False)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    country = Column(String(8), nullable=True)
    device_type = Column(String(20), nullable=True)
    browser = Column(String(50), nullable=True)
    os = Column(String(50), nullable=True)
    is_bot = Column(Boolean, nullable=False, default=False)

    # Ingestion time of the event, not the time of the flush
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_clicks_link_timestamp", "link_id", "timestamp"),
    )
