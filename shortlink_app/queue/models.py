"""
Data models for queue messages.
"""

import uuid
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class ClickEvent(BaseModel):
    """
    Event model for click tracking.

    Built on the redirect path and published to the queue; the worker turns
    it into a row in the clicks table. Events are immutable once created.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "event_id": "6f1c1f0e-8d4f-4a4e-9a55-0c8f3b6f9b21",
                "link_id": "0b7a2f9e-3c1d-4e57-a0a4-5d2b8c1e7f33",
                "short_code": "ex1",
                "timestamp": "2025-10-29T10:30:00+00:00",
                "ip_address": "192.168.1.1",
                "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0",
                "referrer": "https://twitter.com",
                "country": "US",
                "device_type": "desktop",
                "browser": "Chrome",
                "os": "Windows",
                "is_bot": False,
            }
        },
    )

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    link_id: str = Field(..., description="Id of the link that was clicked")
    short_code: str = Field(..., description="The short code that was accessed")
    # Set at ingestion, never at flush
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Request metadata
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None

    # Derived metadata
    country: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    is_bot: bool = False


class Delivery(NamedTuple):
    """A consumed message: the queue's id for acking plus the event."""

    message_id: str
    event: ClickEvent
