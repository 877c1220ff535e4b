from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from shortlink_app.config import settings


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LinkCreate(BaseModel):
    original_url: str = Field(..., max_length=2048, description="The URL to shorten")
    custom_code: Optional[str] = Field(None, description="Requested short code (3-50 alphanumerics)")
    password: Optional[str] = Field(None, min_length=1, max_length=72, description="Visitors must supply it to be redirected")
    webhook_url: Optional[str] = Field(None, max_length=2048, description="Receives a POST for every click")
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    campaign: Optional[str] = Field(None, max_length=100)
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value):
        return _as_utc(value)


class LinkUpdate(BaseModel):
    """Mutable link fields. Short code and owner can never change."""

    original_url: Optional[str] = Field(None, max_length=2048)
    # null removes protection or the webhook
    password: Optional[str] = Field(None, min_length=1, max_length=72)
    webhook_url: Optional[str] = Field(None, max_length=2048)
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    campaign: Optional[str] = Field(None, max_length=100)
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value):
        return _as_utc(value)


class LinkRecord(BaseModel):
    """Snapshot of a stored link, built from the SQLAlchemy row."""

    id: str
    short_code: str
    original_url: str
    owner_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    campaign: Optional[str] = None
    is_custom: bool = False
    is_active: bool = True
    click_count: int = 0
    webhook_url: Optional[str] = None
    password_hash: Optional[str] = Field(None, exclude=True, repr=False)
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def normalize_times(cls, value):
        return _as_utc(value)

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, value):
        return value or []

    @computed_field
    @property
    def short_url(self) -> str:
        return f"{settings.base_url}/{self.short_code}"

    @computed_field
    @property
    def password_protected(self) -> bool:
        return self.password_hash is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class CachedLink(BaseModel):
    """
    The part of a link the redirect path needs.

    This is what lives in the cache under ``link:<short_code>``; it is a
    snapshot, never the source of truth.
    """

    id: str
    short_code: str
    original_url: str
    owner_id: str
    title: Optional[str] = None
    expires_at: Optional[datetime] = None
    password_hash: Optional[str] = None
    webhook_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value):
        return _as_utc(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class LinkPreview(BaseModel):
    """Public view of a short code; hides the target of protected links."""

    short_code: str
    title: Optional[str] = None
    original_url: Optional[str] = None
    password_protected: bool = False
    expires_at: Optional[datetime] = None

    @classmethod
    def from_cached(cls, link: CachedLink) -> "LinkPreview":
        protected = link.password_hash is not None
        return cls(
            short_code=link.short_code,
            title=link.title,
            original_url=None if protected else link.original_url,
            password_protected=protected,
            expires_at=link.expires_at,
        )


class PasswordSubmission(BaseModel):
    password: str = Field(..., min_length=1, max_length=72)


class LinkPage(BaseModel):
    items: List[LinkRecord]
    total: int
    page: int
    page_size: int


class UserStats(BaseModel):
    owner_id: str
    total_links: int = 0
    active_links: int = 0
    total_clicks: int = 0
    campaign_links: int = 0


class ClientContext(BaseModel):
    """Request metadata captured by the HTTP layer for a redirect."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    country: Optional[str] = None
