from .link import (
    CachedLink,
    ClientContext,
    LinkCreate,
    LinkPage,
    LinkPreview,
    LinkRecord,
    LinkUpdate,
    PasswordSubmission,
    UserStats,
)

__all__ = [
    "CachedLink",
    "ClientContext",
    "LinkCreate",
    "LinkPage",
    "LinkPreview",
    "LinkRecord",
    "LinkUpdate",
    "PasswordSubmission",
    "UserStats",
]
