"""
Error taxonomy for the link core.

Everything raised to callers derives from LinkError and carries a stable
``code`` plus a message that is safe to show to the requester.
"""

from typing import Optional


class LinkError(Exception):
    """Base class for errors returned to callers."""

    code = "link_error"
    retryable = False

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return "Link operation failed"


class InvalidUrl(LinkError):
    code = "invalid_url"

    def default_message(self) -> str:
        return "URL must be an absolute http(s) URL"


class InvalidCodeFormat(LinkError):
    code = "invalid_code_format"

    def default_message(self) -> str:
        return "Short code must be 3-50 alphanumeric characters"


class CodeAlreadyTaken(LinkError):
    code = "code_already_taken"

    def __init__(self, short_code: str):
        self.short_code = short_code
        super().__init__(f"Short code '{short_code}' is already taken")


class CodeSpaceExhausted(LinkError):
    code = "code_space_exhausted"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not generate a unique short code after {attempts} attempts")


class LinkNotFound(LinkError):
    code = "link_not_found"

    def default_message(self) -> str:
        return "Link not found"


class LinkInactive(LinkError):
    code = "link_inactive"

    def default_message(self) -> str:
        return "Link is no longer active"


class Forbidden(LinkError):
    code = "forbidden"

    def default_message(self) -> str:
        return "Link belongs to another owner"


class PasswordRequired(LinkError):
    code = "password_required"

    def default_message(self) -> str:
        return "This link is password protected"


class InvalidPassword(LinkError):
    code = "invalid_password"

    def default_message(self) -> str:
        return "Invalid password"


class StoreUnavailable(LinkError):
    code = "store_unavailable"
    retryable = True

    def default_message(self) -> str:
        return "Link store is temporarily unavailable"


class CacheDegraded(Exception):
    """
    Raised inside cache strategies when the backend fails or times out.

    Never leaves the cache layer: the public cache methods turn it into a
    miss or a no-op.
    """
