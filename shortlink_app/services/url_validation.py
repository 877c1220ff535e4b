"""
Validation of user supplied URLs and short codes.

Both run before anything touches the store, so a rejected request never
leaves a row or a reserved code behind.
"""

import re

from pydantic import HttpUrl, TypeAdapter, ValidationError

from shortlink_app.exceptions import InvalidCodeFormat, InvalidUrl

MAX_URL_LENGTH = 2048
SHORT_CODE_PATTERN = re.compile(r"^[a-zA-Z0-9]{3,50}$")
DANGEROUS_SCHEMES = ("javascript:", "data:", "vbscript:", "file:")
ALLOWED_SCHEMES = ("http", "https")
# Paths served by the app itself; a link under one of them could never resolve
RESERVED_CODES = frozenset({"api", "docs", "redoc", "openapi", "health", "static"})

_http_url = TypeAdapter(HttpUrl)
# Browsers ignore ASCII control characters and whitespace inside a scheme
_IGNORED_IN_SCHEME = re.compile(r"[\x00-\x20\x7f]")


def validate_original_url(url: str) -> str:
    """
    Check that url is an absolute http(s) URL and return it unchanged.

    Raises:
        InvalidUrl: not http(s), malformed, too long, or a dangerous scheme
            (also when disguised with case or embedded control characters)
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrl()
    if len(url) > MAX_URL_LENGTH:
        raise InvalidUrl(f"URL must be at most {MAX_URL_LENGTH} characters")

    collapsed = _IGNORED_IN_SCHEME.sub("", url).lower()
    if collapsed.startswith(DANGEROUS_SCHEMES):
        raise InvalidUrl("URL scheme is not allowed")

    try:
        parsed = _http_url.validate_python(url.strip())
    except ValidationError as e:
        raise InvalidUrl() from e

    if parsed.scheme not in ALLOWED_SCHEMES or not parsed.host:
        raise InvalidUrl()

    return url.strip()


def is_reserved_code(code: str) -> bool:
    return code.lower() in RESERVED_CODES


def validate_short_code(code: str) -> str:
    """Raises InvalidCodeFormat unless code is 3-50 ASCII alphanumerics and not reserved."""
    if not isinstance(code, str) or not SHORT_CODE_PATTERN.fullmatch(code):
        raise InvalidCodeFormat()
    if is_reserved_code(code):
        raise InvalidCodeFormat(f"Short code '{code}' is reserved")
    return code
