"""
Click event enrichment from request metadata.

User agent classification is keyword based: good enough for device/browser
breakdowns, not meant as a full user agent parser.
"""

from typing import Optional, Tuple

from shortlink_app.queue.models import ClickEvent
from shortlink_app.schemas import CachedLink, ClientContext

BOT_PATTERNS = (
    "bot", "crawler", "spider", "scraper",
    "facebookexternalhit", "whatsapp", "telegram",
    "curl/", "wget/", "python-requests",
)

# Order matters: Edge and Opera also claim to be Chrome, Chrome claims Safari
BROWSERS = (
    ("edg", "Edge"),
    ("opr/", "Opera"),
    ("opera", "Opera"),
    ("firefox", "Firefox"),
    ("fxios", "Firefox"),
    ("crios", "Chrome"),
    ("chrome", "Chrome"),
    ("safari", "Safari"),
    ("msie", "Internet Explorer"),
    ("trident", "Internet Explorer"),
)

OPERATING_SYSTEMS = (
    ("windows", "Windows"),
    ("android", "Android"),
    ("iphone", "iOS"),
    ("ipad", "iOS"),
    ("mac os", "macOS"),
    ("cros", "ChromeOS"),
    ("linux", "Linux"),
)


def is_bot(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    ua = user_agent.lower()
    return any(pattern in ua for pattern in BOT_PATTERNS)


def _first_match(ua: str, table) -> Optional[str]:
    for needle, name in table:
        if needle in ua:
            return name
    return None


def parse_user_agent(user_agent: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Return (device_type, browser, os); all None without a user agent."""
    if not user_agent:
        return None, None, None

    ua = user_agent.lower()
    if is_bot(user_agent):
        device_type = "bot"
    elif "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        device_type = "tablet"
    elif "mobile" in ua or "iphone" in ua:
        device_type = "mobile"
    else:
        device_type = "desktop"

    return device_type, _first_match(ua, BROWSERS), _first_match(ua, OPERATING_SYSTEMS)


def build_click_event(link: CachedLink, context: ClientContext) -> ClickEvent:
    """Create the immutable click event; the timestamp is taken now."""
    device_type, browser, os_name = parse_user_agent(context.user_agent)
    return ClickEvent(
        link_id=link.id,
        short_code=link.short_code,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        referrer=context.referrer,
        country=context.country.strip().upper()[:8] if context.country else None,
        device_type=device_type,
        browser=browser,
        os=os_name,
        is_bot=is_bot(context.user_agent),
    )
