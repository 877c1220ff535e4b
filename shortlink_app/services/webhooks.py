"""
Click webhooks.

A link may carry a webhook_url; every click on it is POSTed there as JSON.
Delivery runs out of band and is best effort:
- the redirect never waits for it
- a failed delivery is logged and not retried
- at most max_pending deliveries are in flight, further ones are dropped
"""

import asyncio
from typing import Any, Dict, Set

import requests
import structlog

from shortlink_app.queue.models import ClickEvent
from shortlink_app.schemas import CachedLink

logger = structlog.get_logger(__name__)

USER_AGENT = "Shortlink-Webhook/1.0"


def click_payload(link: CachedLink, event: ClickEvent) -> Dict[str, Any]:
    return {
        "event": "click",
        "link": {
            "id": link.id,
            "short_code": link.short_code,
            "original_url": link.original_url,
        },
        "click": {
            "event_id": event.event_id,
            "timestamp": event.timestamp.isoformat(),
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "referrer": event.referrer,
            "country": event.country,
            "is_bot": event.is_bot,
        },
    }


class WebhookNotifier:
    """Fire-and-forget HTTP notifications, one task per delivery."""

    def __init__(self, timeout: float = 5.0, max_pending: int = 100):
        """
        Args:
            timeout: HTTP timeout per delivery (seconds)
            max_pending: Deliveries allowed in flight before new ones are dropped
        """
        self.timeout = timeout
        self.max_pending = max_pending
        self._tasks: Set[asyncio.Task] = set()

        self.sent = 0
        self.failed = 0
        self.dropped = 0

    def notify(self, url: str, payload: Dict[str, Any]) -> bool:
        """
        Schedule a delivery. Must be called from a running event loop.

        Returns:
            True if scheduled, False if dropped
        """
        if len(self._tasks) >= self.max_pending:
            self.dropped += 1
            logger.warning("webhook dropped", reason="too_many_pending", url=url, dropped=self.dropped)
            return False

        task = asyncio.create_task(self._deliver(url, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def _post(self, url: str, payload: Dict[str, Any]) -> requests.Response:
        return requests.post(
            url,
            json=payload,
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
        )

    async def _deliver(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            response = await asyncio.to_thread(self._post, url, payload)
            response.raise_for_status()
        except requests.RequestException as e:
            self.failed += 1
            logger.warning("webhook failed", url=url, error=str(e))
            return

        self.sent += 1
        logger.debug("webhook delivered", url=url, status=response.status_code)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def close(self, timeout: float = 5.0) -> None:
        """Wait for deliveries in flight; whatever is left after timeout is cancelled."""
        if not self._tasks:
            return

        _, unfinished = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in unfinished:
            task.cancel()
        if unfinished:
            logger.warning("webhooks cancelled on shutdown", pending=len(unfinished))
