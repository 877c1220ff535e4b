"""
Link service: every business rule of the link core lives here.

Collaborators are injected (store, cache, click recorder, code generator);
the service never builds its own infrastructure.

Read path (hot):
    cache.get_or_set("link:<code>") -> on miss one store lookup -> cache fill
Write paths:
    store write first, then synchronous cache invalidation, never an
    overwrite, so the next read goes to the store
"""

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import structlog
from pydantic import ValidationError

from shortlink_app.cache.strategies import CacheStrategy
from shortlink_app.exceptions import (
    Forbidden,
    InvalidPassword,
    InvalidUrl,
    LinkInactive,
    LinkNotFound,
    PasswordRequired,
    StoreUnavailable,
)
from shortlink_app.hit_processor.click_recorder import ClickRecorder
from shortlink_app.schemas import (
    CachedLink,
    ClientContext,
    LinkCreate,
    LinkPage,
    LinkRecord,
    LinkUpdate,
    UserStats,
)
from shortlink_app.services.client_context import build_click_event
from shortlink_app.services.code_generator import CodeGenerator
from shortlink_app.services.passwords import hash_password, verify_password
from shortlink_app.services.url_validation import SHORT_CODE_PATTERN, validate_original_url
from shortlink_app.services.webhooks import WebhookNotifier, click_payload
from shortlink_app.storage.link_store import LinkStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CACHE_PREFIX = "link:"
MAX_PAGE_SIZE = 100
WARM_BATCH = 500


def cache_key(short_code: str) -> str:
    return f"{CACHE_PREFIX}{short_code}"


class LinkService:
    """
    Link Service with dependency injection for store, cache and recorder.

    - Cache is best effort: the service is correct with a NullCache
    - Store reads are retried with backoff; writes are not
    - Clicks are handed to the recorder and never awaited
    """

    def __init__(
        self,
        link_store: LinkStore,
        cache: CacheStrategy,
        recorder: ClickRecorder,
        code_generator: CodeGenerator,
        cache_ttl: int = 3600,
        read_retries: int = 3,
        read_backoff: float = 0.05,
        invalidate_retries: int = 3,
        webhooks: Optional[WebhookNotifier] = None,
        password_rounds: int = 12,
    ):
        """
        Args:
            link_store: Authoritative link storage
            cache: Cache strategy in front of the store
            recorder: Click recorder for process_click
            code_generator: Produces and reserves short codes
            cache_ttl: Lifetime of cached links (seconds)
            read_retries: Extra attempts for store reads on StoreUnavailable
            read_backoff: First retry delay (seconds), doubled per attempt
            invalidate_retries: Extra attempts for a failed cache delete
            webhooks: Notifier for links with a webhook_url (None disables webhooks)
            password_rounds: bcrypt cost for link passwords
        """
        self.link_store = link_store
        self.cache = cache
        self.recorder = recorder
        self.code_generator = code_generator
        self.cache_ttl = cache_ttl
        self.read_retries = read_retries
        self.read_backoff = read_backoff
        self.invalidate_retries = invalidate_retries
        self.webhooks = webhooks
        self.password_rounds = password_rounds

    async def _read(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a store read, retrying StoreUnavailable with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await call()
            except StoreUnavailable:
                if attempt >= self.read_retries:
                    raise
                delay = self.read_backoff * 2 ** attempt
                attempt += 1
                logger.warning("store read retry", operation=operation, attempt=attempt, delay=delay)
                await asyncio.sleep(delay)

    async def _invalidate(self, short_code: str) -> None:
        """Delete the cache entry, retrying until the cache confirms it."""
        key = cache_key(short_code)
        for attempt in range(self.invalidate_retries + 1):
            if await self.cache.delete(key):
                return
            await asyncio.sleep(self.read_backoff * 2 ** attempt)
        # Entry may outlive the edit until its TTL runs out
        logger.error("cache invalidation failed", short_code=short_code, attempts=self.invalidate_retries + 1)

    @staticmethod
    def _snapshot(link: LinkRecord) -> str:
        return CachedLink.model_validate(link).model_dump_json()

    async def _load_for_resolve(self, short_code: str) -> str:
        record = await self._read(
            "get_by_short_code", lambda: self.link_store.get_by_short_code(short_code)
        )
        if record is None:
            raise LinkNotFound()
        if not record.is_active:
            raise LinkInactive()
        return self._snapshot(record)

    async def _owned_active_link(self, link_id: str, owner_id: str) -> LinkRecord:
        link = await self.link_store.get_by_id(link_id)
        if link is None:
            raise LinkNotFound()
        if link.owner_id != owner_id:
            raise Forbidden()
        if not link.is_active:
            raise LinkInactive()
        return link

    async def create_link(self, owner_id: str, data: LinkCreate) -> LinkRecord:
        """
        Create a link and warm the cache with it.

        Raises:
            InvalidUrl, InvalidCodeFormat, CodeAlreadyTaken,
            CodeSpaceExhausted, StoreUnavailable
        """
        original_url = validate_original_url(data.original_url)
        webhook_url = validate_original_url(data.webhook_url) if data.webhook_url is not None else None
        password_hash = await self._hash(data.password) if data.password is not None else None

        async def insert(short_code: str, is_custom: bool) -> LinkRecord:
            return await self.link_store.insert({
                "short_code": short_code,
                "original_url": original_url,
                "owner_id": owner_id,
                "title": data.title,
                "description": data.description,
                "tags": list(data.tags),
                "campaign": data.campaign,
                "is_custom": is_custom,
                "expires_at": data.expires_at,
                "password_hash": password_hash,
                "webhook_url": webhook_url,
            })

        link = await self.code_generator.generate(insert, custom_code=data.custom_code)
        await self.cache.set(cache_key(link.short_code), self._snapshot(link), ttl=self.cache_ttl)

        logger.info("link created", short_code=link.short_code, link_id=link.id, is_custom=link.is_custom)
        return link

    async def get_link_by_short_code(self, short_code: str) -> CachedLink:
        """
        Cache-first lookup of the redirect projection.

        Raises:
            LinkNotFound: no such code
            LinkInactive: soft deleted or expired
            StoreUnavailable: cache miss and the store stayed unreachable
        """
        if not SHORT_CODE_PATTERN.fullmatch(short_code or ""):
            raise LinkNotFound()

        key = cache_key(short_code)
        raw = await self.cache.get_or_set(key, lambda: self._load_for_resolve(short_code), ttl=self.cache_ttl)
        try:
            link = CachedLink.model_validate_json(raw)
        except ValidationError:
            logger.warning("corrupt cache entry replaced", short_code=short_code)
            await self.cache.delete(key)
            raw = await self._load_for_resolve(short_code)
            await self.cache.set(key, raw, ttl=self.cache_ttl)
            link = CachedLink.model_validate_json(raw)

        if link.is_expired():
            raise LinkInactive("Link has expired")
        return link

    async def resolve(self, short_code: str) -> str:
        """Short code -> original URL."""
        return (await self.get_link_by_short_code(short_code)).original_url

    async def resolve_many(self, short_codes: Iterable[str]) -> Dict[str, str]:
        """
        Resolve several codes with one batch cache read.

        Unknown, inactive and expired codes are left out of the result.
        """
        codes = list(dict.fromkeys(c for c in short_codes if SHORT_CODE_PATTERN.fullmatch(c or "")))
        if not codes:
            return {}

        cached = await self.cache.get_many([cache_key(code) for code in codes])
        resolved: Dict[str, CachedLink] = {}
        misses: List[str] = []
        for code, raw in zip(codes, cached):
            if raw is None:
                misses.append(code)
                continue
            try:
                resolved[code] = CachedLink.model_validate_json(raw)
            except ValidationError:
                misses.append(code)

        fills: Dict[str, str] = {}
        for code in misses:
            record = await self._read("get_by_short_code", lambda code=code: self.link_store.get_by_short_code(code))
            if record is None or not record.is_active:
                continue
            snapshot = self._snapshot(record)
            fills[cache_key(code)] = snapshot
            resolved[code] = CachedLink.model_validate_json(snapshot)

        if fills:
            await self.cache.set_many(fills, ttl=self.cache_ttl)

        return {
            code: link.original_url
            for code, link in resolved.items()
            if not link.is_expired()
        }

    async def process_click(
        self,
        short_code: str,
        context: ClientContext,
        password: Optional[str] = None,
    ) -> str:
        """
        Resolve for a redirect and record the click out of band.

        Only the resolve and the password check can fail the call; recording
        and webhook problems are logged. A refused password records nothing.

        Raises:
            LinkNotFound, LinkInactive, StoreUnavailable
            PasswordRequired: protected link and no password given
            InvalidPassword: protected link and the password is wrong
        """
        link = await self.get_link_by_short_code(short_code)
        if link.password_hash is not None:
            await self._check_password(link, password)

        try:
            event = build_click_event(link, context)
            self.recorder.record(event)
            if link.webhook_url and self.webhooks is not None:
                self.webhooks.notify(link.webhook_url, click_payload(link, event))
        except Exception as e:
            logger.exception("click not recorded", short_code=short_code, error=str(e))
        return link.original_url

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(hash_password, password, self.password_rounds)

    async def _check_password(self, link: CachedLink, password: Optional[str]) -> None:
        if not password:
            raise PasswordRequired()
        if not await asyncio.to_thread(verify_password, password, link.password_hash):
            logger.info("wrong link password", short_code=link.short_code)
            raise InvalidPassword()

    async def update_link(self, link_id: str, owner_id: str, patch: LinkUpdate) -> LinkRecord:
        """
        Apply a partial update and invalidate the cached snapshot.

        Raises:
            LinkNotFound, Forbidden, LinkInactive, InvalidUrl, StoreUnavailable
        """
        fields = patch.model_dump(exclude_unset=True)
        if "original_url" in fields:
            if fields["original_url"] is None:
                raise InvalidUrl()
            fields["original_url"] = validate_original_url(fields["original_url"])
        if "tags" in fields and fields["tags"] is None:
            fields["tags"] = []
        if fields.get("webhook_url") is not None:
            fields["webhook_url"] = validate_original_url(fields["webhook_url"])

        current = await self._owned_active_link(link_id, owner_id)
        if "password" in fields:
            password = fields.pop("password")
            fields["password_hash"] = await self._hash(password) if password is not None else None
        if not fields:
            return current

        updated = await self.link_store.update_fields(link_id, owner_id, fields)
        if updated is None:
            # Deactivated between the check and the write
            raise LinkInactive()

        await self._invalidate(updated.short_code)
        logger.info("link updated", short_code=updated.short_code, fields=sorted(fields))
        return updated

    async def delete_link(self, link_id: str, owner_id: str) -> LinkRecord:
        """
        Soft delete: the link becomes inactive for good.

        Raises:
            LinkNotFound, Forbidden, LinkInactive, StoreUnavailable
        """
        await self._owned_active_link(link_id, owner_id)

        deleted = await self.link_store.deactivate(link_id, owner_id)
        if deleted is None:
            raise LinkInactive()

        await self._invalidate(deleted.short_code)
        logger.info("link deleted", short_code=deleted.short_code, link_id=link_id)
        return deleted

    async def get_user_links(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = 20,
        campaign: Optional[str] = None,
        search: Optional[str] = None,
        include_inactive: bool = False,
    ) -> LinkPage:
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        items, total = await self._read(
            "list_for_owner",
            lambda: self.link_store.list_for_owner(
                owner_id,
                offset=(page - 1) * page_size,
                limit=page_size,
                campaign=campaign,
                search=search,
                include_inactive=include_inactive,
            ),
        )
        return LinkPage(items=items, total=total, page=page, page_size=page_size)

    list_links_for_owner = get_user_links

    async def get_user_stats(self, owner_id: str) -> UserStats:
        return await self._read("stats_for_owner", lambda: self.link_store.stats_for_owner(owner_id))

    stats_for_owner = get_user_stats

    async def warm_cache(self, owner_id: str) -> int:
        """Preload an owner's active, unexpired links. Returns links cached."""
        warmed = 0
        offset = 0
        while True:
            links, total = await self._read(
                "list_for_owner",
                lambda offset=offset: self.link_store.list_for_owner(owner_id, offset=offset, limit=WARM_BATCH),
            )
            items = {
                cache_key(link.short_code): self._snapshot(link)
                for link in links
                if not link.is_expired()
            }
            if items and await self.cache.set_many(items, ttl=self.cache_ttl):
                warmed += len(items)

            offset += len(links)
            if not links or offset >= total:
                break

        logger.info("cache warmed", owner_id=owner_id, links=warmed)
        return warmed

    async def clear_link_cache(self) -> int:
        """Drop every cached link. Administrative; scans the keyspace."""
        return await self.cache.clear_pattern(f"{CACHE_PREFIX}*")
