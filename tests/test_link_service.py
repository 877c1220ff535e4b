"""
Tests for LinkService business rules.
"""

import asyncio
import re
from datetime import datetime, timedelta, timezone

import pytest

from shortlink_app.cache.strategies import InMemoryCache, NullCache
from shortlink_app.exceptions import (
    CodeAlreadyTaken,
    Forbidden,
    InvalidCodeFormat,
    InvalidPassword,
    InvalidUrl,
    LinkInactive,
    LinkNotFound,
    PasswordRequired,
    StoreUnavailable,
)
from shortlink_app.hit_processor.click_recorder import ClickRecorder
from shortlink_app.schemas import ClientContext, LinkCreate, LinkUpdate
from shortlink_app.services.code_generator import CodeGenerator
from shortlink_app.services.link_service import LinkService, cache_key

CODE_RE = re.compile(r"^[a-zA-Z0-9]{3,50}$")
OWNER = "owner-1"


def create(service, url="https://example.com/", owner_id=OWNER, **extra):
    return asyncio.run(service.create_link(owner_id, LinkCreate(original_url=url, **extra)))


class FlakyStore:
    """Delegates to a real store, failing the first `failures` reads."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.reads = 0

    async def get_by_short_code(self, short_code):
        self.reads += 1
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable()
        return await self.inner.get_by_short_code(short_code)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class RecordingNotifier:
    """Collects webhook deliveries instead of sending them."""

    def __init__(self):
        self.calls = []

    def notify(self, url, payload):
        self.calls.append((url, payload))
        return True


class TestCreateLink:

    def test_random_codes_are_valid_and_unique(self, link_service):
        codes = [create(link_service, f"https://example.com/{i}").short_code for i in range(25)]

        assert all(CODE_RE.match(code) for code in codes)
        assert len(set(codes)) == len(codes)

    def test_same_url_gets_different_codes(self, link_service):
        first = create(link_service, "https://example.com/same")
        second = create(link_service, "https://example.com/same")
        assert first.short_code != second.short_code

    def test_create_returns_full_record(self, link_service):
        link = create(
            link_service,
            "https://example.com/a/b?c=1",
            custom_code="ex1",
            title="Example",
            tags=["x"],
            campaign="launch",
        )

        assert link.short_code == "ex1"
        assert link.is_custom is True
        assert link.owner_id == OWNER
        assert link.original_url == "https://example.com/a/b?c=1"
        assert link.tags == ["x"]
        assert link.short_url.endswith("/ex1")

    def test_create_warms_cache(self, link_service, cache):
        link = create(link_service, custom_code="warm1")
        assert asyncio.run(cache.get(cache_key("warm1"))) is not None
        assert link.is_custom is True

    @pytest.mark.parametrize("url", [
        "javascript:alert(1)",
        "JAVASCRIPT:alert(1)",
        "data:text/html,<script>alert(1)</script>",
        "vbscript:msgbox(1)",
        "FiLe:///etc/passwd",
        "ftp://example.com",
    ])
    def test_dangerous_urls_persist_nothing(self, link_service, link_store, url):
        with pytest.raises(InvalidUrl):
            create(link_service, url, custom_code="bad1")

        assert asyncio.run(link_store.get_by_short_code("bad1")) is None
        assert asyncio.run(link_store.stats_for_owner(OWNER)).total_links == 0

    def test_invalid_custom_code(self, link_service):
        with pytest.raises(InvalidCodeFormat):
            create(link_service, custom_code="no")

    def test_taken_custom_code(self, link_service):
        create(link_service, custom_code="mine1")
        with pytest.raises(CodeAlreadyTaken):
            create(link_service, "https://other.example.com/", owner_id="owner-2", custom_code="mine1")

    def test_concurrent_custom_code_exactly_one_wins(self, link_service):
        async def scenario():
            return await asyncio.gather(
                link_service.create_link(OWNER, LinkCreate(original_url="https://a.example.com/", custom_code="race1")),
                link_service.create_link("owner-2", LinkCreate(original_url="https://b.example.com/", custom_code="race1")),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        taken = [r for r in results if isinstance(r, CodeAlreadyTaken)]
        created = [r for r in results if not isinstance(r, Exception)]
        assert len(taken) == 1
        assert len(created) == 1
        assert created[0].short_code == "race1"

    def test_store_write_failure_is_not_retried(self, link_service, link_store):
        calls = []

        async def failing_insert(values):
            calls.append(values)
            raise StoreUnavailable()

        link_store.insert = failing_insert
        with pytest.raises(StoreUnavailable):
            create(link_service)
        assert len(calls) == 1


class TestResolve:

    def test_round_trip_from_cache_and_store(self, link_service, cache):
        url = "https://example.com/a/b?c=1"
        create(link_service, url, custom_code="ex1")

        assert asyncio.run(link_service.resolve("ex1")) == url

        asyncio.run(cache.delete(cache_key("ex1")))
        assert asyncio.run(link_service.resolve("ex1")) == url
        # Store read filled the cache again
        assert asyncio.run(cache.exists(cache_key("ex1"))) is True

    def test_cached_projection_fields(self, link_service):
        link = create(link_service, custom_code="proj1", title="Title")
        cached = asyncio.run(link_service.get_link_by_short_code("proj1"))

        assert cached.id == link.id
        assert cached.owner_id == OWNER
        assert cached.title == "Title"

    def test_unknown_code(self, link_service):
        with pytest.raises(LinkNotFound):
            asyncio.run(link_service.get_link_by_short_code("nothere"))

    @pytest.mark.parametrize("code", ["", "x", "link:*", "a" * 51])
    def test_malformed_code_is_not_found(self, link_service, code):
        with pytest.raises(LinkNotFound):
            asyncio.run(link_service.get_link_by_short_code(code))

    def test_works_without_cache(self, link_store, recorder):
        service = LinkService(link_store, NullCache(), recorder, CodeGenerator())
        create(service, "https://example.com/nocache", custom_code="nocache")
        assert asyncio.run(service.resolve("nocache")) == "https://example.com/nocache"

    def test_store_reads_are_retried(self, link_service, link_store):
        create(link_service, custom_code="retry1")
        flaky = FlakyStore(link_store, failures=2)
        service = LinkService(flaky, NullCache(), link_service.recorder, CodeGenerator(), read_retries=2, read_backoff=0.001)

        assert asyncio.run(service.resolve("retry1")) == "https://example.com/"
        assert flaky.reads == 3

    def test_store_read_retries_are_bounded(self, link_service, link_store):
        create(link_service, custom_code="retry2")
        flaky = FlakyStore(link_store, failures=10)
        service = LinkService(flaky, NullCache(), link_service.recorder, CodeGenerator(), read_retries=2, read_backoff=0.001)

        with pytest.raises(StoreUnavailable):
            asyncio.run(service.resolve("retry2"))
        assert flaky.reads == 3

    def test_expired_link_is_inactive_even_when_cached(self, link_service, cache):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        create(link_service, custom_code="old1", expires_at=past)

        # create_link warmed the cache, so this is a cache hit
        assert asyncio.run(cache.exists(cache_key("old1"))) is True
        with pytest.raises(LinkInactive):
            asyncio.run(link_service.resolve("old1"))

    def test_corrupt_cache_entry_is_replaced(self, link_service, cache):
        create(link_service, "https://example.com/ok", custom_code="fix1")
        asyncio.run(cache.set(cache_key("fix1"), "{not json"))

        assert asyncio.run(link_service.resolve("fix1")) == "https://example.com/ok"

    def test_resolve_many(self, link_service, cache):
        create(link_service, "https://example.com/1", custom_code="many1")
        create(link_service, "https://example.com/2", custom_code="many2")
        gone = create(link_service, "https://example.com/3", custom_code="many3")
        asyncio.run(link_service.delete_link(gone.id, OWNER))
        asyncio.run(cache.delete(cache_key("many2")))

        resolved = asyncio.run(link_service.resolve_many(["many1", "many2", "many3", "nope1", "many1"]))

        assert resolved == {"many1": "https://example.com/1", "many2": "https://example.com/2"}
        assert asyncio.run(cache.exists(cache_key("many2"))) is True


class TestProcessClick:

    def test_returns_url_and_records_without_persisting(self, link_service, recorder, link_store):
        link = create(link_service, "https://example.com/click", custom_code="clk1")
        context = ClientContext(
            ip_address="203.0.113.9",
            user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148 Safari/604.1",
            referrer="https://twitter.com",
            country="us",
        )

        assert asyncio.run(link_service.process_click("clk1", context)) == "https://example.com/click"
        assert recorder.pending == 1
        # Nothing is persisted on the redirect path
        assert asyncio.run(link_store.get_by_id(link.id)).click_count == 0

    def test_unknown_code_records_nothing(self, link_service, recorder):
        with pytest.raises(LinkNotFound):
            asyncio.run(link_service.process_click("zzz999", ClientContext()))
        assert recorder.pending == 0

    def test_full_recorder_does_not_fail_redirect(self, link_store, cache, queue):
        recorder = ClickRecorder(queue, queue_name="test_clicks", buffer_size=1)
        link_service = LinkService(link_store, cache, recorder, CodeGenerator())
        create(link_service, "https://example.com/busy", custom_code="busy1")

        async def scenario():
            return [await link_service.process_click("busy1", ClientContext()) for _ in range(3)]

        assert asyncio.run(scenario()) == ["https://example.com/busy"] * 3
        assert recorder.dropped == 2

    def test_hundred_concurrent_clicks_are_all_counted(self, link_service, link_store, recorder, worker):
        link = create(link_service, "https://example.com/popular", custom_code="pop1")

        async def scenario():
            urls = await asyncio.gather(
                *(link_service.process_click("pop1", ClientContext(user_agent="Mozilla/5.0")) for _ in range(100))
            )
            await recorder.flush()
            await worker.drain()
            return urls, await link_service.get_user_stats(OWNER)

        urls, stats = asyncio.run(scenario())
        assert urls == ["https://example.com/popular"] * 100
        assert stats.total_clicks == 100
        assert asyncio.run(link_store.get_by_id(link.id)).click_count == 100


class TestPasswordProtectedLinks:

    def test_password_is_stored_hashed(self, link_service, cache):
        link = create(link_service, "https://example.com/secret", custom_code="lock1", password="s3cret")

        assert link.password_protected is True
        assert link.password_hash != "s3cret"
        assert "password_hash" not in link.model_dump()
        assert "s3cret" not in asyncio.run(cache.get(cache_key("lock1")))

    def test_missing_password_is_required(self, link_service, recorder):
        create(link_service, "https://example.com/secret", custom_code="lock2", password="s3cret")

        with pytest.raises(PasswordRequired):
            asyncio.run(link_service.process_click("lock2", ClientContext()))
        assert recorder.pending == 0

    def test_wrong_password_records_nothing(self, link_service, recorder):
        create(link_service, "https://example.com/secret", custom_code="lock3", password="s3cret")

        with pytest.raises(InvalidPassword):
            asyncio.run(link_service.process_click("lock3", ClientContext(), password="guess"))
        assert recorder.pending == 0

    def test_right_password_redirects_from_cache_and_store(self, link_service, cache):
        create(link_service, "https://example.com/secret", custom_code="lock4", password="s3cret")

        first = asyncio.run(link_service.process_click("lock4", ClientContext(), password="s3cret"))
        asyncio.run(cache.delete(cache_key("lock4")))
        second = asyncio.run(link_service.process_click("lock4", ClientContext(), password="s3cret"))

        assert first == second == "https://example.com/secret"

    def test_update_adds_and_removes_protection(self, link_service, recorder):
        link = create(link_service, "https://example.com/later", custom_code="lock5")
        assert asyncio.run(link_service.process_click("lock5", ClientContext())) == "https://example.com/later"

        asyncio.run(link_service.update_link(link.id, OWNER, LinkUpdate(password="n3w")))
        with pytest.raises(PasswordRequired):
            asyncio.run(link_service.process_click("lock5", ClientContext()))

        updated = asyncio.run(link_service.update_link(link.id, OWNER, LinkUpdate(password=None)))
        assert updated.password_protected is False
        assert asyncio.run(link_service.process_click("lock5", ClientContext())) == "https://example.com/later"


class TestClickWebhooks:

    def test_click_is_posted_to_webhook(self, link_service):
        notifier = RecordingNotifier()
        link_service.webhooks = notifier
        link = create(
            link_service, "https://example.com/hooked", custom_code="hook1",
            webhook_url="https://hooks.example.com/clicks",
        )

        asyncio.run(link_service.process_click("hook1", ClientContext(country="nl", user_agent="Mozilla/5.0")))

        assert len(notifier.calls) == 1
        url, payload = notifier.calls[0]
        assert url == "https://hooks.example.com/clicks"
        assert payload["event"] == "click"
        assert payload["link"] == {"id": link.id, "short_code": "hook1", "original_url": "https://example.com/hooked"}
        assert payload["click"]["country"] == "NL"

    def test_links_without_webhook_notify_nothing(self, link_service):
        notifier = RecordingNotifier()
        link_service.webhooks = notifier
        create(link_service, custom_code="hook2")

        asyncio.run(link_service.process_click("hook2", ClientContext()))
        assert notifier.calls == []

    def test_refused_password_notifies_nothing(self, link_service):
        notifier = RecordingNotifier()
        link_service.webhooks = notifier
        create(link_service, custom_code="hook3", password="pw", webhook_url="https://hooks.example.com/")

        with pytest.raises(InvalidPassword):
            asyncio.run(link_service.process_click("hook3", ClientContext(), password="nope"))
        assert notifier.calls == []

    @pytest.mark.parametrize("webhook_url", ["javascript:alert(1)", "ftp://hooks.example.com/", "not a url"])
    def test_webhook_url_is_validated(self, link_service, link_store, webhook_url):
        with pytest.raises(InvalidUrl):
            create(link_service, custom_code="hook4", webhook_url=webhook_url)
        assert asyncio.run(link_store.get_by_short_code("hook4")) is None

    def test_update_can_remove_webhook(self, link_service):
        notifier = RecordingNotifier()
        link_service.webhooks = notifier
        link = create(link_service, custom_code="hook5", webhook_url="https://hooks.example.com/")

        updated = asyncio.run(link_service.update_link(link.id, OWNER, LinkUpdate(webhook_url=None)))
        asyncio.run(link_service.process_click("hook5", ClientContext()))

        assert updated.webhook_url is None
        assert notifier.calls == []


class TestUpdateLink:

    def test_update_then_resolve_is_never_stale(self, link_service):
        link = create(link_service, "https://example.com/old", custom_code="upd1")
        assert asyncio.run(link_service.resolve("upd1")) == "https://example.com/old"

        updated = asyncio.run(link_service.update_link(
            link.id, OWNER, LinkUpdate(original_url="https://example.com/new", title="New")
        ))

        assert updated.original_url == "https://example.com/new"
        assert updated.short_code == "upd1"
        assert asyncio.run(link_service.resolve("upd1")) == "https://example.com/new"

    def test_update_invalidates_instead_of_overwriting(self, link_service, cache):
        link = create(link_service, custom_code="inv1")
        asyncio.run(link_service.update_link(link.id, OWNER, LinkUpdate(title="t")))
        assert asyncio.run(cache.exists(cache_key("inv1"))) is False

    def test_failed_invalidation_is_retried(self, link_service, cache):
        link = create(link_service, custom_code="inv2")
        original_delete = cache.delete
        attempts = []

        async def flaky_delete(key):
            attempts.append(key)
            if len(attempts) < 2:
                return False
            return await original_delete(key)

        cache.delete = flaky_delete
        asyncio.run(link_service.update_link(link.id, OWNER, LinkUpdate(title="t")))

        assert len(attempts) == 2
        assert asyncio.run(cache.exists(cache_key("inv2"))) is False

    def test_other_owner_is_forbidden(self, link_service):
        link = create(link_service, custom_code="own1")
        with pytest.raises(Forbidden):
            asyncio.run(link_service.update_link(link.id, "intruder", LinkUpdate(title="x")))
        assert asyncio.run(link_service.get_link_by_short_code("own1")).title is None

    def test_unknown_link(self, link_service):
        with pytest.raises(LinkNotFound):
            asyncio.run(link_service.update_link("no-such-id", OWNER, LinkUpdate(title="x")))

    def test_invalid_new_url(self, link_service):
        link = create(link_service, custom_code="url1")
        with pytest.raises(InvalidUrl):
            asyncio.run(link_service.update_link(link.id, OWNER, LinkUpdate(original_url="javascript:alert(1)")))
        assert asyncio.run(link_service.resolve("url1")) == "https://example.com/"

    def test_inactive_link_cannot_be_updated(self, link_service):
        link = create(link_service, custom_code="ina1")
        asyncio.run(link_service.delete_link(link.id, OWNER))
        with pytest.raises(LinkInactive):
            asyncio.run(link_service.update_link(link.id, OWNER, LinkUpdate(title="x")))


class TestDeleteLink:

    def test_delete_then_resolve_fails(self, link_service):
        link = create(link_service, "https://example.com/a/b?c=1", custom_code="ex1")
        assert asyncio.run(link_service.resolve("ex1")) == "https://example.com/a/b?c=1"

        asyncio.run(link_service.delete_link(link.id, OWNER))

        with pytest.raises((LinkInactive, LinkNotFound)):
            asyncio.run(link_service.resolve("ex1"))

    def test_deleted_link_is_not_recached(self, link_service, cache):
        link = create(link_service, custom_code="gone1")
        asyncio.run(link_service.delete_link(link.id, OWNER))

        with pytest.raises(LinkInactive):
            asyncio.run(link_service.resolve("gone1"))
        assert asyncio.run(cache.exists(cache_key("gone1"))) is False

    def test_other_owner_cannot_delete(self, link_service):
        link = create(link_service, custom_code="keep1")
        with pytest.raises(Forbidden):
            asyncio.run(link_service.delete_link(link.id, "intruder"))
        assert asyncio.run(link_service.resolve("keep1")) == "https://example.com/"

    def test_code_stays_reserved_after_delete(self, link_service):
        link = create(link_service, custom_code="rsv1")
        asyncio.run(link_service.delete_link(link.id, OWNER))
        with pytest.raises(CodeAlreadyTaken):
            create(link_service, custom_code="rsv1")


class TestOwnerViews:

    def test_get_user_links_pages(self, link_service):
        for i in range(5):
            create(link_service, f"https://example.com/{i}", campaign="spring" if i % 2 else None)
        create(link_service, owner_id="owner-2")

        page = asyncio.run(link_service.get_user_links(OWNER, page=2, page_size=2))
        assert page.total == 5
        assert page.page == 2
        assert len(page.items) == 2

        spring = asyncio.run(link_service.list_links_for_owner(OWNER, campaign="spring"))
        assert spring.total == 2

    def test_page_size_is_capped(self, link_service):
        page = asyncio.run(link_service.get_user_links(OWNER, page=0, page_size=10_000))
        assert page.page == 1
        assert page.page_size == 100

    def test_get_user_stats(self, link_service):
        create(link_service, campaign="c1")
        gone = create(link_service)
        asyncio.run(link_service.delete_link(gone.id, OWNER))

        stats = asyncio.run(link_service.stats_for_owner(OWNER))
        assert stats.total_links == 2
        assert stats.active_links == 1
        assert stats.campaign_links == 1
        assert stats.total_clicks == 0


class TestCacheAdministration:

    def test_warm_cache_and_clear(self, link_store, recorder):
        cache = InMemoryCache()
        service = LinkService(link_store, cache, recorder, CodeGenerator())
        for i in range(3):
            create(service, f"https://example.com/{i}", custom_code=f"wrm{i}")

        assert asyncio.run(service.clear_link_cache()) == 3
        assert asyncio.run(cache.exists(cache_key("wrm0"))) is False

        assert asyncio.run(service.warm_cache(OWNER)) == 3
        assert asyncio.run(cache.get_many([cache_key(f"wrm{i}") for i in range(3)])).count(None) == 0

    def test_warm_cache_skips_expired(self, link_service, cache):
        create(link_service, custom_code="live1")
        create(link_service, custom_code="dead1", expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        asyncio.run(link_service.clear_link_cache())

        assert asyncio.run(link_service.warm_cache(OWNER)) == 1
        assert asyncio.run(cache.exists(cache_key("dead1"))) is False
