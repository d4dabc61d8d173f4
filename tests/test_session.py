"""Tests for MailSession lifecycle and the in-memory page cache."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import make_message

from mailsync.config_schema import AppConfig
from mailsync.core.logging import add_correlation_id, get_correlation_id, set_correlation_id
from mailsync.db.store import MailStore
from mailsync.engine.session import MailSession, PageCache


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clocked_session(
    sample_config: AppConfig, fake_api: AsyncMock, clock: FakeClock
) -> MailSession:
    return MailSession(sample_config, AsyncMock(spec=MailStore), fake_api, clock=clock)


class TestPageCache:
    """Tests for PageCache."""

    def test_lru_eviction(self) -> None:
        """Test that the least recently used page is dropped first."""
        pages = PageCache(max_entries=2)
        pages.put("a:INBOX:1", [make_message("m1")])
        pages.put("a:INBOX:2", [make_message("m2")])
        assert pages.get("a:INBOX:1") is not None

        pages.put("a:INBOX:3", [make_message("m3")])

        assert "a:INBOX:1" in pages
        assert "a:INBOX:2" not in pages
        assert len(pages) == 2

    def test_invalidate_folder(self) -> None:
        """Test that only pages of the named folder are dropped."""
        pages = PageCache()
        pages.put(PageCache.key("a", "INBOX", 1), [])
        pages.put(PageCache.key("a", "INBOX", 2), [])
        pages.put(PageCache.key("a", "INBOX.Sub", 1), [])
        pages.put(PageCache.key("b", "INBOX", 1), [])

        assert pages.invalidate_folder("a", "INBOX") == 2
        assert PageCache.key("a", "INBOX.Sub", 1) in pages
        assert PageCache.key("b", "INBOX", 1) in pages

    def test_invalidate_account(self) -> None:
        """Test that only pages of the named account are dropped."""
        pages = PageCache()
        pages.put(PageCache.key("a", "INBOX", 1), [])
        pages.put(PageCache.key("a", "Archive", 1), [])
        pages.put(PageCache.key("ab", "INBOX", 1), [])

        assert pages.invalidate_account("a") == 2
        assert len(pages) == 1
        assert PageCache.key("ab", "INBOX", 1) in pages

    def test_stored_page_is_a_copy(self) -> None:
        """Test that later edits to the caller's list do not leak in."""
        pages = PageCache()
        messages = [make_message("m1")]
        pages.put("k", messages, has_next_page=True)
        messages.append(make_message("m2"))

        page = pages.get("k")
        assert page is not None
        assert [m.id for m in page.messages] == ["m1"]
        assert page.has_next_page is True


class TestDebounce:
    """Tests for the render debounce window."""

    def test_window(self, clocked_session: MailSession, clock: FakeClock) -> None:
        """Test that renders are suppressed for 500 ms only."""
        key = MailSession.detail_key("alice@example.com", "m1")
        assert clocked_session.is_debounced(key) is False

        clocked_session.mark_rendered(key)
        clock.now += 0.4
        assert clocked_session.is_debounced(key) is True

        clock.now += 0.2
        assert clocked_session.is_debounced(key) is False

    def test_map_is_bounded(self, clocked_session: MailSession, clock: FakeClock) -> None:
        """Test that the oldest entries are pruned past the limit."""
        clocked_session.config.cache.max_debounce_entries = 3
        for index in range(5):
            clock.now += 1
            clocked_session.mark_rendered(f"k{index}")

        assert clocked_session.debounce_size == 3
        assert clocked_session.is_debounced("k4") is True
        assert clocked_session.is_debounced("k0") is False


class TestLifecycle:
    """Tests for account switching, resets and disposal."""

    @pytest.mark.asyncio
    async def test_switch_account_cancels_previous_work(self, session: MailSession) -> None:
        """Test that the old token is cancelled and per-account maps are cleared."""
        old_token = session.account_token
        session.mark_rendered("alice@example.com:m1")
        seen: list[str] = []
        session.account.subscribe(seen.append)

        assert session.switch_account("bob@example.com") is True

        assert old_token.cancelled is True
        assert old_token.reason == "account_switch"
        assert session.account_token is not old_token
        assert session.account_token.cancelled is False
        assert session.debounce_size == 0
        assert session.current_account == "bob@example.com"
        assert seen[-1] == "bob@example.com"

    @pytest.mark.asyncio
    async def test_switch_to_same_account_is_noop(self, session: MailSession) -> None:
        """Test that re-selecting the active account keeps its token."""
        token = session.account_token
        assert session.switch_account("alice@example.com") is False
        assert token.cancelled is False

    @pytest.mark.asyncio
    async def test_clear_pgp_key_cache(self, session: MailSession) -> None:
        """Test that passphrases, unlock checks and notices are forgotten."""
        session.passphrases["main"] = "secret"
        session.needs_passphrase["main"] = True
        session.missing_key_shown.add("alice@example.com")
        session.mark_rendered("alice@example.com:m1")

        session.clear_pgp_key_cache()

        assert session.passphrases == {}
        assert session.needs_passphrase == {}
        assert session.missing_key_shown == set()
        assert session.debounce_size == 0

    @pytest.mark.asyncio
    async def test_sign_out_forgets_account(self, session: MailSession) -> None:
        """Test that sign-out clears memory state and the account's stored rows."""
        await session.store.bulk_put_messages([make_message("m1")])
        await session.store.bulk_put_messages([make_message("m1", account="bob@example.com")])
        session.pages.put(PageCache.key("alice@example.com", "INBOX", 1), [make_message("m1")])
        session.pages.put(PageCache.key("bob@example.com", "INBOX", 1), [])
        session.passphrases["main"] = "secret"
        session.needs_passphrase["main"] = True
        session.mark_rendered("alice@example.com:m1")
        token = session.account_token

        assert await session.sign_out("alice@example.com") == 1

        assert token.cancelled is True
        assert token.reason == "sign_out"
        assert session.account_token.cancelled is False
        assert session.passphrases == {}
        assert session.needs_passphrase == {}
        assert session.debounce_size == 0
        assert PageCache.key("alice@example.com", "INBOX", 1) not in session.pages
        assert PageCache.key("bob@example.com", "INBOX", 1) in session.pages
        assert await session.store.get_message("alice@example.com", "m1") is None
        assert await session.store.get_message("bob@example.com", "m1") is not None

    @pytest.mark.asyncio
    async def test_spawn_logs_failures(self, session: MailSession) -> None:
        """Test that a failing helper does not break drain()."""

        async def boom() -> None:
            raise RuntimeError("helper failed")

        task = session.spawn(boom(), "boom")
        await session.drain()

        assert task.done()
        assert isinstance(task.exception(), RuntimeError)

    @pytest.mark.asyncio
    async def test_dispose_cancels_background_work(self, session: MailSession) -> None:
        """Test that disposal cancels helpers and clears caches, once."""
        never = asyncio.Event()
        task = session.spawn(never.wait(), "waiter")
        session.pages.put("k", [make_message("m1")])
        token = session.account_token

        session.dispose()
        session.dispose()
        await asyncio.gather(task, return_exceptions=True)

        assert session.disposed is True
        assert task.cancelled()
        assert token.cancelled is True
        assert len(session.pages) == 0


class TestCorrelationId:
    """Tests for sync cycle correlation ids in log entries."""

    def test_processor_adds_current_id(self) -> None:
        """Test that the processor copies the context id into the event."""
        set_correlation_id("cycle-1")
        try:
            assert get_correlation_id() == "cycle-1"
            event = add_correlation_id(None, "info", {"event": "list_sync_started"})
            assert event["sync_cycle_id"] == "cycle-1"
        finally:
            set_correlation_id(None)

        assert "sync_cycle_id" not in add_correlation_id(None, "info", {"event": "x"})
