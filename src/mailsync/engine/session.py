"""Per-client session state shared by every engine.

A MailSession owns everything that must be reset together when the active
account changes: the account cancellation token, the in-flight registries,
the render debounce map, the in-memory page cache and the PGP key caches.
Engines receive the session instead of reading module globals, so several
independent sessions (one per test, say) can coexist in one process.

Lifecycle:
- ``switch_account()`` cancels everything started for the previous account
  and clears the per-account maps.
- ``clear_pgp_key_cache()`` forgets passphrases after keys change.
- ``dispose()`` tears the session down; background tasks are cancelled.

Usage:
    from mailsync.engine.session import MailSession

    session = MailSession(config, store, api, worker)
    token = session.account_token
    session.switch_account("bob@example.com")
    assert token.cancelled
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mailsync.core.cancellation import CancellationToken
from mailsync.core.inflight import InFlightRegistry
from mailsync.core.logging import get_logger
from mailsync.core.observable import Observable
from mailsync.remote.worker import WorkerClient

if TYPE_CHECKING:
    from mailsync.config_schema import AppConfig
    from mailsync.db.store import MailStore, Message
    from mailsync.remote.messages import MailApi

logger = get_logger(__name__)


@dataclass
class CachedPage:
    """One folder page held in memory for instant repaint."""

    messages: list[Message]
    has_next_page: bool = False
    stored_at: float = field(default_factory=time.monotonic)


class PageCache:
    """Bounded LRU of folder pages keyed by ``account:folder:page``."""

    def __init__(self, max_entries: int = 50):
        self.max_entries = max_entries
        self._pages: OrderedDict[str, CachedPage] = OrderedDict()

    @staticmethod
    def key(account: str, folder: str, page: int) -> str:
        return f"{account}:{folder}:{page}"

    def get(self, key: str) -> CachedPage | None:
        page = self._pages.get(key)
        if page is not None:
            self._pages.move_to_end(key)
        return page

    def put(self, key: str, messages: list[Message], has_next_page: bool = False) -> None:
        self._pages[key] = CachedPage(list(messages), has_next_page)
        self._pages.move_to_end(key)
        while len(self._pages) > self.max_entries:
            self._pages.popitem(last=False)

    def invalidate_folder(self, account: str, folder: str) -> int:
        """Drop every cached page of one folder.

        Returns:
            Number of pages dropped
        """
        prefix = f"{account}:{folder}:"
        stale = [key for key in self._pages if key.startswith(prefix)]
        for key in stale:
            del self._pages[key]
        return len(stale)

    def invalidate_account(self, account: str) -> int:
        """Drop every cached page of one account."""
        prefix = f"{account}:"
        stale = [key for key in self._pages if key.startswith(prefix)]
        for key in stale:
            del self._pages[key]
        return len(stale)

    def clear(self) -> None:
        self._pages.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._pages

    def __len__(self) -> int:
        return len(self._pages)


class MailSession:
    """Shared state and collaborators for one running mail client.

    Attributes:
        config: Application configuration
        store: Persistent cache
        api: Remote mail API resources
        worker: Background worker adapter (reports UNAVAILABLE without a transport)
        account: Observable name of the active account
        online: Observable connectivity flag; the poller and actions read it
        detail_inflight: Pending message-detail fetches keyed by ``account:id``
        list_inflight: Pending list fetches keyed by the composite request key
        folder_inflight: Pending folder loads keyed by account
        pages: In-memory folder page cache
        passphrases: Session passphrase cache by key name
        needs_passphrase: Whether a key needs a passphrase, checked once per key
        missing_key_shown: Accounts currently showing the missing-key notice
        missing_key_dismissed: Accounts whose user dismissed the notice
    """

    def __init__(
        self,
        config: AppConfig,
        store: MailStore,
        api: MailApi,
        worker: WorkerClient | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.api = api
        self.worker = worker or WorkerClient()
        self.account: Observable[str] = Observable(config.account, name="account")
        self.online: Observable[bool] = Observable(True, name="online")

        self._clock = clock
        self._account_token = CancellationToken(label=f"account:{config.account}")
        self.detail_inflight: InFlightRegistry[Any] = InFlightRegistry("message_detail")
        self.list_inflight: InFlightRegistry[Any] = InFlightRegistry("message_list")
        self.folder_inflight: InFlightRegistry[Any] = InFlightRegistry("folders")
        self._debounce: dict[str, float] = {}
        self.pages = PageCache(config.cache.memory_pages)

        self.passphrases: dict[str, str] = {}
        self.needs_passphrase: dict[str, bool] = {}
        self.missing_key_shown: set[str] = set()
        self.missing_key_dismissed: set[str] = set()
        self.prompt_lock = asyncio.Lock()

        self._background: set[asyncio.Task[Any]] = set()
        self._disposed = False

    @property
    def current_account(self) -> str:
        return self.account.get()

    @property
    def account_token(self) -> CancellationToken:
        """Token cancelled when the active account changes or the session ends."""
        return self._account_token

    @property
    def disposed(self) -> bool:
        return self._disposed

    @staticmethod
    def detail_key(account: str, message_id: str) -> str:
        return f"{account}:{message_id}"

    # -------------------------------------------------------------------------
    # Render debounce
    # -------------------------------------------------------------------------

    def is_debounced(self, key: str) -> bool:
        """Whether a render for ``key`` happened within the debounce window."""
        rendered_at = self._debounce.get(key)
        if rendered_at is None:
            return False
        return (self._clock() - rendered_at) * 1000 < self.config.cache.debounce_ms

    def mark_rendered(self, key: str) -> None:
        self._debounce[key] = self._clock()
        self._prune_debounce()

    def _prune_debounce(self) -> None:
        overflow = len(self._debounce) - self.config.cache.max_debounce_entries
        if overflow <= 0:
            return
        oldest = sorted(self._debounce.items(), key=lambda item: item[1])[:overflow]
        for key, _ in oldest:
            del self._debounce[key]

    @property
    def debounce_size(self) -> int:
        return len(self._debounce)

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Run a fire-and-forget helper; failures are logged, never raised."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(done: asyncio.Task[Any]) -> None:
            self._background.discard(done)
            if not done.cancelled() and done.exception() is not None:
                logger.warning("background_task_failed", task=name, error=str(done.exception()))

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for pending background helpers (used by the CLI before exit and by tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def clear_state(self, reason: str = "reset") -> None:
        """Abort the account token and clear in-flight and debounce maps.

        A fresh token is allocated so new operations can start right away.
        """
        self._account_token.cancel(reason)
        self._account_token = CancellationToken(label=f"account:{self.current_account}")
        self.detail_inflight.clear()
        self.list_inflight.clear()
        self.folder_inflight.clear()
        self._debounce.clear()
        logger.debug("session_state_cleared", reason=reason, account=self.current_account)

    def switch_account(self, account: str) -> bool:
        """Make ``account`` active, cancelling work started for the previous one.

        Returns:
            False when ``account`` is already active
        """
        if account == self.current_account:
            return False
        previous = self.current_account
        self.clear_state(reason="account_switch")
        self._account_token.label = f"account:{account}"
        self.account.set(account)
        logger.info("account_switched", previous=previous, account=account)
        return True

    def clear_pgp_key_cache(self) -> None:
        """Forget cached passphrases and unlock checks; call after keys change."""
        self.passphrases.clear()
        self.needs_passphrase.clear()
        self.missing_key_shown.clear()
        self._debounce.clear()
        logger.debug("pgp_key_cache_cleared")

    async def sign_out(self, account: str) -> int:
        """Forget everything held for ``account``, in memory and on disk.

        Returns:
            Number of store rows deleted
        """
        self.clear_state(reason="sign_out")
        self.clear_pgp_key_cache()
        self.missing_key_dismissed.discard(account)
        dropped = self.pages.invalidate_account(account)
        deleted = await self.store.clear_account(account)
        logger.info("account_signed_out", account=account, pages=dropped, rows=deleted)
        return deleted

    def dispose(self) -> None:
        """Tear down: cancel outstanding work and drop every cache."""
        if self._disposed:
            return
        self._disposed = True
        self.clear_state(reason="dispose")
        self.clear_pgp_key_cache()
        self.pages.clear()
        for task in list(self._background):
            task.cancel()
        logger.debug("session_disposed")
