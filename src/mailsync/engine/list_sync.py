"""Folder list synchronization.

load_messages() keeps the visible message list of the selected folder in
step with the server while painting from local data first:

1. Paint the in-memory page for ``account:folder:page`` (before any await)
2. Read the persisted page (date range query, or scan and sort) and paint
   it if memory had nothing; compute has_next_page from a count query when
   no filter is active
3. Join an identical request already in flight
4. Fetch a small preview slice in the background when nothing was cached
5. Fetch the full page from the worker, falling back to the API
6. Normalize and backfill labels and senders from the cache
7. Drop the result from the visible state if the account, folder or request
   changed meanwhile (it is still persisted)
8. Persist the page; on an unfiltered page 1, delete cached ids missing from
   the fresh result
9. Refresh the memory cache, unread counts, quota eviction and search index

load_folders() does the same for the folder tree with a short freshness TTL.

Usage:
    from mailsync.engine.list_sync import ListSyncEngine, MailboxState

    state = MailboxState()
    engine = ListSyncEngine(session, state)
    await engine.load_folders()
    await engine.load_messages()
    print([m.subject for m in state.messages.get()])
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from mailsync.core.errors import DatabaseError, MailSyncError, OperationCancelled
from mailsync.core.inflight import InFlightRegistry
from mailsync.core.logging import get_logger, set_correlation_id
from mailsync.core.observable import Observable
from mailsync.core.result import capture
from mailsync.db.store import Folder, Message
from mailsync.engine.merge import (
    merge_message_pages,
    merge_missing_from,
    merge_missing_labels,
)
from mailsync.engine.normalize import decorate_cached, normalize_message
from mailsync.engine.session import PageCache

if TYPE_CHECKING:
    from mailsync.db.store import MailStore
    from mailsync.engine.session import MailSession

logger = get_logger(__name__)

INBOX = "INBOX"
FOLDERS_CACHE_TTL = 15.0
EVICTION_BATCH = 50
INDEX_RETRY_DELAY = 1.0

SORT_PARAMS = {
    "newest": "-date",
    "oldest": "date",
    "subject": "subject",
    "sender": "from",
}

_MIN_DATE = datetime.min.replace(tzinfo=UTC)


class ListStatus(StrEnum):
    """How a load_messages() call ended."""

    NO_FOLDER = "no_folder"
    JOINED = "joined"
    UPDATED = "updated"
    STALE = "stale"
    NO_CONTENT = "no_content"
    EMPTY_PRESERVED = "empty_preserved"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class MailboxState:
    """Observable view state read and written by the list engines."""

    selected_folder: Observable[str] = field(
        default_factory=lambda: Observable("", name="selected_folder")
    )
    page: Observable[int] = field(default_factory=lambda: Observable(1, name="page"))
    sort_order: Observable[str] = field(
        default_factory=lambda: Observable("newest", name="sort_order")
    )
    query: Observable[str] = field(default_factory=lambda: Observable("", name="query"))
    unread_only: Observable[bool] = field(
        default_factory=lambda: Observable(False, name="unread_only")
    )
    has_attachments_only: Observable[bool] = field(
        default_factory=lambda: Observable(False, name="has_attachments_only")
    )
    append_pages: Observable[bool] = field(
        default_factory=lambda: Observable(False, name="append_pages")
    )
    messages: Observable[list[Message]] = field(
        default_factory=lambda: Observable([], name="messages")
    )
    has_next_page: Observable[bool] = field(
        default_factory=lambda: Observable(False, name="has_next_page")
    )
    loading: Observable[bool] = field(default_factory=lambda: Observable(False, name="loading"))
    error: Observable[str] = field(default_factory=lambda: Observable("", name="error"))
    folders: Observable[list[Folder]] = field(
        default_factory=lambda: Observable([], name="folders")
    )
    selected_message: Observable[Message | None] = field(
        default_factory=lambda: Observable(None, name="selected_message")
    )

    def clear_filters(self) -> None:
        self.query.set("")
        self.unread_only.set(False)
        self.has_attachments_only.set(False)


class SearchIndex(Protocol):
    """External full-text index kept in step with fetched pages."""

    async def index_messages(self, messages: list[Message]) -> None: ...

    async def remove_from_index(self, message_ids: list[str]) -> None: ...


@dataclass
class _ListRequest:
    """Parameters of one load_messages() call, frozen at dispatch."""

    account: str
    folder: str
    page: int
    limit: int
    sort_order: str
    query: str
    unread_only: bool
    attachments_only: bool
    append: bool
    key: str
    cached_ids: set[str] = field(default_factory=set)
    full_applied: bool = False

    @property
    def sort_param(self) -> str:
        return SORT_PARAMS.get(self.sort_order, "-date")

    @property
    def is_basic(self) -> bool:
        return not self.query and not self.unread_only and not self.attachments_only

    @property
    def memory_key(self) -> str:
        return PageCache.key(self.account, self.folder, self.page)

    @property
    def has_cache(self) -> bool:
        return bool(self.cached_ids)


def request_key(
    account: str,
    folder: str,
    page: int,
    limit: int,
    sort_param: str,
    query: str,
    unread_only: bool,
    attachments_only: bool,
) -> str:
    """Composite key of every parameter that changes the result set."""
    return (
        f"{account}:{folder}:{page}:{limit}:{sort_param}:{query}:"
        f"{int(unread_only)}:{int(attachments_only)}"
    )


def sort_messages(messages: list[Message], sort_order: str) -> list[Message]:
    """Sort cached messages the way the server sorts ``sort_order``."""
    if sort_order == "oldest":
        return sorted(messages, key=lambda m: m.date or _MIN_DATE)
    if sort_order == "subject":
        return sorted(messages, key=lambda m: (m.subject or "").casefold())
    if sort_order == "sender":
        return sorted(messages, key=lambda m: (m.sender or "").casefold())
    return sorted(messages, key=lambda m: m.date or _MIN_DATE, reverse=True)


def _matches_filters(message: Message, request: _ListRequest) -> bool:
    if request.unread_only and not message.is_unread:
        return False
    if request.attachments_only and not message.has_attachments:
        return False
    if request.query:
        needle = request.query.casefold()
        haystack = f"{message.subject}\n{message.sender}\n{message.preview}".casefold()
        return needle in haystack
    return True


# -----------------------------------------------------------------------------
# Folder list
# -----------------------------------------------------------------------------


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_folder_list(items: list[dict[str, Any]], account: str) -> list[Folder]:
    """Map server or worker folder records onto sorted Folder entries.

    INBOX sorts first, everything else by path. Depth comes from an explicit
    ``level`` or from the number of ``/`` separators in the path.
    """
    folders: dict[str, Folder] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        path = _first(item, "path", "Name", "name", "fullName", "fullname")
        if not path:
            continue
        path = str(path)

        level = _int_or_none(_first(item, "level", "Level"))
        if level is None:
            level = max(len([part for part in path.split("/") if part]) - 1, 0)
        unread = _int_or_none(
            _first(
                item,
                "unread",
                "unread_count",
                "unreadCount",
                "unseen",
                "unseen_count",
                "unseenCount",
            )
        )
        total = _int_or_none(_first(item, "total", "message_count", "count"))

        folders[path] = Folder(
            account=account,
            path=path,
            name=str(item.get("name") or path.rsplit("/", 1)[-1]),
            level=level,
            unread_count=unread or 0,
            total_count=total or 0,
            count_source="server" if unread is not None else "local",
        )

    return sorted(folders.values(), key=lambda f: (f.path.upper() != INBOX, f.path))


class ListSyncEngine:
    """Keeps MailboxState's message and folder lists in sync."""

    def __init__(
        self,
        session: MailSession,
        state: MailboxState,
        search_index: SearchIndex | None = None,
        *,
        index_retry_delay: float = INDEX_RETRY_DELAY,
    ):
        self._session = session
        self.state = state
        self.search_index = search_index
        self.index_retry_delay = index_retry_delay
        self._folders_fetched_at: dict[str, float] = {}

    @property
    def _store(self) -> MailStore:
        return self._session.store

    # =========================================================================
    # Messages
    # =========================================================================

    def _build_request(self) -> _ListRequest:
        state = self.state
        account = self._session.current_account
        folder = state.selected_folder.get()
        page = max(state.page.get(), 1)
        limit = self._session.config.list_sync.page_size
        sort_order = state.sort_order.get()
        query = (state.query.get() or "").strip()
        unread_only = bool(state.unread_only.get())
        attachments_only = bool(state.has_attachments_only.get())
        return _ListRequest(
            account=account,
            folder=folder,
            page=page,
            limit=limit,
            sort_order=sort_order,
            query=query,
            unread_only=unread_only,
            attachments_only=attachments_only,
            append=bool(state.append_pages.get()) and page > 1,
            key=request_key(
                account,
                folder,
                page,
                limit,
                SORT_PARAMS.get(sort_order, "-date"),
                query,
                unread_only,
                attachments_only,
            ),
        )

    def _current_request_key(self) -> str:
        return self._build_request().key

    def _is_current(self, request: _ListRequest) -> bool:
        return (
            self._session.current_account == request.account
            and self.state.selected_folder.get() == request.folder
            and self._current_request_key() == request.key
        )

    async def load_messages(self) -> ListStatus:
        """Load the selected folder page into ``state.messages``.

        Returns:
            The ListStatus of this call (joined callers get JOINED)
        """
        set_correlation_id(str(uuid.uuid4()))
        start_time = time.monotonic()
        request = self._build_request()
        try:
            if not request.folder:
                return ListStatus.NO_FOLDER
            status = await self._load_messages(request)
        except OperationCancelled as e:
            logger.debug("message_list_aborted", folder=request.folder, reason=e.reason)
            status = ListStatus.ABORTED
        finally:
            set_correlation_id(None)

        logger.debug(
            "message_list_complete",
            folder=request.folder,
            page=request.page,
            status=status.value,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        return status

    async def _load_messages(self, request: _ListRequest) -> ListStatus:
        state = self.state
        session = self._session

        memory = session.pages.get(request.memory_key) if request.is_basic else None
        if memory is not None and not request.append:
            state.messages.set(list(memory.messages))
            state.has_next_page.set(memory.has_next_page)
            request.cached_ids = {m.id for m in memory.messages}

        await self._paint_from_store(request, painted=memory is not None)

        existing = session.list_inflight.get(request.key)
        if existing is not None:
            logger.debug("message_list_joined", key=request.key)
            await InFlightRegistry.join(existing)
            return ListStatus.JOINED

        task = session.list_inflight.start(request.key, lambda: self._sync(request))
        return await InFlightRegistry.join(task)

    async def _read_cached_page(self, request: _ListRequest) -> list[Message]:
        offset = (request.page - 1) * request.limit
        if request.is_basic and request.sort_order in ("newest", "oldest"):
            rows = await self._store.range_messages(
                request.account,
                request.folder,
                descending=request.sort_order == "newest",
                offset=offset,
                limit=request.limit,
            )
        else:
            rows = await self._store.list_folder_messages(request.account, request.folder)
            rows = [m for m in rows if _matches_filters(m, request)]
            rows = sort_messages(rows, request.sort_order)[offset : offset + request.limit]
        return [decorate_cached(m) for m in rows]

    async def _paint_from_store(self, request: _ListRequest, painted: bool) -> None:
        try:
            cached = await self._read_cached_page(request)
            has_next = None
            if cached and request.is_basic:
                total = await self._store.count_messages(request.account, request.folder)
                has_next = request.page * request.limit < total
        except DatabaseError as e:
            logger.warning("message_cache_read_failed", folder=request.folder, error=str(e))
            return

        if not cached:
            return
        request.cached_ids |= {m.id for m in cached}
        if not self._is_current(request):
            return
        if not painted and not request.append:
            self.state.messages.set(cached)
        if has_next is not None:
            self.state.has_next_page.set(has_next)
        if request.is_basic and not painted:
            self._session.pages.put(request.memory_key, cached, bool(has_next))

    def _page_params(self, request: _ListRequest, limit: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "folder": request.folder,
            "page": request.page,
            "limit": limit,
            "sort": request.sort_param,
            "raw": False,
            "attachments": False,
        }
        if request.query:
            params["search"] = request.query
        if request.unread_only:
            params["is_unread"] = True
        if request.attachments_only:
            params["has_attachments"] = True
        return params

    async def _fetch_page(
        self, request: _ListRequest, limit: int
    ) -> tuple[str, list[dict[str, Any]] | None, bool]:
        """Fetch one page: worker first, then the API.

        Returns:
            (source, items or None when the server sent no content, has_more)
        """
        params = self._page_params(request, limit)
        worker_result = await self._session.worker.message_page(
            {**params, "account": request.account}
        )
        answer = worker_result.value if worker_result.ok else None
        if isinstance(answer, dict) and isinstance(answer.get("messages"), list):
            return "worker", answer["messages"], bool(answer.get("hasNextPage"))
        if not worker_result.ok:
            logger.debug(
                "worker_page_unavailable",
                kind=worker_result.kind.value if worker_result.kind else None,
            )

        items = await self._session.api.list_messages(params)
        if items is None:
            return "api", None, False
        return "api", items, len(items) >= limit

    def _normalize(self, request: _ListRequest, items: list[dict[str, Any]]) -> list[Message]:
        messages = []
        for raw in items:
            if not isinstance(raw, dict):
                continue
            message = normalize_message(raw, request.account, request.folder)
            if message is not None:
                messages.append(message)
        return merge_message_pages([], messages)

    async def _preview(self, request: _ListRequest) -> None:
        limit = self._session.config.list_sync.preview_limit
        _, items, _ = await self._fetch_page(request, limit)
        if items is None or request.full_applied or not self._is_current(request):
            logger.debug("message_preview_discarded", folder=request.folder)
            return
        preview = self._normalize(request, items)
        if preview:
            self.state.messages.set(preview)
            logger.debug("message_preview_applied", folder=request.folder, count=len(preview))

    async def _sync(self, request: _ListRequest) -> ListStatus:
        state = self.state
        session = self._session
        try:
            if not request.has_cache:
                state.loading.set(True)
                if request.limit > session.config.list_sync.preview_limit:
                    session.spawn(self._preview(request), name="message_preview")

            try:
                source, items, has_more = await self._fetch_page(request, request.limit)
            finally:
                # A late preview must not overwrite the result or the error
                request.full_applied = True
            if items is None:
                logger.debug("message_list_no_content", folder=request.folder)
                if self._is_current(request):
                    state.loading.set(False)
                return ListStatus.NO_CONTENT

            messages = self._normalize(request, items)
            messages = await merge_missing_labels(self._store, request.account, messages)
            messages = await merge_missing_from(self._store, request.account, messages)
            stale = not self._is_current(request)

            if request.has_cache and request.is_basic and not request.append and not messages:
                logger.info("message_list_empty_preserved", folder=request.folder)
                if not stale:
                    state.loading.set(False)
                return ListStatus.EMPTY_PRESERVED

            should_prune = (
                not request.append
                and request.page == 1
                and request.is_basic
                and request.has_cache
                and bool(messages)
            )
            fresh_ids = {m.id for m in messages}
            pruned = sorted(request.cached_ids - fresh_ids) if should_prune else []

            if not stale:
                if request.append:
                    state.messages.set(merge_message_pages(state.messages.get(), messages))
                else:
                    state.messages.set(messages)
                state.has_next_page.set(has_more)
                selected = state.selected_message.get()
                if not messages and selected is not None and selected.folder == request.folder:
                    state.selected_message.set(None)
            else:
                logger.debug("message_list_stale", folder=request.folder, key=request.key)

            await self._persist(request, messages, pruned, has_more, source)

            if not stale:
                state.loading.set(False)
                state.error.set("")
                await self.update_folder_unread_counts()
            logger.info(
                "message_list_synced",
                folder=request.folder,
                page=request.page,
                source=source,
                count=len(messages),
                pruned=len(pruned),
                stale=stale,
            )
            return ListStatus.STALE if stale else ListStatus.UPDATED

        except MailSyncError as e:
            if not self._is_current(request):
                logger.debug("message_list_stale_error", folder=request.folder, error=str(e))
                return ListStatus.STALE
            logger.warning("message_list_failed", folder=request.folder, error=str(e))
            state.error.set(str(e))
            state.loading.set(False)
            return ListStatus.ERROR

    async def _persist(
        self,
        request: _ListRequest,
        messages: list[Message],
        pruned: list[str],
        has_more: bool,
        source: str,
    ) -> None:
        session = self._session
        try:
            await self._store.save_page(messages, [(request.account, i) for i in pruned])
        except DatabaseError as e:
            logger.warning("message_page_persist_failed", folder=request.folder, error=str(e))

        if pruned:
            session.pages.invalidate_folder(request.account, request.folder)
            if self.search_index is not None:
                session.spawn(
                    self.search_index.remove_from_index(pruned), name="search_index_remove"
                )
        if messages and request.is_basic and not request.append:
            session.pages.put(request.memory_key, messages, has_more)

        session.spawn(self._check_quota_and_evict(), name="quota_check")
        if source != "worker" and self.search_index is not None and messages:
            session.spawn(self._index(messages), name="search_index")

    async def _index(self, messages: list[Message]) -> None:
        """Index a fetched page, retrying once after a short delay."""
        assert self.search_index is not None
        result = await capture(self.search_index.index_messages(messages))
        if result.ok:
            return
        logger.warning("search_index_failed", error=result.message, retrying=True)
        await asyncio.sleep(self.index_retry_delay)
        retry = await capture(self.search_index.index_messages(messages))
        if not retry.ok:
            logger.warning("search_index_retry_failed", error=retry.message)

    async def _check_quota_and_evict(self) -> int:
        """Evict the oldest bodies when storage use is over the prefetch threshold."""
        threshold = self._session.config.prefetch.quota_threshold
        estimate = await self._store.storage_estimate()
        if estimate.ratio < threshold:
            return 0
        evicted = await self._store.evict_oldest_bodies(EVICTION_BATCH)
        logger.info("quota_eviction", ratio=round(estimate.ratio, 3), evicted=evicted)
        return evicted

    # =========================================================================
    # Folders
    # =========================================================================

    def select_folder(self, path: str) -> asyncio.Task[ListStatus]:
        """Select a folder and start loading page 1.

        Re-selecting the current folder clears the search and filters.
        """
        state = self.state
        if state.selected_folder.get() == path:
            state.clear_filters()
        state.selected_folder.set(path)
        state.page.set(1)
        state.selected_message.set(None)
        return asyncio.ensure_future(self.load_messages())

    def _select_default_folder(self, folders: list[Folder]) -> None:
        if self.state.selected_folder.get() or not folders:
            return
        inbox = next((f for f in folders if f.path.upper() == INBOX), folders[0])
        self.state.selected_folder.set(inbox.path)

    async def load_folders(self, force: bool = False) -> list[Folder]:
        """Load the folder tree for the active account.

        Concurrent calls for one account share a single load; a load
        finished less than 15 seconds ago is reused unless ``force``.
        """
        account = self._session.current_account
        fetched_at = self._folders_fetched_at.get(account)
        fresh = fetched_at is not None and time.monotonic() - fetched_at < FOLDERS_CACHE_TTL
        if fresh and not force:
            if not self.state.folders.get():
                await self._paint_folders_from_store(account)
            return self.state.folders.get()

        task = self._session.folder_inflight.start(account, lambda: self._load_folders(account))
        return await InFlightRegistry.join(task)

    async def _paint_folders_from_store(self, account: str) -> bool:
        try:
            cached = await self._store.get_folders(account)
        except DatabaseError as e:
            logger.warning("folder_cache_read_failed", account=account, error=str(e))
            return False
        if not cached or self._session.current_account != account:
            return False
        cached = sorted(cached, key=lambda f: (f.path.upper() != INBOX, f.path))
        self.state.folders.set(cached)
        self._select_default_folder(cached)
        return True

    async def _load_folders(self, account: str) -> list[Folder]:
        session = self._session
        if await self._paint_folders_from_store(account):
            await self.update_folder_unread_counts()

        worker_result = await session.worker.folders(account)
        answer = worker_result.value if worker_result.ok else None
        if isinstance(answer, dict) and isinstance(answer.get("folders"), list):
            items = answer["folders"]
            source = "worker"
        else:
            try:
                items = await session.api.list_folders()
            except MailSyncError as e:
                logger.warning("folder_fetch_failed", account=account, error=str(e))
                self.state.error.set(str(e))
                return self.state.folders.get()
            source = "api"

        folders = build_folder_list(items, account)
        if source == "api":
            try:
                await self._store.replace_folders(account, folders)
            except DatabaseError as e:
                logger.warning("folder_cache_write_failed", account=account, error=str(e))

        if session.current_account != account:
            logger.debug("folder_list_stale", account=account)
            return folders

        self.state.folders.set(folders)
        self._select_default_folder(folders)
        await self.update_folder_unread_counts()
        self._folders_fetched_at[account] = time.monotonic()
        logger.info("folders_loaded", account=account, source=source, count=len(folders))
        return folders

    async def update_folder_unread_counts(self) -> None:
        """Recompute unread counts from cached messages, capped at each folder's total."""
        account = self._session.current_account
        folders = self.state.folders.get()
        if not folders:
            return
        try:
            counts = await self._store.count_unread_by_folder(account)
        except DatabaseError as e:
            logger.warning("unread_count_failed", account=account, error=str(e))
            return
        if self._session.current_account != account:
            return

        updated = []
        for folder in folders:
            unread = counts.get(folder.path, 0)
            if folder.total_count > 0:
                unread = min(unread, folder.total_count)
            updated.append(replace(folder, unread_count=unread))
        self.state.folders.set(updated)
