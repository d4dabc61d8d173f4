"""Background body prefetch.

Warms the body cache for a folder page so that opening a message is a
cache hit. The most useful messages go first (unread, inbox, recent, with
attachments); entries already complete in the cache are skipped with a
single bulk read; the rest run through a small worker pool that calls the
message loader with passphrase prompts disabled.

The whole batch is skipped while the store is under quota pressure.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from mailsync.core.errors import DatabaseError, MailSyncError
from mailsync.core.logging import get_logger, set_correlation_id
from mailsync.db.store import utcnow
from mailsync.engine.message_loader import (
    DetailCallbacks,
    DetailStatus,
    is_cached_body_complete,
    message_api_id,
)

if TYPE_CHECKING:
    from mailsync.db.store import Message
    from mailsync.engine.message_loader import MessageLoader
    from mailsync.engine.session import MailSession

logger = get_logger(__name__)


def calculate_prefetch_priority(
    message: Message, folder: str, now: datetime | None = None
) -> int:
    """Score a message for prefetch ordering; higher goes first.

    Unread +100, inbox +50, younger than a day +40 (or a week +20),
    attachments +10.
    """
    score = 0
    if message.is_unread:
        score += 100
    if (folder or "").upper() == "INBOX":
        score += 50
    if message.date is not None:
        age = (now or utcnow()) - message.date
        if age < timedelta(days=1):
            score += 40
        elif age < timedelta(days=7):
            score += 20
    if message.has_attachments:
        score += 10
    return score


class PrefetchScheduler:
    """Prefetches message bodies through the MessageLoader."""

    def __init__(self, session: MailSession, loader: MessageLoader):
        self._session = session
        self._loader = loader

    async def should_throttle_for_quota(self) -> bool:
        """True when storage use is at or above the configured threshold."""
        threshold = self._session.config.prefetch.quota_threshold
        try:
            estimate = await self._session.store.storage_estimate()
        except DatabaseError as e:
            logger.warning("storage_estimate_failed", error=str(e))
            return False
        return estimate.ratio >= threshold

    async def prefetch_bodies(
        self,
        messages: list[Message],
        *,
        limit: int | None = None,
        concurrency: int | None = None,
        folder: str = "",
        prioritize: bool | None = None,
    ) -> int:
        """Load and cache the bodies of up to ``limit`` messages.

        Args:
            messages: Candidate messages, usually the visible page
            limit: Maximum messages considered (default from config)
            concurrency: Worker pool size (default from config)
            folder: Folder the messages belong to, used for scoring
            prioritize: Sort by priority before truncating (default from config)

        Returns:
            Number of messages whose detail load was started
        """
        settings = self._session.config.prefetch
        if not settings.enabled or not messages:
            return 0

        limit = max(1, limit or settings.limit)
        concurrency = max(1, concurrency or settings.concurrency)
        prioritize = settings.prioritize if prioritize is None else prioritize

        if await self.should_throttle_for_quota():
            logger.warning("prefetch_skipped_quota", count=len(messages))
            return 0

        candidates = list(messages)
        if prioritize and len(candidates) > 1:
            now = utcnow()
            candidates.sort(
                key=lambda m: calculate_prefetch_priority(m, folder, now), reverse=True
            )
        candidates = candidates[:limit]

        with_ids = [(m, api_id) for m in candidates if (api_id := message_api_id(m))]
        if not with_ids:
            return 0

        account = self._session.current_account
        try:
            cached = await self._session.store.bulk_get_bodies(
                account, [api_id for _, api_id in with_ids]
            )
        except DatabaseError as e:
            logger.warning("prefetch_cache_read_failed", error=str(e))
            cached = {}

        pending = [m for m, api_id in with_ids if not is_cached_body_complete(cached.get(api_id))]
        if not pending:
            return 0

        set_correlation_id(str(uuid.uuid4()))
        start_time = time.monotonic()
        statuses: list[DetailStatus] = []
        try:
            await self._run_pool(pending, concurrency, statuses)
        finally:
            logger.info(
                "prefetch_complete",
                folder=folder,
                requested=len(messages),
                fetched=len(pending),
                failed=statuses.count(DetailStatus.ERROR),
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            set_correlation_id(None)
        return len(pending)

    async def _run_pool(
        self, pending: list[Message], concurrency: int, statuses: list[DetailStatus]
    ) -> None:
        queue: asyncio.Queue[Message] = asyncio.Queue()
        for message in pending:
            queue.put_nowait(message)
        token = self._session.account_token

        async def worker() -> None:
            while not queue.empty() and not token.cancelled:
                message = queue.get_nowait()
                try:
                    status = await self._loader.load_detail(
                        message, DetailCallbacks(allow_pgp_prompt=False, cancel_token=token)
                    )
                except MailSyncError as e:
                    logger.debug("prefetch_body_failed", message_id=message.id, error=str(e))
                    status = DetailStatus.ERROR
                statuses.append(status)

        workers = min(concurrency, len(pending))
        await asyncio.gather(*(worker() for _ in range(workers)))
