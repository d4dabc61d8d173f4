"""Periodic inbox refresh and mutation queue replay.

Two APScheduler interval jobs run on the event loop:
- ``inbox_poll``: picks up config.yaml edits, then reloads the message
  list while the poller folder is selected and the client is online
- ``mutation_queue``: replays queued mutations whose backoff has expired

start() and stop() may be called repeatedly; destroy() is final.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mailsync.config import get_config, reload_config_if_changed
from mailsync.core.logging import get_logger, set_correlation_id

if TYPE_CHECKING:
    from mailsync.engine.list_sync import ListSyncEngine
    from mailsync.engine.mutations import MutationQueue
    from mailsync.engine.session import MailSession

logger = get_logger(__name__)


class InboxPoller:
    """Keeps the inbox fresh while it is on screen."""

    def __init__(
        self,
        session: MailSession,
        list_engine: ListSyncEngine,
        queue: MutationQueue | None = None,
    ):
        self._session = session
        self._list_engine = list_engine
        self._queue = queue
        self._scheduler: AsyncIOScheduler | None = None
        self._destroyed = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    async def tick(self) -> bool:
        """One poll. Returns True if a reload was started."""
        if reload_config_if_changed():
            self._session.config = get_config()
            logger.info("poller_config_reloaded")
        config = self._session.config.poller
        if not self._session.online.get():
            return False
        if self._list_engine.state.selected_folder.get() != config.folder:
            return False

        set_correlation_id(str(uuid.uuid4()))
        try:
            status = await self._list_engine.load_messages()
            logger.info("inbox_poll", folder=config.folder, status=status.value)
        finally:
            set_correlation_id(None)
        return True

    async def _process_queue(self) -> None:
        if self._queue is None or not self._session.online.get():
            return
        completed = await self._queue.process()
        if completed:
            logger.info("mutation_queue_replayed", completed=completed)

    def start(self) -> None:
        """Schedule the jobs. Must be called from a running event loop."""
        if self._destroyed or self._scheduler is not None:
            return
        config = self._session.config
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.tick,
            "interval",
            minutes=config.poller.interval_minutes,
            id="inbox_poll",
            max_instances=1,
            coalesce=True,
        )
        if self._queue is not None:
            scheduler.add_job(
                self._process_queue,
                "interval",
                seconds=config.mutation_queue.process_interval_seconds,
                id="mutation_queue",
                max_instances=1,
                coalesce=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "poller_started",
            folder=config.poller.folder,
            interval_minutes=config.poller.interval_minutes,
        )

    def stop(self) -> None:
        """Pause polling; start() resumes it."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("poller_stopped")

    def destroy(self) -> None:
        self.stop()
        self._destroyed = True
