"""Optimistic mailbox actions.

Move and delete update the visible list and the cache first, then call the
server. A failed or offline call is handed to the MutationQueue for replay;
only if queueing fails too is the visible list rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from mailsync.core.errors import DatabaseError, MailSyncError, MutationQueueError
from mailsync.core.logging import get_logger
from mailsync.core.result import capture
from mailsync.engine.message_loader import message_api_id

if TYPE_CHECKING:
    from mailsync.db.store import Folder, Message
    from mailsync.engine.list_sync import MailboxState, SearchIndex
    from mailsync.engine.mutations import MutationQueue, MutationType
    from mailsync.engine.session import MailSession

logger = get_logger(__name__)

SENT_NAMES = frozenset({"SENT", "SENT MAIL", "SENT ITEMS"})
TRASH_NAMES = frozenset({"TRASH", "DELETED", "DELETED ITEMS"})


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a mailbox action.

    ``success`` is True when the server accepted the change or it was queued
    for replay (``queued``).
    """

    success: bool
    queued: bool = False
    reason: str | None = None


def _find_folder(folders: list[Folder], names: frozenset[str], default: str) -> str:
    for folder in folders:
        if (folder.path or "").upper() in names or (folder.name or "").upper() in names:
            return folder.path
    return default


class MailboxActions:
    """Move and delete with optimistic local updates."""

    def __init__(
        self,
        session: MailSession,
        state: MailboxState,
        queue: MutationQueue,
        search_index: SearchIndex | None = None,
    ):
        self._session = session
        self.state = state
        self.queue = queue
        self.search_index = search_index

    def sent_folder_path(self) -> str:
        return _find_folder(self.state.folders.get(), SENT_NAMES, "Sent")

    def trash_folder_path(self) -> str:
        return _find_folder(self.state.folders.get(), TRASH_NAMES, "Trash")

    def _is_sent(self, folder: str) -> bool:
        upper = (folder or "").upper()
        return upper == self.sent_folder_path().upper() or upper in SENT_NAMES

    def _is_trash(self, folder: str) -> bool:
        upper = (folder or "").upper()
        return upper == self.trash_folder_path().upper() or upper in TRASH_NAMES

    def _remove_from_view(self, message: Message) -> tuple[list[Message], Message | None]:
        """Drop ``message`` from the visible list; return the state for rollback."""
        original_list = self.state.messages.get()
        original_selected = self.state.selected_message.get()
        self.state.messages.set([m for m in original_list if m.id != message.id])
        if original_selected is not None and original_selected.id == message.id:
            self.state.selected_message.set(None)
        return original_list, original_selected

    def _rollback(self, snapshot: tuple[list[Message], Message | None]) -> None:
        original_list, original_selected = snapshot
        self.state.messages.set(original_list)
        self.state.selected_message.set(original_selected)

    async def _queue_or_rollback(
        self,
        mutation_type: MutationType,
        payload: dict[str, Any],
        snapshot: tuple[list[Message], Message | None],
    ) -> ActionResult:
        try:
            await self.queue.queue_mutation(mutation_type, payload)
        except MutationQueueError as e:
            logger.error(
                "mutation_queue_failed_rollback",
                type=mutation_type,
                message_id=payload.get("messageId"),
                error=str(e),
            )
            self._rollback(snapshot)
            return ActionResult(success=False, reason=str(e))
        return ActionResult(success=True, queued=True)

    async def move_message(self, message: Message, target: str) -> ActionResult:
        """Move a message to ``target``.

        Same-folder moves and moves out of the Sent folder are refused.
        """
        api_id = message_api_id(message)
        if not api_id:
            return ActionResult(success=False, reason="invalid_message")
        if not target or target == message.folder:
            return ActionResult(success=False, reason="same_folder")
        if self._is_sent(message.folder):
            logger.info("move_from_sent_refused", message_id=api_id)
            return ActionResult(success=False, reason="sent_folder")

        session = self._session
        account = session.current_account
        snapshot = self._remove_from_view(message)
        session.pages.invalidate_folder(account, message.folder)

        try:
            existing = await session.store.get_message(account, message.id)
            if existing is None:
                moved = replace(message, folder=target)
                await session.store.put_message(moved)
            else:
                await session.store.update_message_folder(account, message.id, target)
                moved = replace(existing, folder=target)
        except DatabaseError as e:
            logger.warning("move_cache_update_failed", message_id=message.id, error=str(e))
            moved = None
        if moved is not None and self.search_index is not None:
            indexed = await capture(self.search_index.index_messages([moved]))
            if not indexed.ok:
                logger.warning("search_index_failed", error=indexed.message)

        payload: dict[str, Any] = {"messageId": api_id, "targetFolder": target}
        if not session.online.get():
            return await self._queue_or_rollback("move", payload, snapshot)
        try:
            await session.api.update_message(api_id, {"folder": target})
        except MailSyncError as e:
            logger.warning("move_failed_queueing", message_id=api_id, error=str(e))
            return await self._queue_or_rollback("move", payload, snapshot)

        logger.info("message_moved", message_id=api_id, source=message.folder, target=target)
        return ActionResult(success=True)

    async def delete_message(self, message: Message, permanent: bool = False) -> ActionResult:
        """Delete a message.

        Unless ``permanent`` or already in a trash folder, this is a move to Trash.
        """
        if not permanent and not self._is_trash(message.folder):
            return await self.move_message(message, self.trash_folder_path())

        api_id = message_api_id(message)
        if not api_id:
            return ActionResult(success=False, reason="invalid_message")

        session = self._session
        account = session.current_account
        snapshot = self._remove_from_view(message)
        session.pages.invalidate_folder(account, message.folder)

        try:
            await session.store.save_page([], [(account, message.id)])
        except DatabaseError as e:
            logger.warning("delete_cache_update_failed", message_id=message.id, error=str(e))
        if self.search_index is not None:
            removed = await capture(self.search_index.remove_from_index([message.id]))
            if not removed.ok:
                logger.warning("search_index_remove_failed", error=removed.message)

        payload: dict[str, Any] = {"messageId": api_id, "permanent": permanent}
        if not session.online.get():
            return await self._queue_or_rollback("delete", payload, snapshot)
        try:
            await session.api.delete_message(api_id, permanent=permanent)
        except MailSyncError as e:
            logger.warning("delete_failed_queueing", message_id=api_id, error=str(e))
            return await self._queue_or_rollback("delete", payload, snapshot)

        logger.info("message_deleted", message_id=api_id, permanent=permanent)
        return ActionResult(success=True)
