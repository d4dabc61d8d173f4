"""Offline mutation queue.

Mail operations that could not reach the server (toggle read, star, move,
delete, label) are queued per account in the store's meta table and
replayed in order once the client is online again.

Each entry records its type, payload, status, retry count and the time of
the next allowed attempt. A failed attempt backs off exponentially
(3 s doubling, capped at 2 minutes, plus up to 20% jitter); after five
failures the entry is dropped as permanently failed.

The caller applies the optimistic local update; the queue only talks to the
server.
"""

from __future__ import annotations

import random
import secrets
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from mailsync.core.errors import DatabaseError, MailSyncError, MutationQueueError
from mailsync.core.logging import get_logger
from mailsync.core.observable import Observable

if TYPE_CHECKING:
    from mailsync.config_schema import MutationQueueConfig
    from mailsync.engine.session import MailSession

logger = get_logger(__name__)

QUEUE_META_KEY = "mutation_queue"

MutationType = Literal["toggleRead", "toggleStar", "move", "delete", "label"]

MUTATION_TYPES: frozenset[str] = frozenset({"toggleRead", "toggleStar", "move", "delete", "label"})


@dataclass
class Mutation:
    """One queued server operation."""

    id: str
    type: str
    payload: dict[str, Any]
    status: str = "pending"
    retry_count: int = 0
    created_at: float = field(default_factory=time.time)
    next_retry_at: float | None = None
    last_error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mutation:
        return cls(
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
            payload=dict(data.get("payload") or {}),
            status=str(data.get("status") or "pending"),
            retry_count=int(data.get("retry_count") or 0),
            created_at=float(data.get("created_at") or time.time()),
            next_retry_at=data.get("next_retry_at"),
            last_error=data.get("last_error"),
        )


def new_mutation_id(now: float | None = None) -> str:
    """``mut_<epoch ms>_<random>``."""
    return f"mut_{int((now or time.time()) * 1000)}_{secrets.token_hex(3)}"


def calculate_backoff(retry_count: int, base: float = 3.0, maximum: float = 120.0) -> float:
    """Seconds to wait before the next attempt: ``min(base * 2^n, max)`` plus up to 20%."""
    delay = min(base * (2**retry_count), maximum)
    return delay + delay * random.random() * 0.2


class MutationQueue:
    """Per-account persistent queue of server mutations.

    Attributes:
        queued: Observable number of entries not yet completed
        processing: Observable flag set while process() runs
    """

    def __init__(self, session: MailSession, *, clock: Callable[[], float] = time.time):
        self._session = session
        self._clock = clock
        self._processing = False
        self.queued: Observable[int] = Observable(0, name="mutation_queue_count")
        self.processing: Observable[bool] = Observable(False, name="mutation_queue_processing")

    @property
    def _settings(self) -> MutationQueueConfig:
        return self._session.config.mutation_queue

    async def read(self, account: str | None = None) -> list[Mutation]:
        """Queued entries for ``account`` (default: the active account)."""
        account = account or self._session.current_account
        try:
            stored = await self._session.store.get_meta(account, QUEUE_META_KEY, [])
        except DatabaseError as e:
            logger.warning("mutation_queue_read_failed", account=account, error=str(e))
            return []
        if not isinstance(stored, list):
            return []
        return [Mutation.from_dict(item) for item in stored if isinstance(item, dict)]

    async def _write(self, account: str, queue: list[Mutation]) -> None:
        await self._session.store.put_meta(
            account, QUEUE_META_KEY, [asdict(mutation) for mutation in queue]
        )
        if account == self._session.current_account:
            self.queued.set(sum(1 for m in queue if m.status != "completed"))

    async def queue_mutation(
        self, mutation_type: MutationType, payload: dict[str, Any]
    ) -> Mutation:
        """Persist a mutation and, when online, start processing the queue.

        Raises:
            MutationQueueError: If the type is unknown or the queue cannot be written
        """
        if mutation_type not in MUTATION_TYPES:
            raise MutationQueueError(f"Unknown mutation type: {mutation_type}", mutation_type)

        account = self._session.current_account
        queue = await self.read(account)
        mutation = Mutation(
            id=new_mutation_id(self._clock()),
            type=mutation_type,
            payload={**payload, "account": account},
            created_at=self._clock(),
        )
        queue.append(mutation)
        try:
            await self._write(account, queue)
        except DatabaseError as e:
            raise MutationQueueError(
                f"Failed to queue {mutation_type} mutation: {e}", mutation_type
            ) from e

        logger.info(
            "mutation_queued",
            mutation_id=mutation.id,
            type=mutation_type,
            message_id=payload.get("messageId"),
        )
        if self._session.online.get():
            self._session.spawn(self.process(), name="mutation_queue")
        return mutation

    async def _execute(self, mutation: Mutation) -> None:
        api = self._session.api
        payload = mutation.payload
        message_id = str(payload.get("messageId") or "")
        if not message_id:
            raise MutationQueueError("Mutation has no messageId", mutation.type)

        if mutation.type == "toggleRead":
            flags = [f for f in payload.get("flags") or [] if f != "\\Seen"]
            if not payload.get("isUnread"):
                flags.append("\\Seen")
            await api.update_message(message_id, {"flags": flags, "folder": payload.get("folder")})
        elif mutation.type == "toggleStar":
            flags = [f for f in payload.get("flags") or [] if f != "\\Flagged"]
            if not payload.get("isStarred"):
                flags.append("\\Flagged")
            await api.update_message(message_id, {"flags": flags, "folder": payload.get("folder")})
        elif mutation.type == "move":
            await api.update_message(message_id, {"folder": payload.get("targetFolder")})
        elif mutation.type == "delete":
            await api.delete_message(message_id, permanent=bool(payload.get("permanent")))
        elif mutation.type == "label":
            await api.update_message(message_id, {"labels": payload.get("labels") or []})
        else:
            raise MutationQueueError(f"Unknown mutation type: {mutation.type}", mutation.type)

    async def process(self) -> int:
        """Replay due entries in order.

        Only one process() runs at a time; a concurrent call returns at once.
        Completed and permanently failed entries are removed afterwards.

        Returns:
            Number of mutations that completed in this run
        """
        if self._processing or not self._session.online.get():
            return 0
        self._processing = True
        self.processing.set(True)
        account = self._session.current_account
        completed = 0
        max_retries = self._settings.max_retries
        try:
            queue = await self.read(account)
            modified = False
            for mutation in queue:
                if not self._session.online.get():
                    break
                if mutation.status == "completed":
                    continue
                if mutation.status == "failed" and mutation.retry_count >= max_retries:
                    continue
                if mutation.next_retry_at and self._clock() < mutation.next_retry_at:
                    continue

                mutation.status = "processing"
                modified = True
                try:
                    await self._execute(mutation)
                except MailSyncError as e:
                    self._record_failure(mutation, e)
                else:
                    mutation.status = "completed"
                    completed += 1
                    logger.info("mutation_applied", mutation_id=mutation.id, type=mutation.type)

            if modified:
                failed = [
                    m for m in queue if m.status == "failed" and m.retry_count >= max_retries
                ]
                remaining = [m for m in queue if m.status != "completed" and m not in failed]
                # Keep entries queued while this run was executing
                known = {m.id for m in queue}
                remaining += [m for m in await self.read(account) if m.id not in known]
                await self._write(account, remaining)
                if failed:
                    logger.error(
                        "mutations_permanently_failed",
                        account=account,
                        count=len(failed),
                        ids=[m.id for m in failed],
                    )
        finally:
            self._processing = False
            self.processing.set(False)
        return completed

    def _record_failure(self, mutation: Mutation, error: Exception) -> None:
        settings = self._settings
        mutation.retry_count += 1
        if mutation.retry_count >= settings.max_retries:
            mutation.status = "failed"
            mutation.last_error = str(error) or "Unknown error"
        else:
            mutation.status = "pending"
            mutation.next_retry_at = self._clock() + calculate_backoff(
                mutation.retry_count,
                settings.base_backoff_seconds,
                settings.max_backoff_seconds,
            )
        logger.warning(
            "mutation_failed",
            mutation_id=mutation.id,
            type=mutation.type,
            retry_count=mutation.retry_count,
            error=str(error),
        )

    async def count(self) -> int:
        """Entries not yet completed for the active account."""
        count = sum(1 for m in await self.read() if m.status != "completed")
        self.queued.set(count)
        return count

    async def clear_completed(self) -> None:
        """Drop completed and failed entries, keeping pending and processing ones."""
        account = self._session.current_account
        queue = await self.read(account)
        await self._write(account, [m for m in queue if m.status in ("pending", "processing")])
