"""Adapter for the background sync worker.

The worker is an optional message-passing peer that can fetch message
details, pages and folders from its own caches, parse MIME and hold PGP keys.
Engines talk to it only through WorkerClient, which applies per-action
timeouts and turns every outcome into a Result. When no worker is running
each call reports UNAVAILABLE and the caller takes its network path.

Usage:
    from mailsync.remote.worker import InProcessWorker, WorkerClient

    worker = WorkerClient(InProcessWorker())
    result = await worker.parse(raw_source)
    if result.ok:
        body = result.value["body"]
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol

from mailsync.core.errors import WorkerTimeoutError, WorkerUnavailableError
from mailsync.core.logging import get_logger
from mailsync.core.result import ErrorKind, Result, capture
from mailsync.mime import parse_raw_message

if TYPE_CHECKING:
    from mailsync.config_schema import WorkerConfig
    from mailsync.core.cancellation import CancellationToken

logger = get_logger(__name__)

# Action names understood by worker transports
MESSAGE_DETAIL = "messageDetail"
MESSAGE_PAGE = "messagePage"
FOLDERS = "folders"
PARSE_RAW = "parseRaw"
DECRYPT_MESSAGE = "decryptMessage"
UNLOCK_PGP_KEY = "unlockPgpKey"
PGP_KEYS = "pgpKeys"

SYNC_TASK_TIMEOUT = 10.0
DEFAULT_WORKER_TIMEOUT = 30.0


class WorkerTransport(Protocol):
    """Request/response channel to a worker process, thread or service."""

    async def request(self, action: str, payload: dict[str, Any]) -> Any:
        """Send a request and return the worker's answer.

        Raises:
            WorkerUnavailableError: If the worker cannot handle the action
        """
        ...

    def notify(self, action: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget message (no answer expected)."""
        ...


class WorkerClient:
    """Timeout-bounded, Result-returning facade over a WorkerTransport.

    Attributes:
        transport: The underlying channel, or None when no worker is running
    """

    def __init__(
        self,
        transport: WorkerTransport | None = None,
        *,
        timeout: float = DEFAULT_WORKER_TIMEOUT,
        decrypt_timeout: float = DEFAULT_WORKER_TIMEOUT,
        task_timeout: float = SYNC_TASK_TIMEOUT,
    ):
        self.transport = transport
        self.timeout = timeout
        self.decrypt_timeout = decrypt_timeout
        self.task_timeout = task_timeout

    @classmethod
    def from_config(cls, transport: WorkerTransport | None, config: WorkerConfig) -> WorkerClient:
        return cls(
            transport,
            timeout=config.timeout_seconds,
            decrypt_timeout=config.decrypt_timeout_seconds,
        )

    @property
    def available(self) -> bool:
        return self.transport is not None

    async def _send(self, action: str, payload: dict[str, Any], timeout: float) -> Any:
        assert self.transport is not None
        try:
            return await asyncio.wait_for(self.transport.request(action, payload), timeout)
        except TimeoutError as e:
            raise WorkerTimeoutError(action, timeout) from e

    async def call(
        self,
        action: str,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Result[Any]:
        """Send one request and capture its outcome.

        Returns:
            Result with the worker's answer; UNAVAILABLE without a transport,
            TIMEOUT when the worker does not answer in time, CANCELLED when
            cancel_token fires
        """
        if self.transport is None:
            return Result.failure(ErrorKind.UNAVAILABLE, "Sync worker is not running")

        send = self._send(action, payload, timeout or self.timeout)
        if cancel_token is not None:
            result = await capture(cancel_token.guard(send))
        else:
            result = await capture(send)

        if not result.ok and result.kind is not ErrorKind.CANCELLED:
            logger.debug(
                "worker_request_failed",
                action=action,
                kind=result.kind.value if result.kind else None,
                error=result.message,
            )
        return result

    async def message_detail(
        self,
        account: str,
        folder: str | None,
        message: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Result[dict[str, Any]]:
        """Ask the worker for a message body (``body``, ``raw``, ``pgpLocked``, ...)."""
        return await self.call(
            MESSAGE_DETAIL,
            {"account": account, "folder": folder, "message": message},
            cancel_token=cancel_token,
        )

    async def message_page(
        self, params: dict[str, Any], *, cancel_token: CancellationToken | None = None
    ) -> Result[dict[str, Any]]:
        """Ask the worker for a list page (``messages``, ``hasNextPage``)."""
        return await self.call(
            MESSAGE_PAGE, params, timeout=self.task_timeout, cancel_token=cancel_token
        )

    async def folders(
        self, account: str, *, cancel_token: CancellationToken | None = None
    ) -> Result[dict[str, Any]]:
        return await self.call(
            FOLDERS, {"account": account}, timeout=self.task_timeout, cancel_token=cancel_token
        )

    async def parse(
        self,
        raw: str,
        existing_attachments: list[dict[str, Any]] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Result[dict[str, Any]]:
        """MIME-parse a raw source into ``body``, ``textContent`` and ``attachments``."""
        return await self.call(
            PARSE_RAW,
            {"raw": raw, "existingAttachments": existing_attachments or []},
            timeout=self.decrypt_timeout,
            cancel_token=cancel_token,
        )

    async def decrypt(
        self,
        raw: str,
        message_id: str,
        account: str,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Result[dict[str, Any]]:
        """Decrypt armored text with the keys the worker holds."""
        return await self.call(
            DECRYPT_MESSAGE,
            {"raw": raw, "messageId": message_id, "account": account},
            timeout=self.decrypt_timeout,
            cancel_token=cancel_token,
        )

    async def unlock_key(
        self,
        key_name: str,
        key_value: str,
        passphrase: str | None = None,
        *,
        check_only: bool = False,
        remember: bool = False,
    ) -> Result[dict[str, Any]]:
        """Unlock (or, with check_only, test) a private key.

        The answer carries ``success``, ``needsPassphrase`` and ``alreadyUnlocked``.
        """
        return await self.call(
            UNLOCK_PGP_KEY,
            {
                "keyName": key_name,
                "keyValue": key_value,
                "passphrase": passphrase,
                "checkOnly": check_only,
                "remember": remember,
            },
        )

    def refresh_keys(self, account: str, keys: list[dict[str, Any]]) -> None:
        """Push the current key set to the worker so it re-reads passphrases."""
        if self.transport is None:
            return
        self.transport.notify(PGP_KEYS, {"account": account, "keys": keys})


class InProcessWorker:
    """Minimal worker that answers MIME parsing in-process.

    Fetch and PGP actions need a real worker and are reported unavailable,
    which sends callers down their network paths.
    """

    async def request(self, action: str, payload: dict[str, Any]) -> Any:
        if action != PARSE_RAW:
            raise WorkerUnavailableError(f"In-process worker does not handle '{action}'")

        # InvalidMessageError propagates and becomes an INVALID result
        parsed = parse_raw_message(payload.get("raw", ""), payload.get("existingAttachments"))
        return {
            "body": parsed.body,
            "textContent": parsed.text_content,
            "attachments": [att.to_dict() for att in parsed.attachments],
            "headerMessageId": parsed.header_message_id,
        }

    def notify(self, action: str, payload: dict[str, Any]) -> None:
        logger.debug("worker_notify_ignored", action=action)
