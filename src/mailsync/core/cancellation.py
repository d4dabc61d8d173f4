"""Cooperative cancellation tokens.

A CancellationToken is a one-way flag: once cancelled it stays cancelled.
Long operations call ``raise_if_cancelled()`` before each suspension point and
right after each await. ``any_of()`` composes tokens so that a per-call token
(supplied by the UI) and the account token can both abort the same operation.

Usage:
    from mailsync.core.cancellation import CancellationToken

    account_token = CancellationToken()
    call_token = CancellationToken()
    token = CancellationToken.any_of(call_token, account_token)

    token.raise_if_cancelled()
    data = await token.guard(fetch())  # raises OperationCancelled if cancelled mid-await
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mailsync.core.errors import OperationCancelled
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal with callbacks and composition.

    Attributes:
        label: Optional name used in log events (e.g. "account:alice@example.com")
    """

    def __init__(self, label: str | None = None):
        self.label = label
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._event: asyncio.Event | None = None
        self._detach: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called on this token or a composed parent."""
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the token and fire callbacks. Calling twice is a no-op."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(
                    "cancellation_callback_failed",
                    token=self.label,
                    error=str(e),
                )
        logger.debug("token_cancelled", token=self.label, reason=reason)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback to run once when the token is cancelled.

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the callback
        """
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        """Cancellation checkpoint.

        Raises:
            OperationCancelled: If the token has been cancelled
        """
        if self._cancelled:
            raise OperationCancelled(self._reason or "cancelled")

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        The token is checked before the await and right after it. If the
        token is cancelled while the awaitable is pending, the underlying
        task is cancelled and OperationCancelled is raised.

        Raises:
            OperationCancelled: If the token is or becomes cancelled
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            self.raise_if_cancelled()

        result = task.result()
        self.raise_if_cancelled()
        return result

    @classmethod
    def any_of(cls, *tokens: CancellationToken | None) -> CancellationToken:
        """Compose tokens: the result is cancelled when any input is cancelled.

        ``None`` entries are ignored so callers can pass an optional per-call
        token without branching. A single real token is returned as-is.
        """
        real = [t for t in tokens if t is not None]
        if len(real) == 1:
            return real[0]

        composite = cls(label="+".join(t.label or "token" for t in real) or None)
        for token in real:
            if token.cancelled:
                composite.cancel(token.reason or "cancelled")
                return composite

        for token in real:
            composite._detach.append(
                token.add_callback(
                    lambda source=token: composite.cancel(source.reason or "cancelled")
                )
            )
        return composite

    def release(self) -> None:
        """Unregister a composed token from its parents.

        Call when the operation that owns the composite settles so long-lived
        parents (the account token) do not accumulate callbacks.
        """
        detach, self._detach = self._detach, []
        for remove in detach:
            remove()

    def __repr__(self) -> str:
        state = f"cancelled:{self._reason}" if self._cancelled else "active"
        return f"CancellationToken(label={self.label!r}, {state})"
