"""Explicit success/failure values for collaborator calls.

Engines call the worker, the search index and other best-effort
collaborators through ``capture()`` so the failure branch is visible at the
call site instead of hidden in a broad try/except.

Usage:
    result = await capture(worker.request("folders", {"account": account}))
    if result.ok:
        folders = result.value["folders"]
    elif result.kind is ErrorKind.CANCELLED:
        return
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from mailsync.core.errors import (
    DatabaseError,
    InvalidMessageError,
    OperationCancelled,
    RemoteAPIError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)

T = TypeVar("T")


class ErrorKind(Enum):
    """Failure categories the engines branch on."""

    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    REMOTE = "remote"
    INVALID = "invalid"
    STORAGE = "storage"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a collaborator call.

    Attributes:
        value: The returned value when ok
        kind: Failure category when not ok
        message: Human-readable failure description
        error: The original exception, if one was raised
    """

    value: T | None = None
    kind: ErrorKind | None = None
    message: str = ""
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.kind is None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(
        cls, kind: ErrorKind, message: str = "", error: BaseException | None = None
    ) -> Result[T]:
        return cls(kind=kind, message=message or kind.value, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the original error.

        Raises:
            OperationCancelled: For CANCELLED results
            The original exception (or RuntimeError) for other failures
        """
        if self.ok:
            return self.value  # type: ignore[return-value]
        if self.kind is ErrorKind.CANCELLED:
            raise OperationCancelled(self.message)
        if self.error is not None:
            raise self.error
        raise RuntimeError(self.message)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception onto an ErrorKind."""
    if isinstance(error, OperationCancelled | asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(error, WorkerUnavailableError):
        return ErrorKind.UNAVAILABLE
    if isinstance(error, WorkerTimeoutError | TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, RemoteAPIError):
        return ErrorKind.NOT_FOUND if error.status_code == 404 else ErrorKind.REMOTE
    if isinstance(error, InvalidMessageError):
        return ErrorKind.INVALID
    if isinstance(error, DatabaseError):
        return ErrorKind.STORAGE
    return ErrorKind.UNKNOWN


async def capture(awaitable: Awaitable[T]) -> Result[T]:
    """Await ``awaitable`` and wrap its outcome in a Result.

    ``asyncio.CancelledError`` is re-raised: task cancellation belongs to the
    event loop, not to the caller's failure handling.
    """
    try:
        return Result.success(await awaitable)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        return Result.failure(classify_error(e), str(e), e)
