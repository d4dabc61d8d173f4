"""Publish/subscribe state containers.

The engines never depend on a UI reactivity runtime. They read and write
``Observable`` values; a front end (or a test) subscribes to be told about
changes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

from mailsync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """A value with get/set/subscribe.

    Subscribers are called synchronously on every ``set()`` with the new
    value, and once immediately on ``subscribe()`` with the current value.
    """

    def __init__(self, value: T, name: str | None = None):
        self._value = value
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for subscriber in list(self._subscribers):
            try:
                subscriber(value)
            except Exception as e:
                logger.warning("observable_subscriber_failed", name=self.name, error=str(e))

    def update(self, fn: Callable[[T], T]) -> None:
        """Set the value to ``fn(current)``."""
        self.set(fn(self._value))

    def subscribe(self, subscriber: Callable[[T], None]) -> Callable[[], None]:
        """Register ``subscriber`` and call it with the current value.

        Returns:
            A function that unsubscribes
        """
        self._subscribers.append(subscriber)
        subscriber(self._value)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def __repr__(self) -> str:
        return f"Observable(name={self.name!r}, value={self._value!r})"
