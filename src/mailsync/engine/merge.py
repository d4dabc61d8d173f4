"""List merge and backfill helpers.

Server pages sometimes omit labels or the sender. Before a page replaces
what the cache holds, the missing fields are copied from the existing
records: first by primary id, then by the secondary identifiers (UID,
Message-ID, header Message-ID).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger
from mailsync.engine.normalize import coerce_label_list

if TYPE_CHECKING:
    from mailsync.db.store import LookupField, MailStore, Message

logger = get_logger(__name__)

_KEY_FIELDS = ("id", "message_id", "messageId", "Message-ID", "uid", "header_message_id")
_FALLBACK_FIELDS: tuple[LookupField, ...] = ("uid", "message_id", "header_message_id")


def get_message_key(message: Message | Mapping[str, Any]) -> str | None:
    """Identity key: explicit id, then message-id, then UID, then header message-id."""
    for name in _KEY_FIELDS:
        if isinstance(message, Mapping):
            value = message.get(name)
        else:
            value = getattr(message, name, None)
        if value is not None and value != "":
            return str(value)
    return None


def merge_message_pages(existing: Iterable[Message], incoming: Iterable[Message]) -> list[Message]:
    """Union two lists by identity key.

    The first occurrence of each key wins and keeps its position; existing
    entries come before incoming ones. Keyless entries are kept once per
    object, so merging the same page again adds nothing.
    """
    merged: list[Message] = []
    seen: set[str] = set()
    seen_keyless: set[int] = set()
    for source in (existing, incoming):
        for message in source or []:
            key = get_message_key(message)
            if key is None:
                if id(message) not in seen_keyless:
                    seen_keyless.add(id(message))
                    merged.append(message)
                continue
            if key in seen:
                continue
            seen.add(key)
            merged.append(message)
    return merged


async def _backfill(
    store: MailStore,
    account: str,
    messages: list[Message],
    missing: list[int],
    extract: Callable[[Message | None], Any],
) -> dict[int, Any]:
    """Find a value for each missing index in the cached records."""
    primary = await store.bulk_get_messages(account, [messages[i].id for i in missing])

    fallback: dict[str, dict[str, Message]] = {}
    for name in _FALLBACK_FIELDS:
        values = []
        for i in missing:
            value = getattr(messages[i], name)
            if value and value != messages[i].id:
                values.append(value)
        if values:
            fallback[name] = await store.bulk_get_messages(account, values, lookup=name)

    found: dict[int, Any] = {}
    for i in missing:
        message = messages[i]
        value = extract(primary.get(message.id))
        if not value:
            for name in _FALLBACK_FIELDS:
                candidate = getattr(message, name)
                if not candidate or candidate == message.id:
                    continue
                value = extract(fallback.get(name, {}).get(candidate))
                if value:
                    break
        if value:
            found[i] = value
    return found


async def merge_missing_labels(
    store: MailStore, account: str, messages: list[Message]
) -> list[Message]:
    """Copy labels from cached records into messages that arrived without any.

    A store failure leaves the list unchanged.
    """
    missing = [i for i, message in enumerate(messages) if not coerce_label_list(message.labels)]
    if not missing:
        return messages
    try:
        found = await _backfill(
            store,
            account,
            messages,
            missing,
            lambda record: coerce_label_list(record.labels) if record else [],
        )
    except DatabaseError as e:
        logger.warning("label_backfill_failed", account=account, error=str(e))
        return messages

    merged = list(messages)
    for i, labels in found.items():
        merged[i] = replace(merged[i], labels=labels)
    return merged


async def merge_missing_from(
    store: MailStore, account: str, messages: list[Message]
) -> list[Message]:
    """Copy the sender from cached records into messages that arrived without one."""
    missing = [i for i, message in enumerate(messages) if not (message.sender or "").strip()]
    if not missing:
        return messages
    try:
        found = await _backfill(
            store,
            account,
            messages,
            missing,
            lambda record: (record.sender or "").strip() if record else "",
        )
    except DatabaseError as e:
        logger.warning("sender_backfill_failed", account=account, error=str(e))
        return messages

    merged = list(messages)
    for i, sender in found.items():
        merged[i] = replace(merged[i], sender=sender)
    return merged
