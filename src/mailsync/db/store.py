"""Persistent cache store for messages, bodies, folders and per-account records.

MailStore wraps every table in async CRUD operations over aiosqlite. Each
public method opens its own connection through ``_db()``, commits before
returning, and converts ``aiosqlite.Error`` into ``DatabaseError``.

Usage:
    from mailsync.db.store import MailStore, Message

    store = MailStore("data/mailsync.db")
    await store.initialize()

    await store.bulk_put_messages([Message(id="m1", account="a", folder="INBOX")])
    page = await store.range_messages("a", "INBOX", descending=True, offset=0, limit=50)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger
from mailsync.db.models import REQUIRED_TABLES, init_database

logger = get_logger(__name__)

# SQLite limits host parameters per statement; chunk IN (...) lookups
MAX_SQL_VARIABLES = 500

# Columns usable for secondary identity lookups
LookupField = Literal["id", "uid", "message_id", "header_message_id"]
_LOOKUP_FIELDS = frozenset({"id", "uid", "message_id", "header_message_id"})

CountSource = Literal["server", "local"]


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_datetime(value: Any) -> datetime | None:
    """Parse a datetime as aware UTC.

    Accepts datetimes, ISO strings, RFC 2822 date headers and epoch
    milliseconds. Unparseable input gives None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, int | float):
        try:
            dt = datetime.fromtimestamp(value / 1000, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = parsedate_to_datetime(str(value))
            except (TypeError, ValueError):
                return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return parse_datetime(value).astimezone(UTC).isoformat()  # type: ignore[union-attr]


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _chunks(items: list[str], size: int = MAX_SQL_VARIABLES) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class Message:
    """Message list metadata."""

    id: str
    account: str
    folder: str
    subject: str = ""
    sender: str = ""
    recipients: list[str] = field(default_factory=list)
    date: datetime | None = None
    flags: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    is_unread: bool = False
    has_attachments: bool = False
    uid: str | None = None
    message_id: str | None = None
    header_message_id: str | None = None
    preview: str = ""

    @property
    def is_starred(self) -> bool:
        return "\\Flagged" in self.flags


@dataclass
class MessageBody:
    """Cached message body.

    ``tracking_pixel_count`` is None for entries that were never run through
    the sanitizer's pixel detection; readers re-sanitize those.
    """

    id: str
    account: str
    folder: str | None = None
    body: str = ""
    raw: str = ""
    text_content: str = ""
    attachments: list[dict[str, Any]] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)
    tracking_pixel_count: int | None = None
    blocked_remote_image_count: int | None = None
    sanitized_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Folder:
    """Folder record with server or locally derived counts."""

    account: str
    path: str
    name: str = ""
    level: int = 0
    unread_count: int = 0
    total_count: int = 0
    count_source: CountSource = "server"
    updated_at: datetime | None = None


@dataclass(frozen=True)
class StorageEstimate:
    """Database size against the configured storage quota."""

    used_bytes: int
    quota_bytes: int

    @property
    def ratio(self) -> float:
        if self.quota_bytes <= 0:
            return 0.0
        return self.used_bytes / self.quota_bytes


class MailStore:
    """Async store for the mailsync cache database.

    Attributes:
        db_path: Path to the SQLite database file
        quota_bytes: Storage budget reported by storage_estimate()
    """

    def __init__(self, db_path: str | Path, quota_bytes: int = 500 * 1024 * 1024):
        self.db_path = Path(db_path)
        self.quota_bytes = quota_bytes
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets the PRAGMAs every connection needs:
        - busy_timeout: 10s so the poller and a CLI command can share the file
        - foreign_keys: ON
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB
        - temp_store: MEMORY
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    async def checkpoint_wal(self) -> None:
        """Run a TRUNCATE WAL checkpoint. Failures are logged, not raised."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Message Operations
    # =========================================================================

    _MESSAGE_UPSERT = """
        INSERT INTO messages (
            account, id, folder, subject, sender, recipients_json, date,
            flags_json, labels_json, is_unread, has_attachments, uid,
            message_id, header_message_id, preview, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(account, id) DO UPDATE SET
            folder = excluded.folder,
            subject = excluded.subject,
            sender = excluded.sender,
            recipients_json = excluded.recipients_json,
            date = excluded.date,
            flags_json = excluded.flags_json,
            labels_json = excluded.labels_json,
            is_unread = excluded.is_unread,
            has_attachments = excluded.has_attachments,
            uid = excluded.uid,
            message_id = excluded.message_id,
            header_message_id = excluded.header_message_id,
            preview = excluded.preview,
            updated_at = excluded.updated_at
    """

    def _message_params(self, message: Message, now: str) -> tuple[Any, ...]:
        return (
            message.account,
            message.id,
            message.folder,
            message.subject,
            message.sender,
            json.dumps(message.recipients),
            _iso(message.date),
            json.dumps(message.flags),
            json.dumps(message.labels),
            1 if message.is_unread else 0,
            1 if message.has_attachments else 0,
            message.uid,
            message.message_id,
            message.header_message_id,
            message.preview,
            now,
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            account=row["account"],
            folder=row["folder"],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            recipients=_load_json(row["recipients_json"], []),
            date=parse_datetime(row["date"]),
            flags=_load_json(row["flags_json"], []),
            labels=_load_json(row["labels_json"], []),
            is_unread=bool(row["is_unread"]),
            has_attachments=bool(row["has_attachments"]),
            uid=row["uid"],
            message_id=row["message_id"],
            header_message_id=row["header_message_id"],
            preview=row["preview"] or "",
        )

    async def get_message(self, account: str, message_id: str) -> Message | None:
        """Get one message by (account, id)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM messages WHERE account = ? AND id = ?",
                    (account, message_id),
                )
                row = await cursor.fetchone()
                return self._row_to_message(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get message", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to get message {message_id}: {e}") from e

    async def bulk_get_messages(
        self,
        account: str,
        values: list[str],
        lookup: LookupField = "id",
    ) -> dict[str, Message]:
        """Get many messages in one query per chunk.

        Args:
            account: Account the messages belong to
            values: Identifier values to look up
            lookup: Column the values refer to (id, uid, message_id, header_message_id)

        Returns:
            Dict mapping the looked-up value to its Message (misses are omitted)
        """
        if lookup not in _LOOKUP_FIELDS:
            raise ValueError(f"Unsupported lookup field: {lookup}")
        values = [v for v in dict.fromkeys(values) if v]
        if not values:
            return {}

        found: dict[str, Message] = {}
        try:
            async with self._db() as db:
                for chunk in _chunks(values):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        "SELECT * FROM messages WHERE account = ? "
                        f"AND {lookup} IN ({placeholders})",
                        [account, *chunk],
                    )
                    for row in await cursor.fetchall():
                        found.setdefault(row[lookup], self._row_to_message(row))
            return found

        except aiosqlite.Error as e:
            logger.error("Failed to bulk get messages", count=len(values), error=str(e))
            raise DatabaseError(f"Failed to bulk get messages: {e}") from e

    async def put_message(self, message: Message) -> None:
        """Insert or replace one message."""
        await self.bulk_put_messages([message])

    async def bulk_put_messages(self, messages: list[Message]) -> int:
        """Upsert messages in a single transaction.

        Returns:
            Number of messages written
        """
        return await self.save_page(messages, stale_ids=())

    async def save_page(
        self,
        messages: list[Message],
        stale_ids: Iterable[tuple[str, str]] = (),
    ) -> int:
        """Upsert a fetched page and delete pruned entries atomically.

        Both the messages and the bodies of pruned ids are deleted in the same
        transaction, so a reader never sees a half-reconciled folder.

        Args:
            messages: Messages to upsert
            stale_ids: (account, id) pairs absent from the fresh server result

        Returns:
            Number of messages written
        """
        stale = list(stale_ids)
        if not messages and not stale:
            return 0

        now = utcnow().isoformat()
        try:
            async with self._db() as db:
                await db.executemany(
                    self._MESSAGE_UPSERT,
                    [self._message_params(m, now) for m in messages],
                )
                if stale:
                    await db.executemany(
                        "DELETE FROM messages WHERE account = ? AND id = ?", stale
                    )
                    await db.executemany(
                        "DELETE FROM message_bodies WHERE account = ? AND id = ?", stale
                    )
                await db.commit()

            logger.debug("page_saved", written=len(messages), pruned=len(stale))
            return len(messages)

        except aiosqlite.Error as e:
            logger.error(
                "Failed to save message page",
                count=len(messages),
                pruned=len(stale),
                error=str(e),
            )
            raise DatabaseError(f"Failed to save message page: {e}") from e

    async def delete_message(self, account: str, message_id: str) -> None:
        await self.bulk_delete_messages(account, [message_id])

    async def bulk_delete_messages(self, account: str, message_ids: list[str]) -> int:
        """Delete messages (not their bodies) by id.

        Returns:
            Number of rows deleted
        """
        if not message_ids:
            return 0
        try:
            async with self._db() as db:
                deleted = 0
                for chunk in _chunks(message_ids):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"DELETE FROM messages WHERE account = ? AND id IN ({placeholders})",
                        [account, *chunk],
                    )
                    deleted += cursor.rowcount
                await db.commit()
                return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to delete messages", count=len(message_ids), error=str(e))
            raise DatabaseError(f"Failed to delete messages: {e}") from e

    async def update_message_folder(self, account: str, message_id: str, folder: str) -> None:
        """Move a cached message and its body to another folder."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE messages SET folder = ?, updated_at = ? WHERE account = ? AND id = ?",
                    (folder, utcnow().isoformat(), account, message_id),
                )
                await db.execute(
                    "UPDATE message_bodies SET folder = ? WHERE account = ? AND id = ?",
                    (folder, account, message_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update message folder", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to update folder of {message_id}: {e}") from e

    async def range_messages(
        self,
        account: str,
        folder: str,
        *,
        descending: bool = True,
        offset: int = 0,
        limit: int = 50,
    ) -> list[Message]:
        """Page through a folder ordered by date using the (account, folder, date) index."""
        direction = "DESC" if descending else "ASC"
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM messages
                    WHERE account = ? AND folder = ?
                    ORDER BY date {direction}, id {direction}
                    LIMIT ? OFFSET ?
                    """,
                    (account, folder, limit, offset),
                )
                return [self._row_to_message(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to read message range", folder=folder, error=str(e))
            raise DatabaseError(f"Failed to read messages for {folder}: {e}") from e

    async def list_folder_messages(self, account: str, folder: str) -> list[Message]:
        """Every cached message in a folder, unordered. Used for non-date sorts."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM messages WHERE account = ? AND folder = ?",
                    (account, folder),
                )
                return [self._row_to_message(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list folder messages", folder=folder, error=str(e))
            raise DatabaseError(f"Failed to list messages for {folder}: {e}") from e

    async def count_messages(
        self, account: str, folder: str, *, unread: bool | None = None
    ) -> int:
        """Count messages in a folder, optionally only (un)read ones."""
        query = "SELECT COUNT(*) FROM messages WHERE account = ? AND folder = ?"
        params: list[Any] = [account, folder]
        if unread is not None:
            query += " AND is_unread = ?"
            params.append(1 if unread else 0)
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return int(row[0]) if row else 0

        except aiosqlite.Error as e:
            logger.error("Failed to count messages", folder=folder, error=str(e))
            raise DatabaseError(f"Failed to count messages for {folder}: {e}") from e

    async def count_unread_by_folder(self, account: str) -> dict[str, int]:
        """Unread message count per folder for one account."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT folder, COUNT(*) AS unread FROM messages
                    WHERE account = ? AND is_unread = 1
                    GROUP BY folder
                    """,
                    (account,),
                )
                return {row["folder"]: row["unread"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("Failed to count unread messages", account=account, error=str(e))
            raise DatabaseError(f"Failed to count unread messages: {e}") from e

    # =========================================================================
    # Body Operations
    # =========================================================================

    def _row_to_body(self, row: aiosqlite.Row) -> MessageBody:
        return MessageBody(
            id=row["id"],
            account=row["account"],
            folder=row["folder"],
            body=row["body"] or "",
            raw=row["raw"] or "",
            text_content=row["text_content"] or "",
            attachments=_load_json(row["attachments_json"], []),
            meta=_load_json(row["meta_json"], {}),
            tracking_pixel_count=row["tracking_pixel_count"],
            blocked_remote_image_count=row["blocked_remote_image_count"],
            sanitized_at=parse_datetime(row["sanitized_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    async def get_body(self, account: str, message_id: str) -> MessageBody | None:
        """Get a cached body entry."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM message_bodies WHERE account = ? AND id = ?",
                    (account, message_id),
                )
                row = await cursor.fetchone()
                return self._row_to_body(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get body", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to get body {message_id}: {e}") from e

    async def bulk_get_bodies(self, account: str, message_ids: list[str]) -> dict[str, MessageBody]:
        """Get many body entries; misses are omitted."""
        ids = [i for i in dict.fromkeys(message_ids) if i]
        if not ids:
            return {}
        found: dict[str, MessageBody] = {}
        try:
            async with self._db() as db:
                for chunk in _chunks(ids):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        "SELECT * FROM message_bodies WHERE account = ? "
                        f"AND id IN ({placeholders})",
                        [account, *chunk],
                    )
                    for row in await cursor.fetchall():
                        found[row["id"]] = self._row_to_body(row)
            return found

        except aiosqlite.Error as e:
            logger.error("Failed to bulk get bodies", count=len(ids), error=str(e))
            raise DatabaseError(f"Failed to bulk get bodies: {e}") from e

    async def put_body(self, body: MessageBody) -> None:
        """Insert or replace a body entry."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO message_bodies (
                        account, id, folder, body, raw, text_content,
                        attachments_json, meta_json, tracking_pixel_count,
                        blocked_remote_image_count, sanitized_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account, id) DO UPDATE SET
                        folder = excluded.folder,
                        body = excluded.body,
                        raw = excluded.raw,
                        text_content = excluded.text_content,
                        attachments_json = excluded.attachments_json,
                        meta_json = excluded.meta_json,
                        tracking_pixel_count = excluded.tracking_pixel_count,
                        blocked_remote_image_count = excluded.blocked_remote_image_count,
                        sanitized_at = excluded.sanitized_at,
                        updated_at = excluded.updated_at
                    """,
                    (
                        body.account,
                        body.id,
                        body.folder,
                        body.body,
                        body.raw,
                        body.text_content,
                        json.dumps(body.attachments),
                        json.dumps(body.meta),
                        body.tracking_pixel_count,
                        body.blocked_remote_image_count,
                        _iso(body.sanitized_at),
                        _iso(body.updated_at or utcnow()),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to put body", message_id=body.id, error=str(e))
            raise DatabaseError(f"Failed to cache body {body.id}: {e}") from e

    async def update_body_meta(self, account: str, message_id: str, meta: dict[str, Any]) -> bool:
        """Replace only the meta field of a cached body.

        Returns:
            True if an entry was updated
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE message_bodies SET meta_json = ? WHERE account = ? AND id = ?",
                    (json.dumps(meta), account, message_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to update body meta", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to update meta of {message_id}: {e}") from e

    async def delete_body(self, account: str, message_id: str) -> None:
        await self.bulk_delete_bodies(account, [message_id])

    async def bulk_delete_bodies(self, account: str, message_ids: list[str]) -> int:
        """Delete body entries by id.

        Returns:
            Number of rows deleted
        """
        if not message_ids:
            return 0
        try:
            async with self._db() as db:
                deleted = 0
                for chunk in _chunks(message_ids):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"DELETE FROM message_bodies WHERE account = ? AND id IN ({placeholders})",
                        [account, *chunk],
                    )
                    deleted += cursor.rowcount
                await db.commit()
                return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to delete bodies", count=len(message_ids), error=str(e))
            raise DatabaseError(f"Failed to delete bodies: {e}") from e

    async def list_bodies(self, account: str) -> list[MessageBody]:
        """Every cached body for an account."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM message_bodies WHERE account = ?", (account,)
                )
                return [self._row_to_body(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list bodies", account=account, error=str(e))
            raise DatabaseError(f"Failed to list bodies: {e}") from e

    async def evict_oldest_bodies(self, count: int) -> int:
        """Delete the ``count`` least recently updated bodies across all accounts.

        Returns:
            Number of bodies deleted
        """
        if count <= 0:
            return 0
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    DELETE FROM message_bodies WHERE rowid IN (
                        SELECT rowid FROM message_bodies ORDER BY updated_at ASC LIMIT ?
                    )
                    """,
                    (count,),
                )
                await db.commit()
                deleted = cursor.rowcount
            if deleted:
                logger.info("bodies_evicted", count=deleted)
            return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to evict bodies", count=count, error=str(e))
            raise DatabaseError(f"Failed to evict bodies: {e}") from e

    # =========================================================================
    # Folder Operations
    # =========================================================================

    def _row_to_folder(self, row: aiosqlite.Row) -> Folder:
        return Folder(
            account=row["account"],
            path=row["path"],
            name=row["name"] or row["path"],
            level=row["level"] or 0,
            unread_count=row["unread_count"] or 0,
            total_count=row["total_count"] or 0,
            count_source=row["count_source"] or "server",
            updated_at=parse_datetime(row["updated_at"]),
        )

    async def get_folders(self, account: str) -> list[Folder]:
        """Cached folders for an account, ordered by path."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM folders WHERE account = ? ORDER BY path", (account,)
                )
                return [self._row_to_folder(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to get folders", account=account, error=str(e))
            raise DatabaseError(f"Failed to get folders: {e}") from e

    async def replace_folders(self, account: str, folders: list[Folder]) -> None:
        """Atomically replace the cached folder set for an account."""
        now = utcnow().isoformat()
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM folders WHERE account = ?", (account,))
                await db.executemany(
                    """
                    INSERT INTO folders (
                        account, path, name, level, unread_count, total_count,
                        count_source, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            account,
                            f.path,
                            f.name,
                            f.level,
                            f.unread_count,
                            f.total_count,
                            f.count_source,
                            now,
                        )
                        for f in folders
                    ],
                )
                await db.commit()
            logger.debug("folders_replaced", account=account, count=len(folders))

        except aiosqlite.Error as e:
            logger.error("Failed to replace folders", account=account, error=str(e))
            raise DatabaseError(f"Failed to replace folders: {e}") from e

    # =========================================================================
    # Meta Operations
    # =========================================================================

    async def get_meta(self, account: str, key: str, default: Any = None) -> Any:
        """Get a JSON-decoded meta value."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT value FROM meta WHERE account = ? AND key = ?", (account, key)
                )
                row = await cursor.fetchone()
                return _load_json(row["value"], default) if row else default

        except aiosqlite.Error as e:
            logger.error("Failed to get meta", key=key, error=str(e))
            raise DatabaseError(f"Failed to get meta {key}: {e}") from e

    async def put_meta(self, account: str, key: str, value: Any) -> None:
        """Store a JSON-serializable meta value."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO meta (account, key, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(account, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (account, key, json.dumps(value), utcnow().isoformat()),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to put meta", key=key, error=str(e))
            raise DatabaseError(f"Failed to put meta {key}: {e}") from e

    async def delete_meta(self, account: str, key: str) -> None:
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM meta WHERE account = ? AND key = ?", (account, key))
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to delete meta", key=key, error=str(e))
            raise DatabaseError(f"Failed to delete meta {key}: {e}") from e

    async def clear_account(self, account: str) -> int:
        """Delete every cached row of one account in a single transaction.

        Returns:
            Number of rows deleted across all tables
        """
        try:
            async with self._db() as db:
                deleted = 0
                for table in REQUIRED_TABLES:
                    cursor = await db.execute(f"DELETE FROM {table} WHERE account = ?", (account,))
                    deleted += cursor.rowcount
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to clear account", account=account, error=str(e))
            raise DatabaseError(f"Failed to clear account {account}: {e}") from e

        logger.info("account_cache_cleared", account=account, rows=deleted)
        return deleted

    # =========================================================================
    # Storage
    # =========================================================================

    async def storage_estimate(self) -> StorageEstimate:
        """Estimate database size from SQLite page accounting."""
        try:
            async with self._db() as db:
                page_count = (await (await db.execute("PRAGMA page_count")).fetchone())[0]
                page_size = (await (await db.execute("PRAGMA page_size")).fetchone())[0]
            return StorageEstimate(used_bytes=page_count * page_size, quota_bytes=self.quota_bytes)

        except aiosqlite.Error as e:
            logger.error("Failed to estimate storage", error=str(e))
            raise DatabaseError(f"Failed to estimate storage: {e}") from e
