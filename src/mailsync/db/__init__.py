"""Database layer for mailsync.

This module provides SQLite-backed persistence for the offline cache.

Usage:
    from mailsync.db import MailStore, Message

    store = MailStore("data/mailsync.db")
    await store.initialize()

    await store.bulk_put_messages([Message(id="m1", account="alice", folder="INBOX")])
    body = await store.get_body("alice", "m1")
"""

from mailsync.db.models import (
    SCHEMA_VERSION,
    get_connection,
    init_database,
    verify_schema,
)
from mailsync.db.store import (
    Folder,
    MailStore,
    Message,
    MessageBody,
    StorageEstimate,
    parse_datetime,
    utcnow,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "get_connection",
    "verify_schema",
    # Store
    "MailStore",
    # Dataclasses
    "Message",
    "MessageBody",
    "Folder",
    "StorageEstimate",
    # Helpers
    "parse_datetime",
    "utcnow",
]
