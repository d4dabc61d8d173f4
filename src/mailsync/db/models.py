"""SQLite schema and initialization for the mailsync cache.

Four tables, all keyed by account so several mailboxes can share one file:
- messages: lightweight list metadata, indexed by (account, folder, date)
- message_bodies: sanitized bodies, raw source, text and attachment descriptors
- folders: folder tree with server counts
- meta: per-account key/value records (PGP keys, passphrases, mutation queue)

Usage:
    from mailsync.db.models import init_database

    await init_database("data/mailsync.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS messages (
    account TEXT NOT NULL,
    id TEXT NOT NULL,                       -- Server-side message identifier
    folder TEXT NOT NULL,                   -- Folder path, e.g. 'INBOX' or 'Archive/2024'
    subject TEXT,
    sender TEXT,                            -- Display form of the From header
    recipients_json TEXT,                   -- JSON list of To addresses
    date DATETIME,                          -- ISO-8601 UTC
    flags_json TEXT,                        -- JSON list of IMAP flags ('\\Seen', '\\Flagged')
    labels_json TEXT,                       -- JSON list of labels
    is_unread INTEGER DEFAULT 0,
    has_attachments INTEGER DEFAULT 0,
    uid TEXT,
    message_id TEXT,                        -- Message-ID as reported by the server
    header_message_id TEXT,                 -- Message-ID parsed from the raw headers
    preview TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (account, id)
);

-- Page queries: folder listing ordered by date
CREATE INDEX IF NOT EXISTS idx_messages_folder_date
    ON messages(account, folder, date DESC);

-- Unread count per folder
CREATE INDEX IF NOT EXISTS idx_messages_folder_unread
    ON messages(account, folder, is_unread);

-- Secondary identity lookups used when backfilling labels/from
CREATE INDEX IF NOT EXISTS idx_messages_uid ON messages(account, uid);
CREATE INDEX IF NOT EXISTS idx_messages_message_id ON messages(account, message_id);

CREATE TABLE IF NOT EXISTS message_bodies (
    account TEXT NOT NULL,
    id TEXT NOT NULL,
    folder TEXT,
    body TEXT,                              -- Sanitized HTML, never raw server HTML
    raw TEXT,                               -- Raw RFC 5322 source or armored PGP text
    text_content TEXT,
    attachments_json TEXT,                  -- Descriptors only, no inline bytes
    meta_json TEXT,                         -- Server metadata ('nodemailer' key = complete)
    tracking_pixel_count INTEGER,           -- NULL = never sanitized with pixel detection
    blocked_remote_image_count INTEGER,
    sanitized_at DATETIME,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (account, id)
);

CREATE INDEX IF NOT EXISTS idx_bodies_updated_at ON message_bodies(updated_at);

CREATE TABLE IF NOT EXISTS folders (
    account TEXT NOT NULL,
    path TEXT NOT NULL,
    name TEXT,
    level INTEGER DEFAULT 0,
    unread_count INTEGER DEFAULT 0,
    total_count INTEGER DEFAULT 0,
    count_source TEXT DEFAULT 'server',     -- 'server' or 'local'
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (account, path)
);

-- Key/value records. account = '' for global entries.
CREATE TABLE IF NOT EXISTS meta (
    account TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT,                             -- JSON
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (account, key)
);
-- Keys: 'pgp_keys', 'pgp_passphrases', 'mutation_queue_<account>',
--        'folders_synced_at'
"""

REQUIRED_TABLES = ("messages", "message_bodies", "folders", "meta")


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file and its parent directory if needed, enables WAL
    mode, and creates all tables and indexes. The file is chmod'ed to 0600
    because it holds mail content and passphrases.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_initialization_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def get_connection(db_path: str | Path) -> aiosqlite.Connection:
    """Open a connection with aiosqlite.Row as the row factory.

    The caller is responsible for closing the connection.
    """
    db = await aiosqlite.connect(db_path)
    db.row_factory = aiosqlite.Row
    return db


async def verify_schema(db_path: str | Path) -> bool:
    """Check that every required table exists.

    Returns:
        True if all tables exist, False otherwise (including on SQLite errors)
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
