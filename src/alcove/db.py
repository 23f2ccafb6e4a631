"""SQLite database initialization, schema migrations and connection management."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 5

# Each step moves the schema from version (index) to version (index + 1).
# Steps are additive only so older rows stay readable.
_MIGRATIONS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS chats (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL DEFAULT ''
    );

    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        chat_id INTEGER NOT NULL,
        model TEXT,
        role TEXT NOT NULL CHECK(role IN ('system', 'user', 'assistant', 'tool')),
        content TEXT,
        timestamp TEXT NOT NULL,
        data TEXT,
        response TEXT,
        raw_message TEXT,
        FOREIGN KEY (chat_id) REFERENCES chats(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_messages_chat
        ON messages(chat_id, timestamp);
    """,
    """
    ALTER TABLE messages ADD COLUMN name TEXT;
    ALTER TABLE messages ADD COLUMN tool_calls TEXT;
    ALTER TABLE messages ADD COLUMN tool_call_id TEXT;
    """,
    """
    ALTER TABLE chats ADD COLUMN uuid TEXT;
    CREATE UNIQUE INDEX IF NOT EXISTS idx_chats_uuid ON chats(uuid);
    """,
    """
    ALTER TABLE messages ADD COLUMN seen INTEGER NOT NULL DEFAULT 0;
    """,
    """
    CREATE TABLE IF NOT EXISTS mcp_tool_flags (
        server_name TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (server_name, tool_name)
    );
    """,
]


_db_lock = threading.Lock()


class ThreadSafeConnection:
    """Wrapper around sqlite3.Connection that serializes all access with a lock."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = _db_lock

    def execute(self, sql: str, parameters: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def execute_fetchone(self, sql: str, parameters: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, parameters).fetchone()

    def execute_fetchall(self, sql: str, parameters: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, parameters).fetchall()

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self):
        """Hold the lock for the entire transaction, auto-commit or rollback."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise


def get_schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def migrate(conn: sqlite3.Connection) -> int:
    """Apply pending migrations and return the resulting schema version."""
    current = get_schema_version(conn)
    if current > SCHEMA_VERSION:
        logger.warning("Database schema version %d is newer than supported %d", current, SCHEMA_VERSION)
        return current

    for version in range(current, SCHEMA_VERSION):
        logger.info("Migrating chat database from version %d to %d", version, version + 1)
        conn.executescript(_MIGRATIONS[version])
        conn.execute(f"PRAGMA user_version = {version + 1}")
        conn.commit()
    return get_schema_version(conn)


def connect(db_path: Path | str) -> ThreadSafeConnection:
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if str(db_path) != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    migrate(conn)
    return ThreadSafeConnection(conn)


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return connect(db_path)
