"""
SQLite version store for versiondb.

This module manages the SQLite database holding every version of every
entity. It is the durable backend behind the upsert engine.

Invariants:
    - One row per version, never deleted
    - A partial unique index allows a single is_current = 1 row per
      business_key, so a racing second insert fails instead of creating
      two current versions
    - All multi-statement writes run inside BEGIN IMMEDIATE ... COMMIT
    - Writers on one event loop are serialized by an asyncio lock;
      writers in other processes wait on SQLite's busy timeout

How to change safely:
    - Schema migrations must be backward compatible
    - Never drop or relax idx_entity_versions_current
    - Use transactions for all write operations

Table schema:
    entity_versions:
        - surrogate_key INTEGER PRIMARY KEY AUTOINCREMENT
        - business_key TEXT
        - attributes_json TEXT (JSON object, key order preserved)
        - effective_at INTEGER (Unix ms)
        - expired_at INTEGER (Unix ms, NULL while current)
        - is_current INTEGER (0/1)
        - UNIQUE (business_key) WHERE is_current = 1
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

from ..errors import ConflictError, NotFoundError, StoreUnavailableError
from .base import EntityVersion, normalize_attributes

logger = logging.getLogger(__name__)

BACKEND = "sqlite"


def _row_to_version(row: sqlite3.Row) -> EntityVersion:
    return EntityVersion(
        surrogate_key=row["surrogate_key"],
        business_key=row["business_key"],
        attributes=json.loads(row["attributes_json"]),
        effective_at=row["effective_at"],
        expired_at=row["expired_at"],
        is_current=bool(row["is_current"]),
    )


def _select_current(conn: sqlite3.Connection, business_key: str) -> EntityVersion | None:
    cursor = conn.execute(
        "SELECT * FROM entity_versions WHERE business_key = ? AND is_current = 1",
        (business_key,),
    )
    row = cursor.fetchone()
    return _row_to_version(row) if row else None


def _select_version(conn: sqlite3.Connection, surrogate_key: int) -> EntityVersion | None:
    cursor = conn.execute(
        "SELECT * FROM entity_versions WHERE surrogate_key = ?",
        (surrogate_key,),
    )
    row = cursor.fetchone()
    return _row_to_version(row) if row else None


def _expire(conn: sqlite3.Connection, surrogate_key: int, expired_at: int) -> EntityVersion:
    cursor = conn.execute(
        """
        UPDATE entity_versions SET expired_at = ?, is_current = 0
        WHERE surrogate_key = ? AND is_current = 1
        """,
        (expired_at, surrogate_key),
    )
    if cursor.rowcount == 0:
        if _select_version(conn, surrogate_key) is None:
            raise NotFoundError(f"Version not found: {surrogate_key}", surrogate_key)
        raise NotFoundError(f"Version already expired: {surrogate_key}", surrogate_key)

    version = _select_version(conn, surrogate_key)
    assert version is not None
    return version


def _insert_current(
    conn: sqlite3.Connection,
    business_key: str,
    attributes: Mapping[str, Any],
    effective_at: int,
) -> int:
    attributes_json = json.dumps(normalize_attributes(business_key, attributes))
    try:
        cursor = conn.execute(
            """
            INSERT INTO entity_versions (business_key, attributes_json, effective_at,
                                         expired_at, is_current)
            VALUES (?, ?, ?, NULL, 1)
            """,
            (business_key, attributes_json, effective_at),
        )
    except sqlite3.IntegrityError as e:
        raise ConflictError(
            f"Current version already exists for business key: {business_key}",
            business_key,
        ) from e
    return int(cursor.lastrowid)


class _SqliteTransaction:
    """Operations bound to one open BEGIN IMMEDIATE transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def current_version(self, business_key: str) -> EntityVersion | None:
        return _select_current(self._conn, business_key)

    async def expire(self, surrogate_key: int, expired_at: int) -> EntityVersion:
        return _expire(self._conn, surrogate_key, expired_at)

    async def insert_current(
        self,
        business_key: str,
        attributes: Mapping[str, Any],
        effective_at: int,
    ) -> int:
        return _insert_current(self._conn, business_key, attributes, effective_at)


class SqliteVersionStore:
    """SQLite-backed VersionStore.

    Thread safety:
        Each operation opens its own connection. Transactions hold an
        asyncio lock so two coroutines never wait on each other's SQLite
        write lock from the same thread.

    Example:
        >>> store = SqliteVersionStore("/var/lib/versiondb/customers.db")
        >>> await store.initialize()
        >>> key = await store.insert_current("1", {"name": "John"}, 1730000000000)
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the version store.

        Args:
            db_path: Path of the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._write_lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection.

        Args:
            create: Whether to create the database if it doesn't exist

        Yields:
            SQLite connection

        Raises:
            StoreUnavailableError: If the database is missing (and create=False),
                cannot be opened, or a statement fails operationally
        """
        if not create and not self.db_path.exists():
            raise StoreUnavailableError(
                f"Version database not found: {self.db_path}", backend=BACKEND
            )

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailableError(
                f"Cannot open version database {self.db_path}: {e}", backend=BACKEND
            ) from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as e:
            raise StoreUnavailableError(f"Version store error: {e}", backend=BACKEND) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entity_versions (
                surrogate_key INTEGER PRIMARY KEY AUTOINCREMENT,
                business_key TEXT NOT NULL,
                attributes_json TEXT NOT NULL DEFAULT '{}',
                effective_at INTEGER NOT NULL,
                expired_at INTEGER,
                is_current INTEGER NOT NULL DEFAULT 1 CHECK (is_current IN (0, 1))
            );

            -- One current version per business key
            CREATE UNIQUE INDEX IF NOT EXISTS idx_entity_versions_current
                ON entity_versions(business_key) WHERE is_current = 1;

            CREATE INDEX IF NOT EXISTS idx_entity_versions_history
                ON entity_versions(business_key, effective_at, surrogate_key);

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._write_lock:
            with self._get_connection(create=True) as conn:
                self._create_schema(conn)
        logger.info("Initialized version database", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        """Nothing to release; connections are per-operation."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SqliteTransaction]:
        async with self._write_lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield _SqliteTransaction(conn)
                    conn.execute("COMMIT")
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise

    async def current_version(self, business_key: str) -> EntityVersion | None:
        with self._get_connection() as conn:
            return _select_current(conn, business_key)

    async def expire(self, surrogate_key: int, expired_at: int) -> EntityVersion:
        async with self.transaction() as tx:
            return await tx.expire(surrogate_key, expired_at)

    async def insert_current(
        self,
        business_key: str,
        attributes: Mapping[str, Any],
        effective_at: int,
    ) -> int:
        async with self.transaction() as tx:
            return await tx.insert_current(business_key, attributes, effective_at)

    async def get_version(self, surrogate_key: int) -> EntityVersion | None:
        with self._get_connection() as conn:
            return _select_version(conn, surrogate_key)

    async def history(self, business_key: str) -> list[EntityVersion]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM entity_versions
                WHERE business_key = ?
                ORDER BY effective_at ASC, surrogate_key ASC
                """,
                (business_key,),
            )
            return [_row_to_version(row) for row in cursor.fetchall()]

    async def version_as_of(self, business_key: str, at: int) -> EntityVersion | None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM entity_versions
                WHERE business_key = ?
                  AND effective_at <= ?
                  AND (expired_at IS NULL OR expired_at > ?)
                ORDER BY effective_at DESC, surrogate_key DESC
                LIMIT 1
                """,
                (business_key, at, at),
            )
            row = cursor.fetchone()
            return _row_to_version(row) if row else None

    async def get_stats(self) -> dict[str, int]:
        """Get row counts for the store."""
        with self._get_connection() as conn:
            stats = {}

            cursor = conn.execute("SELECT COUNT(*) FROM entity_versions")
            stats["versions"] = cursor.fetchone()[0]

            cursor = conn.execute("SELECT COUNT(*) FROM entity_versions WHERE is_current = 1")
            stats["current"] = cursor.fetchone()[0]

            cursor = conn.execute("SELECT COUNT(DISTINCT business_key) FROM entity_versions")
            stats["business_keys"] = cursor.fetchone()[0]

            return stats
