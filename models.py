#!/usr/bin/env python3
"""
Database models and operations for the Feed Keeper.

This module contains all database-related classes and functions,
providing a clean separation between data access and business logic.
All operations run on a single SQLite connection owned by DatabaseQueue,
serialized through an asyncio queue.
"""

from os import path, access, R_OK
from time import time
from datetime import datetime
from asyncio import Queue, create_task, CancelledError, Event, get_running_loop
from inspect import iscoroutinefunction
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable
import sqlite3

from config import config, get_logger
from telemetry import trace_span
import backup

# Module-specific logger
logger = get_logger("models")

# Columns added after the first release; (name, DDL) pairs applied by _run_migrations
_FEED_COLUMN_MIGRATIONS = [
    ("site_url", "ALTER TABLE feeds ADD COLUMN site_url TEXT NOT NULL DEFAULT ''"),
    ("description", "ALTER TABLE feeds ADD COLUMN description TEXT NOT NULL DEFAULT ''"),
    ("etag", "ALTER TABLE feeds ADD COLUMN etag TEXT NOT NULL DEFAULT ''"),
    ("last_modified", "ALTER TABLE feeds ADD COLUMN last_modified TEXT NOT NULL DEFAULT ''"),
    ("error_count", "ALTER TABLE feeds ADD COLUMN error_count INTEGER NOT NULL DEFAULT 0"),
    ("last_error", "ALTER TABLE feeds ADD COLUMN last_error TEXT"),
    ("last_updated", "ALTER TABLE feeds ADD COLUMN last_updated INTEGER"),
]


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None
        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
        else:
            _run_migrations(conn)
        # Every statement is IF NOT EXISTS, so this also creates tables missing from older files
        cursor.executescript(_read_schema_file())
        conn.commit()
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add feed columns that older databases lack."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(feeds)")
        columns = {column[1] for column in cursor.fetchall()}
        for name, ddl in _FEED_COLUMN_MIGRATIONS:
            if name not in columns:
                logger.info(f"Adding {name} column to feeds table")
                cursor.execute(ddl)
        conn.commit()
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


def _now(now: Optional[int]) -> int:
    return int(time()) if now is None else int(now)


class DatabaseQueue:
    """A queue for database operations on one SQLite connection.

    Callers use ``await db.execute("operation_name", **params)``; the worker
    dispatches to the same-named method. Exceptions raised by an operation
    are re-raised in the awaiting caller unchanged.
    """

    def __init__(self, db_path: str, busy_timeout_ms: Optional[int] = None):
        self.db_path = db_path
        self.busy_timeout_ms = config.DB_BUSY_TIMEOUT_MS if busy_timeout_ms is None else busy_timeout_ms
        self.queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        self.conn.execute("PRAGMA foreign_keys=ON")
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting; execute() reports the stop to them
        for event in self.events.values():
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            operation_id, operation_name, params = await self.queue.get()
            try:
                method = getattr(self, operation_name, None)
                if method is None or operation_name.startswith("_") or iscoroutinefunction(method):
                    raise AttributeError(f"Unknown operation: {operation_name}")
                outcome = {"result": method(**params)}
            except Exception as e:
                logger.error(f"Database operation error in {operation_name}: {e}")
                if self.conn is not None and self.conn.in_transaction:
                    self.conn.rollback()
                outcome = {"error": e}
            # A caller that was cancelled meanwhile has dropped its event
            event = self.events.get(operation_id)
            if event is not None:
                self.results[operation_id] = outcome
                event.set()
            self.queue.task_done()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running:
            raise RuntimeError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database worker stopped before {operation_name} completed")
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Feed Management Operations
    def create_feed(self, url: str, title: str = "", site_url: str = "", description: str = "",
                    etag: str = "", last_modified: str = "", now: Optional[int] = None) -> int:
        """Insert a new feed and return its id. Raises sqlite3.IntegrityError for a duplicate URL."""
        ts = _now(now)
        cursor = self.conn.execute(
            """
            INSERT INTO feeds (url, title, site_url, description, etag, last_modified,
                               error_count, last_updated, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (url, title or "", site_url or "", description or "", etag or "", last_modified or "", ts, ts),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return dict(row) if row else None

    def get_feed_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
        return dict(row) if row else None

    def list_feeds_for_refresh(self, limit: int = 1000) -> List[Dict[str, Any]]:
        """Return up to `limit` feeds in id order with the fields a refresh needs."""
        rows = self.conn.execute(
            """
            SELECT id, url, title, etag, last_modified, error_count, last_updated
            FROM feeds ORDER BY id LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [dict(row) for row in rows]

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List every feed with its article count (used by the status command)."""
        rows = self.conn.execute(
            """
            SELECT f.id, f.url, f.title, f.error_count, f.last_updated, f.last_error,
                   COUNT(a.id) AS article_count
            FROM feeds f LEFT JOIN articles a ON a.feed_id = f.id
            GROUP BY f.id ORDER BY f.id
            """
        ).fetchall()
        return [dict(row) for row in rows]

    def mark_feed_not_modified(self, feed_id: int, now: Optional[int] = None) -> bool:
        """Record a 304: bump last_updated and clear errors, leaving validators and metadata alone."""
        cursor = self.conn.execute(
            "UPDATE feeds SET last_updated = ?, error_count = 0, last_error = NULL WHERE id = ?",
            (_now(now), feed_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def record_feed_error(self, feed_id: int, error: str, now: Optional[int] = None) -> int:
        """Store a fetch failure and return the new error count."""
        self.conn.execute(
            """
            UPDATE feeds SET error_count = error_count + 1, last_error = ?, last_updated = ?
            WHERE id = ?
            """,
            (error, _now(now), feed_id),
        )
        row = self.conn.execute("SELECT error_count FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        self.conn.commit()
        return row['error_count'] if row else 0

    def update_feed_after_fetch(self, feed_id: int, title: str = "", site_url: str = "", description: str = "",
                                etag: str = "", last_modified: str = "", now: Optional[int] = None) -> bool:
        """Apply a successful fetch.

        Metadata is only overwritten by non-empty values; validators are stored
        exactly as the server returned them (empty when it sent none).
        """
        cursor = self.conn.execute(
            """
            UPDATE feeds SET
                title = COALESCE(NULLIF(?, ''), title),
                site_url = COALESCE(NULLIF(?, ''), site_url),
                description = COALESCE(NULLIF(?, ''), description),
                etag = ?,
                last_modified = ?,
                error_count = 0,
                last_error = NULL,
                last_updated = ?
            WHERE id = ?
            """,
            (title or "", site_url or "", description or "", etag or "", last_modified or "", _now(now), feed_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_feed(self, feed_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Article Management Operations
    def upsert_articles(self, feed_id: int, items: Iterable[Dict[str, Any]], now: Optional[int] = None) -> int:
        """Insert or update articles keyed by (feed_id, guid). Returns how many were new."""
        items = list(items)
        if not items:
            return 0
        guids = {item['guid'] for item in items}
        placeholders = ",".join("?" for _ in guids)
        existing = {
            row['guid'] for row in self.conn.execute(
                f"SELECT guid FROM articles WHERE feed_id = ? AND guid IN ({placeholders})",
                (feed_id, *guids),
            )
        }
        ts = _now(now)
        self.conn.executemany(
            """
            INSERT INTO articles (feed_id, guid, url, title, author, content, summary, published_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(feed_id, guid) DO UPDATE SET
                url = excluded.url,
                title = excluded.title,
                author = excluded.author,
                content = excluded.content,
                summary = excluded.summary,
                published_at = excluded.published_at
            """,
            [
                (
                    feed_id,
                    item['guid'],
                    item.get('url') or "",
                    item.get('title') or "",
                    item.get('author') or "",
                    item.get('content') or "",
                    item.get('summary') or "",
                    item.get('published_at'),
                    ts,
                )
                for item in items
            ],
        )
        self.conn.commit()
        return len(guids - existing)

    def get_articles(self, feed_id: Optional[int] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest-first articles joined with their read/star state."""
        sql = """
            SELECT a.*, COALESCE(s.is_read, 0) AS is_read, COALESCE(s.is_starred, 0) AS is_starred
            FROM articles a LEFT JOIN article_states s ON s.article_id = a.id
        """
        params: List[Any] = []
        if feed_id is not None:
            sql += " WHERE a.feed_id = ?"
            params.append(feed_id)
        sql += " ORDER BY COALESCE(a.published_at, a.created_at) DESC, a.id DESC LIMIT ?"
        params.append(limit)
        return [dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def get_article_id(self, feed_id: int, guid: str) -> Optional[int]:
        row = self.conn.execute(
            "SELECT id FROM articles WHERE feed_id = ? AND guid = ?", (feed_id, guid)
        ).fetchone()
        return row['id'] if row else None

    def count_articles(self, feed_id: Optional[int] = None) -> int:
        if feed_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM articles").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM articles WHERE feed_id = ?", (feed_id,)).fetchone()
        return row[0]

    def set_article_state(self, article_id: int, is_read: Optional[bool] = None,
                          is_starred: Optional[bool] = None, now: Optional[int] = None) -> bool:
        """Set read and/or starred flags; None leaves a flag unchanged."""
        ts = _now(now)
        self.conn.execute("INSERT OR IGNORE INTO article_states (article_id) VALUES (?)", (article_id,))
        if is_read is not None:
            self.conn.execute(
                "UPDATE article_states SET is_read = ?, read_at = ? WHERE article_id = ?",
                (int(is_read), ts if is_read else None, article_id),
            )
        if is_starred is not None:
            self.conn.execute(
                "UPDATE article_states SET is_starred = ?, starred_at = ? WHERE article_id = ?",
                (int(is_starred), ts if is_starred else None, article_id),
            )
        self.conn.commit()
        return True

    # Maintenance Operations
    _PURGE_CANDIDATES = """
        SELECT a.id FROM articles a
        JOIN article_states s ON s.article_id = a.id
        WHERE s.is_read = 1 AND s.is_starred = 0 AND a.published_at < ?
    """

    def count_old_read_articles(self, cutoff: int) -> int:
        """Count read, unstarred articles published before `cutoff`."""
        row = self.conn.execute(f"SELECT COUNT(*) FROM ({self._PURGE_CANDIDATES})", (cutoff,)).fetchone()
        return row[0]

    def purge_old_read_articles(self, cutoff: int) -> int:
        """Delete read, unstarred articles published before `cutoff`.

        Articles without a publication time are never purged. Returns the
        number of rows deleted.
        """
        count = self.count_old_read_articles(cutoff)
        if count == 0:
            return 0
        cursor = self.conn.execute(f"DELETE FROM articles WHERE id IN ({self._PURGE_CANDIDATES})", (cutoff,))
        self.conn.commit()
        return cursor.rowcount

    async def backup_database(self, backup_dir: str, now: Optional[datetime] = None) -> str:
        """Snapshot the live database; returns the snapshot path.

        Runs in the default executor on its own read-only connection and
        bypasses the queue, so other operations keep running meanwhile.
        """
        if not self.running:
            raise RuntimeError("Database worker is not running")
        return await get_running_loop().run_in_executor(
            None, backup.snapshot_database, self.db_path, backup_dir, now, self.busy_timeout_ms
        )

    def get_status_counts(self) -> Dict[str, int]:
        row = self.conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM feeds) AS feeds,
                (SELECT COUNT(*) FROM feeds WHERE error_count > 0) AS failing_feeds,
                (SELECT COUNT(*) FROM articles) AS articles,
                (SELECT COUNT(*) FROM article_states WHERE is_read = 1) AS read_articles,
                (SELECT COUNT(*) FROM article_states WHERE is_starred = 1) AS starred_articles
            """
        ).fetchone()
        return dict(row)
