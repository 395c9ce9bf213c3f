#!/usr/bin/env python3
"""
Database models and operations for Gator.

This module contains all database-related classes and functions,
providing a clean separation between data access and business logic.
All operations run on a single SQLite connection owned by the
DatabaseQueue worker task; callers submit them by name through
``DatabaseQueue.execute``.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Connection
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import StoreError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")


def initialize_database(conn: Connection) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
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


def _row_to_dict(row: Optional[Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class DatabaseQueue:
    """A queue for database operations so one task owns the connection."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn: Optional[Connection] = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker.

        Raises:
            StoreError: If the database cannot be opened or initialized.
        """
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.debug(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except Exception as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StoreError(f"Could not open database {self.db_path}: {e}", operation="start") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
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

        # Wake any callers still waiting; they will see a missing result
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.debug("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {
                            "error": StoreError(f"Unknown operation: {operation_name}", operation_name)
                        }
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

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
        """Execute a database operation.

        Raises:
            StoreError: If the worker is not running or the operation failed.
        """
        if not self.running:
            raise StoreError("Database worker is not running", operation_name)

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError("Database worker stopped before completing the operation", operation_name)

            if "error" in result:
                error = result["error"]
                if isinstance(error, StoreError):
                    raise error
                raise StoreError(f"{operation_name} failed: {error}", operation_name) from error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # User Operations
    def create_user(self, name: str) -> Dict[str, Any]:
        """Insert a user and return the stored row."""
        now = int(time())
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO users (name, created_at, updated_at) VALUES (?, ?, ?)",
                (name, now, now)
            )
        return self.get_user(cursor.lastrowid)

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_dict(row)

    def get_user_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
        return _row_to_dict(row)

    def get_users(self) -> List[Dict[str, Any]]:
        rows = self.conn.execute("SELECT * FROM users ORDER BY name").fetchall()
        return [dict(row) for row in rows]

    def delete_all_users(self) -> int:
        """Delete every user; feeds, follows and posts go with them via cascade."""
        with self.conn:
            cursor = self.conn.execute("DELETE FROM users")
        logger.info(f"Deleted {cursor.rowcount} users")
        return cursor.rowcount

    # Feed Management Operations
    def create_feed(self, name: str, url: str, user_id: int) -> Dict[str, Any]:
        """Insert a feed owned by ``user_id``; it starts out never fetched."""
        now = int(time())
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO feeds (name, url, user_id, created_at, updated_at, last_fetched_at) "
                "VALUES (?, ?, ?, ?, ?, NULL)",
                (name, url, user_id, now, now)
            )
        return self.get_feed(cursor.lastrowid)

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return _row_to_dict(row)

    def get_feed_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
        return _row_to_dict(row)

    def get_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds together with the name of the user who added them."""
        rows = self.conn.execute(
            """
            SELECT f.*, u.name AS user_name
            FROM feeds f
            JOIN users u ON f.user_id = u.id
            ORDER BY f.id
            """
        ).fetchall()
        return [dict(row) for row in rows]

    def next_feed_to_fetch(self) -> Optional[Dict[str, Any]]:
        """Return the feed that should be polled next, or None if there are no feeds.

        Never-fetched feeds (NULL last_fetched_at) sort first, then the least
        recently fetched. Ties fall back to insertion order.
        """
        row = self.conn.execute(
            """
            SELECT * FROM feeds
            ORDER BY last_fetched_at IS NOT NULL, last_fetched_at ASC, id ASC
            LIMIT 1
            """
        ).fetchone()
        return _row_to_dict(row)

    def mark_feed_fetched(self, feed_id: int, fetched_at: Optional[int] = None) -> None:
        """Set last_fetched_at and updated_at for a feed."""
        current_time = int(fetched_at if fetched_at is not None else time())
        with self.conn:
            self.conn.execute(
                "UPDATE feeds SET last_fetched_at = ?, updated_at = ? WHERE id = ?",
                (current_time, current_time, feed_id)
            )

    # Follow Operations
    def create_feed_follow(self, user_id: int, feed_id: int) -> Dict[str, Any]:
        """Follow a feed (idempotent) and return the follow with user and feed names."""
        now = int(time())
        with self.conn:
            self.conn.execute(
                "INSERT INTO feed_follows (user_id, feed_id, created_at, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT (user_id, feed_id) DO NOTHING",
                (user_id, feed_id, now, now)
            )
        row = self.conn.execute(
            """
            SELECT ff.*, u.name AS user_name, f.name AS feed_name, f.url AS feed_url
            FROM feed_follows ff
            JOIN users u ON ff.user_id = u.id
            JOIN feeds f ON ff.feed_id = f.id
            WHERE ff.user_id = ? AND ff.feed_id = ?
            """,
            (user_id, feed_id)
        ).fetchone()
        return _row_to_dict(row)

    def get_feed_follows_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT ff.*, u.name AS user_name, f.name AS feed_name, f.url AS feed_url
            FROM feed_follows ff
            JOIN users u ON ff.user_id = u.id
            JOIN feeds f ON ff.feed_id = f.id
            WHERE ff.user_id = ?
            ORDER BY ff.id
            """,
            (user_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    def delete_feed_follow(self, user_id: int, feed_id: int) -> int:
        """Remove a follow; returns the number of rows deleted (0 if not following)."""
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM feed_follows WHERE user_id = ? AND feed_id = ?",
                (user_id, feed_id)
            )
        return cursor.rowcount

    # Post Operations
    def create_post(
        self,
        title: str,
        url: str,
        description: Optional[str],
        published_at: Optional[int],
        feed_id: int,
    ) -> Optional[Dict[str, Any]]:
        """Insert a post unless its URL is already stored.

        Returns the new row, or None when the URL collides with an existing
        post. Any other failure (missing feed, closed connection) raises.
        """
        now = int(time())
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO posts (title, url, description, published_at, feed_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (url) DO NOTHING
                """,
                (title, url, description, published_at, feed_id, now, now)
            )
        if cursor.rowcount == 0:
            return None
        row = self.conn.execute("SELECT * FROM posts WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _row_to_dict(row)

    def get_posts_for_user(self, user_id: int, limit: int = 2) -> List[Dict[str, Any]]:
        """Newest posts from the feeds a user follows; undated posts sort last."""
        rows = self.conn.execute(
            """
            SELECT p.*, f.name AS feed_name
            FROM posts p
            JOIN feeds f ON p.feed_id = f.id
            JOIN feed_follows ff ON ff.feed_id = f.id
            WHERE ff.user_id = ?
            ORDER BY p.published_at IS NULL, p.published_at DESC, p.id DESC
            LIMIT ?
            """,
            (user_id, limit)
        ).fetchall()
        return [dict(row) for row in rows]

    def count_posts(self, feed_id: Optional[int] = None) -> int:
        """Return the number of stored posts, optionally for one feed."""
        if feed_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM posts").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM posts WHERE feed_id = ?", (feed_id,)).fetchone()
        return int(row[0]) if row else 0
