"""Durable storage for the outbox, per-type cursors and user flags."""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

__all__ = [
    "SyncStorage",
    "OutboxItem",
    "StorageError",
    "FLAG_FULL_EXPORT_DONE",
]

logger = logging.getLogger(__name__)

FLAG_FULL_EXPORT_DONE = "full_export_done"


class StorageError(Exception):
    """Local storage failed."""

    pass


@dataclass
class OutboxItem:
    """A serialized chunk staged for delivery."""

    seq: int
    item_id: str
    type_tag: str
    user_key: str
    payload: bytes
    cursors: dict[str, str] = field(default_factory=dict)
    completes_full_export: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OutboxItem":
        """Build from an outbox_items row."""
        return cls(
            seq=row["seq"],
            item_id=row["item_id"],
            type_tag=row["type_tag"],
            user_key=row["user_key"],
            payload=bytes(row["payload"]),
            cursors=json.loads(row["cursors"]) if row["cursors"] else {},
            completes_full_export=bool(row["completes_full_export"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            retry_count=row["retry_count"],
            last_attempt_at=(
                datetime.fromisoformat(row["last_attempt_at"]) if row["last_attempt_at"] else None
            ),
        )


def _now() -> str:
    return _iso(datetime.now(timezone.utc))


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SyncStorage:
    """SQLite store shared by the transmitter and the orchestrator.

    Cursors only move forward: each cursor row remembers the outbox sequence
    number of the item that wrote it, and an older item can never overwrite
    a cursor written by a newer one.
    """

    def __init__(self, db_path: Path):
        """Initialize storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        try:
            self._init_db()
        except OSError as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        """One connection per thread; sqlite3 connections are not shared."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            # close() may run on another thread
            conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            with self._connections_lock:
                self._connections.append(conn)
            self._local.connection = conn
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Cursor in its own transaction; sqlite errors become StorageError."""
        try:
            conn = self._get_connection()
            cursor = conn.cursor()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS outbox_items (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL UNIQUE,
                    type_tag TEXT NOT NULL,
                    user_key TEXT NOT NULL,
                    payload BLOB NOT NULL,
                    cursors TEXT,
                    completes_full_export INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_outbox_user ON outbox_items(user_key, seq)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS cursors (
                    user_key TEXT NOT NULL,
                    type_id TEXT NOT NULL,
                    cursor TEXT,
                    source_seq INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_key, type_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS flags (
                    user_key TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (user_key, name)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS rejected_chunks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL,
                    type_tag TEXT NOT NULL,
                    user_key TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    detail TEXT,
                    payload_size INTEGER NOT NULL,
                    rejected_at TEXT NOT NULL
                )
                """
            )

    # Outbox

    def stage(
        self,
        type_tag: str,
        user_key: str,
        payload: bytes,
        cursors: Optional[dict[str, str]] = None,
        completes_full_export: bool = False,
    ) -> OutboxItem:
        """Persist a chunk before it is sent.

        Args:
            type_tag: Type id, or "combined" for multi-type chunks
            user_key: Owner of the chunk
            payload: Serialized body
            cursors: Candidate cursors to save once the chunk is acknowledged
            completes_full_export: Acknowledging the chunk finishes a full export

        Returns:
            The staged item
        """
        item_id = uuid.uuid4().hex
        created_at = datetime.now(timezone.utc)
        cursors = {k: v for k, v in (cursors or {}).items() if v is not None}

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO outbox_items
                    (item_id, type_tag, user_key, payload, cursors, completes_full_export, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    type_tag,
                    user_key,
                    sqlite3.Binary(payload),
                    json.dumps(cursors) if cursors else None,
                    int(completes_full_export),
                    _iso(created_at),
                ),
            )
            seq = cursor.lastrowid

        return OutboxItem(
            seq=seq,
            item_id=item_id,
            type_tag=type_tag,
            user_key=user_key,
            payload=payload,
            cursors=cursors,
            completes_full_export=completes_full_export,
            created_at=created_at,
        )

    def get_item(self, item_id: str) -> Optional[OutboxItem]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM outbox_items WHERE item_id = ?", (item_id,))
            row = cursor.fetchone()
            return OutboxItem.from_row(row) if row else None

    def pending_items(self, user_key: str, min_age: float = 0) -> list[OutboxItem]:
        """Staged items for a user that are at least min_age seconds old, oldest first."""
        cutoff = _iso(datetime.now(timezone.utc) - timedelta(seconds=min_age))
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM outbox_items
                WHERE user_key = ? AND created_at <= ?
                ORDER BY seq ASC
                """,
                (user_key, cutoff),
            )
            return [OutboxItem.from_row(row) for row in cursor.fetchall()]

    def delete_item(self, item_id: str) -> bool:
        """Remove an item. Deleting a missing item is not an error."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM outbox_items WHERE item_id = ?", (item_id,))
            return cursor.rowcount > 0

    def increment_retry(self, item_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE outbox_items
                SET retry_count = retry_count + 1, last_attempt_at = ?
                WHERE item_id = ?
                """,
                (_now(), item_id),
            )

    def outbox_size(self, user_key: Optional[str] = None) -> int:
        with self._cursor() as cursor:
            if user_key is None:
                cursor.execute("SELECT COUNT(*) FROM outbox_items")
            else:
                cursor.execute("SELECT COUNT(*) FROM outbox_items WHERE user_key = ?", (user_key,))
            return cursor.fetchone()[0]

    def clear_outbox(self, user_key: Optional[str] = None) -> int:
        """Drop staged items for one user, or for everyone."""
        with self._cursor() as cursor:
            if user_key is None:
                cursor.execute("DELETE FROM outbox_items")
            else:
                cursor.execute("DELETE FROM outbox_items WHERE user_key = ?", (user_key,))
            count = cursor.rowcount
        if count:
            logger.info(f"Cleared {count} outbox items")
        return count

    def acknowledge(self, item: OutboxItem) -> None:
        """Apply a delivered item's effects and remove it, atomically.

        Saves the item's candidate cursors, marks the full export done when the
        item completes one, then deletes the item. Acknowledging the
        same item twice has no further effect.
        """
        with self._cursor() as cursor:
            for type_id, value in item.cursors.items():
                self._upsert_cursor(cursor, item.user_key, type_id, value, item.seq, False)
            if item.completes_full_export:
                self._set_flag(cursor, item.user_key, FLAG_FULL_EXPORT_DONE, "1")
            cursor.execute("DELETE FROM outbox_items WHERE item_id = ?", (item.item_id,))

    # Cursors

    @staticmethod
    def _upsert_cursor(
        cursor: sqlite3.Cursor,
        user_key: str,
        type_id: str,
        value: Optional[str],
        source_seq: int,
        replace_equal: bool,
    ) -> None:
        # An item never overwrites a cursor saved at or after its own sequence.
        op = ">=" if replace_equal else ">"
        cursor.execute(
            f"""
            INSERT INTO cursors (user_key, type_id, cursor, source_seq, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_key, type_id) DO UPDATE SET
                cursor = excluded.cursor,
                source_seq = excluded.source_seq,
                updated_at = excluded.updated_at
            WHERE excluded.source_seq {op} cursors.source_seq
            """,
            (user_key, type_id, value, source_seq, _now()),
        )

    def _last_seq(self, cursor: sqlite3.Cursor) -> int:
        cursor.execute("SELECT seq FROM sqlite_sequence WHERE name = 'outbox_items'")
        row = cursor.fetchone()
        return row[0] if row else 0

    def get_cursor(self, user_key: str, type_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT cursor FROM cursors WHERE user_key = ? AND type_id = ?",
                (user_key, type_id),
            )
            row = cursor.fetchone()
            return row["cursor"] if row else None

    def save_cursor(
        self, user_key: str, type_id: str, value: Optional[str], source_seq: Optional[int] = None
    ) -> None:
        """Save a cursor outside of an acknowledgement.

        Args:
            source_seq: Outbox sequence the cursor is ordered against; defaults
                to the newest sequence handed out so far
        """
        with self._cursor() as cursor:
            if source_seq is None:
                source_seq = self._last_seq(cursor)
            self._upsert_cursor(cursor, user_key, type_id, value, source_seq, True)

    def clear_cursors(self, user_key: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM cursors WHERE user_key = ?", (user_key,))

    # Flags

    @staticmethod
    def _set_flag(cursor: sqlite3.Cursor, user_key: str, name: str, value: str) -> None:
        cursor.execute(
            """
            INSERT INTO flags (user_key, name, value) VALUES (?, ?, ?)
            ON CONFLICT(user_key, name) DO UPDATE SET value = excluded.value
            """,
            (user_key, name, value),
        )

    def is_full_export_done(self, user_key: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT value FROM flags WHERE user_key = ? AND name = ?",
                (user_key, FLAG_FULL_EXPORT_DONE),
            )
            row = cursor.fetchone()
            return bool(row and row["value"] == "1")

    def set_full_export_done(self, user_key: str, done: bool = True) -> None:
        with self._cursor() as cursor:
            if done:
                self._set_flag(cursor, user_key, FLAG_FULL_EXPORT_DONE, "1")
            else:
                cursor.execute(
                    "DELETE FROM flags WHERE user_key = ? AND name = ?",
                    (user_key, FLAG_FULL_EXPORT_DONE),
                )

    # Rejections

    def record_rejection(self, item: OutboxItem, status_code: int, detail: str = "") -> None:
        """Keep an audit row for a chunk the server refused permanently."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO rejected_chunks
                    (item_id, type_tag, user_key, status_code, detail, payload_size, rejected_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.item_id,
                    item.type_tag,
                    item.user_key,
                    status_code,
                    detail[:1000],
                    len(item.payload),
                    _now(),
                ),
            )

    def rejected_count(self, user_key: Optional[str] = None) -> int:
        with self._cursor() as cursor:
            if user_key is None:
                cursor.execute("SELECT COUNT(*) FROM rejected_chunks")
            else:
                cursor.execute(
                    "SELECT COUNT(*) FROM rejected_chunks WHERE user_key = ?", (user_key,)
                )
            return cursor.fetchone()[0]

    def close(self) -> None:
        """Close the connections of every thread that used this storage."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
            self._local = threading.local()
        for conn in connections:
            conn.close()
