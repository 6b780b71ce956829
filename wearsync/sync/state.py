"""Persistent sync session state.

One JSON file per user records how far the current session got: which types
are complete, how many records were delivered, and for a type that was
interrupted, the cursor of its last acknowledged chunk. Files are written
with atomic replace so a crash leaves either the old or the new state.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

__all__ = [
    "TypeProgress",
    "SyncState",
    "SyncStateStore",
]

logger = logging.getLogger(__name__)

STATE_FILE = "sync_state.json"


@dataclass
class TypeProgress:
    """Progress of one type within a session."""

    type_id: str
    sent_count: int = 0
    is_complete: bool = False
    pending_cursor: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type_id": self.type_id,
            "sent_count": self.sent_count,
            "is_complete": self.is_complete,
            "pending_cursor": self.pending_cursor,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TypeProgress":
        return cls(
            type_id=data["type_id"],
            sent_count=int(data.get("sent_count", 0)),
            is_complete=bool(data.get("is_complete", False)),
            pending_cursor=data.get("pending_cursor"),
        )


@dataclass
class SyncState:
    """Durable record of an in-progress sync session."""

    user_key: str
    full_export: bool
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    type_progress: dict[str, TypeProgress] = field(default_factory=dict)
    total_sent_count: int = 0
    completed_types: list[str] = field(default_factory=list)
    current_type_index: int = 0

    @property
    def has_progress(self) -> bool:
        return self.total_sent_count > 0 or bool(self.completed_types)

    def is_type_complete(self, type_id: str) -> bool:
        return type_id in self.completed_types

    def pending_cursor(self, type_id: str) -> Optional[str]:
        progress = self.type_progress.get(type_id)
        return progress.pending_cursor if progress else None

    def to_dict(self) -> dict:
        return {
            "user_key": self.user_key,
            "full_export": self.full_export,
            "created_at": self.created_at.isoformat(),
            "type_progress": {k: v.to_dict() for k, v in self.type_progress.items()},
            "total_sent_count": self.total_sent_count,
            "completed_types": list(self.completed_types),
            "current_type_index": self.current_type_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncState":
        return cls(
            user_key=data["user_key"],
            full_export=bool(data.get("full_export", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
            type_progress={
                k: TypeProgress.from_dict(v) for k, v in (data.get("type_progress") or {}).items()
            },
            total_sent_count=int(data.get("total_sent_count", 0)),
            completed_types=list(data.get("completed_types") or []),
            current_type_index=int(data.get("current_type_index", 0)),
        )


class SyncStateStore:
    """File-backed store for per-user SyncState."""

    def __init__(self, base_dir: Path):
        """Initialize the store.

        Args:
            base_dir: Data directory; state lives under <base_dir>/users/<user_key>/
        """
        self.base_dir = Path(base_dir)
        self._lock = threading.Lock()

    def _state_path(self, user_key: str) -> Path:
        return self.base_dir / "users" / user_key / STATE_FILE

    def _read(self, user_key: str) -> Optional[SyncState]:
        path = self._state_path(user_key)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                state = SyncState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable sync state {path}: {e}")
            return None

        if state.user_key != user_key:
            logger.warning(f"Sync state at {path} belongs to {state.user_key}, removing")
            self._remove(path)
            return None
        return state

    def _write(self, state: SyncState) -> None:
        path = self._state_path(state.user_key)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".state-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")

    def load(self, user_key: str) -> Optional[SyncState]:
        """Load the session for a user, or None if there is none."""
        with self._lock:
            return self._read(user_key)

    def start_new(self, user_key: str, full_export: bool) -> SyncState:
        """Replace any existing session with a fresh one."""
        state = SyncState(user_key=user_key, full_export=full_export)
        with self._lock:
            self._write(state)
        logger.info(f"Started new sync session ({'full export' if full_export else 'incremental'})")
        return state

    def update_type_progress(
        self,
        user_key: str,
        type_id: str,
        sent: int = 0,
        is_complete: bool = False,
        pending_cursor: Optional[str] = None,
    ) -> Optional[SyncState]:
        """Record delivered records and/or completion for a type.

        Counts are cumulative. Marking a type complete clears its pending
        cursor; marking an already complete type again changes nothing.

        Returns:
            Updated state, or None if no session exists
        """
        with self._lock:
            state = self._read(user_key)
            if state is None:
                return None

            progress = state.type_progress.setdefault(type_id, TypeProgress(type_id=type_id))
            if progress.is_complete:
                return state

            progress.sent_count += sent
            state.total_sent_count += sent
            if pending_cursor is not None:
                progress.pending_cursor = pending_cursor
            if is_complete:
                progress.is_complete = True
                progress.pending_cursor = None
                if type_id not in state.completed_types:
                    state.completed_types.append(type_id)

            self._write(state)
            return state

    def update_current_type_index(self, user_key: str, index: int) -> None:
        with self._lock:
            state = self._read(user_key)
            if state is None or state.current_type_index == index:
                return
            state.current_type_index = index
            self._write(state)

    def has_resumable_session(self, user_key: str) -> bool:
        state = self.load(user_key)
        return state is not None and state.has_progress

    def should_sync_type(self, user_key: str, type_id: str) -> bool:
        state = self.load(user_key)
        return state is None or not state.is_type_complete(type_id)

    def resume_type_index(self, user_key: str) -> int:
        state = self.load(user_key)
        return state.current_type_index if state else 0

    def clear(self, user_key: str) -> None:
        """Delete the session for a user."""
        with self._lock:
            self._remove(self._state_path(user_key))

    def status(self, user_key: str) -> dict:
        """Session summary for display."""
        state = self.load(user_key)
        if state is None:
            return {
                "hasResumableSession": False,
                "sentCount": 0,
                "completedTypes": 0,
                "isFullExport": False,
                "createdAt": None,
            }
        return {
            "hasResumableSession": state.has_progress,
            "sentCount": state.total_sent_count,
            "completedTypes": len(state.completed_types),
            "isFullExport": state.full_export,
            "createdAt": state.created_at.isoformat(),
        }
