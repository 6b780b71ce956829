"""Tests for persistent sync state."""

import json
import tempfile
from pathlib import Path

from wearsync.sync.state import SyncState, SyncStateStore, TypeProgress

USER = "user.u1"


class TestSyncState:
    """Tests for the SyncState dataclass."""

    def test_has_progress(self):
        state = SyncState(user_key=USER, full_export=True)
        assert state.has_progress is False

        state.total_sent_count = 5
        assert state.has_progress is True

    def test_completed_type_counts_as_progress(self):
        state = SyncState(user_key=USER, full_export=False, completed_types=["steps"])
        assert state.has_progress is True

    def test_dict_roundtrip(self):
        state = SyncState(
            user_key=USER,
            full_export=True,
            type_progress={"steps": TypeProgress("steps", sent_count=3, pending_cursor="c3")},
            total_sent_count=3,
            current_type_index=1,
        )

        restored = SyncState.from_dict(json.loads(json.dumps(state.to_dict())))

        assert restored == state


class TestSyncStateStore:
    """Tests for SyncStateStore."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.store = SyncStateStore(self.temp_dir)

    def test_load_missing_returns_none(self):
        assert self.store.load(USER) is None

    def test_start_new_persists_under_user_dir(self):
        self.store.start_new(USER, full_export=True)

        path = self.temp_dir / "users" / USER / "sync_state.json"
        assert path.exists()
        assert self.store.load(USER).full_export is True

    def test_start_new_replaces_existing_session(self):
        self.store.start_new(USER, full_export=True)
        self.store.update_type_progress(USER, "steps", sent=10)

        self.store.start_new(USER, full_export=False)

        state = self.store.load(USER)
        assert state.total_sent_count == 0
        assert state.full_export is False

    def test_update_type_progress_is_cumulative(self):
        self.store.start_new(USER, full_export=False)

        self.store.update_type_progress(USER, "steps", sent=100, pending_cursor="c1")
        self.store.update_type_progress(USER, "steps", sent=50, pending_cursor="c2")
        self.store.update_type_progress(USER, "sleep", sent=7)

        state = self.store.load(USER)
        assert state.type_progress["steps"].sent_count == 150
        assert state.type_progress["steps"].pending_cursor == "c2"
        assert state.total_sent_count == 157

    def test_completion_is_recorded_once(self):
        self.store.start_new(USER, full_export=False)
        self.store.update_type_progress(USER, "steps", sent=10, pending_cursor="c1")

        self.store.update_type_progress(USER, "steps", is_complete=True)
        self.store.update_type_progress(USER, "steps", sent=99, is_complete=True)

        state = self.store.load(USER)
        assert state.completed_types == ["steps"]
        assert state.type_progress["steps"].pending_cursor is None
        assert state.total_sent_count == 10

    def test_update_without_session_is_noop(self):
        assert self.store.update_type_progress(USER, "steps", sent=1) is None
        assert self.store.load(USER) is None

    def test_resumable_session_and_type_checks(self):
        assert self.store.has_resumable_session(USER) is False

        self.store.start_new(USER, full_export=False)
        assert self.store.has_resumable_session(USER) is False

        self.store.update_type_progress(USER, "steps", is_complete=True)
        self.store.update_current_type_index(USER, 1)

        assert self.store.has_resumable_session(USER) is True
        assert self.store.should_sync_type(USER, "steps") is False
        assert self.store.should_sync_type(USER, "sleep") is True
        assert self.store.resume_type_index(USER) == 1

    def test_corrupt_file_is_ignored(self):
        path = self.temp_dir / "users" / USER / "sync_state.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        assert self.store.load(USER) is None

    def test_state_of_other_user_is_discarded(self):
        self.store.start_new("user.other", full_export=False)
        other = self.temp_dir / "users" / "user.other" / "sync_state.json"
        mine = self.temp_dir / "users" / USER / "sync_state.json"
        mine.parent.mkdir(parents=True)
        mine.write_text(other.read_text())

        assert self.store.load(USER) is None
        assert not mine.exists()

    def test_clear(self):
        self.store.start_new(USER, full_export=False)

        self.store.clear(USER)
        self.store.clear(USER)

        assert self.store.load(USER) is None

    def test_no_temp_files_left_behind(self):
        self.store.start_new(USER, full_export=False)
        self.store.update_type_progress(USER, "steps", sent=1)

        files = list((self.temp_dir / "users" / USER).iterdir())
        assert [f.name for f in files] == ["sync_state.json"]

    def test_status(self):
        assert self.store.status(USER)["hasResumableSession"] is False

        self.store.start_new(USER, full_export=True)
        self.store.update_type_progress(USER, "steps", sent=20, is_complete=True)

        status = self.store.status(USER)
        assert status["hasResumableSession"] is True
        assert status["sentCount"] == 20
        assert status["completedTypes"] == 1
        assert status["isFullExport"] is True
        assert status["createdAt"] is not None
