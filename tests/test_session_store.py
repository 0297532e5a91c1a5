import os
import time
from datetime import datetime, timedelta

import pytest

from app.domain.imports.errors import SessionNotFoundError
from app.domain.imports.sessions import SessionState, SessionSweeper


def test_create_persists_rows_and_exposes_preview(store, upload):
    session = upload("Name,Serial", *[f"Item {i},SN-{i}" for i in range(1, 8)])

    assert session.state == SessionState.UPLOADED
    assert session.total_rows == 7
    assert len(session.preview_rows) == 5
    assert session.preview_rows[0] == {"Name": "Item 1", "Serial": "SN-1"}
    assert session.suggested_mapping == {"Name": "__new__", "Serial": "__new__"}
    assert session.advisor_confidence == "none"
    assert os.path.exists(session.artifact_path)
    assert store.load_rows(session)[-1] == ["Item 7", "SN-7"]


def test_get_unknown_handle_raises(store):
    with pytest.raises(SessionNotFoundError):
        store.get("no-such-handle")


def test_cancel_deletes_artifact_and_ends_session(store, upload):
    session = upload("Name", "Pump")

    store.cancel(session.handle)

    assert not os.path.exists(session.artifact_path)
    assert session.state == SessionState.CANCELLED
    with pytest.raises(SessionNotFoundError):
        store.get(session.handle)
    with pytest.raises(SessionNotFoundError):
        store.cancel(session.handle)


def test_executing_session_is_hidden_from_get_and_cancel(store, upload):
    session = upload("Name", "Pump")
    store.begin_execute(session.handle)

    with pytest.raises(SessionNotFoundError):
        store.get(session.handle)
    with pytest.raises(SessionNotFoundError):
        store.cancel(session.handle)
    with pytest.raises(SessionNotFoundError):
        store.begin_execute(session.handle)

    store.release(session.handle)
    assert store.get(session.handle).state == SessionState.UPLOADED


def test_terminate_is_exactly_once(store, upload):
    session = upload("Name", "Pump")
    store.begin_execute(session.handle)

    store.terminate(session.handle, SessionState.COMPLETED)

    assert session.state == SessionState.COMPLETED
    assert not os.path.exists(session.artifact_path)
    with pytest.raises(SessionNotFoundError):
        store.terminate(session.handle)


def test_apply_suggestion_ignored_once_session_ended(store, upload):
    session = upload("Name", "Pump")
    store.cancel(session.handle)

    assert store.apply_suggestion(session.handle, {"Name": "name"}, "high", "") is False


def test_save_draft_records_mapping_without_ending_session(store, upload):
    session = upload("Name,Color", "Pump,Red")

    store.save_draft(session.handle, {"Name": "name", "Color": "__skip__"}, {"skip_duplicates": False})

    current = store.get(session.handle)
    assert current.draft_mapping == {"Name": "name", "Color": "__skip__"}
    assert current.draft_options == {"skip_duplicates": False}
    assert current.to_dict()["state"] == "uploaded"


def test_load_rows_with_missing_artifact_raises_session_not_found(store, upload):
    session = upload("Name", "Pump")
    os.remove(session.artifact_path)

    with pytest.raises(SessionNotFoundError):
        store.load_rows(session)


def test_sweep_expires_idle_sessions_only(store, upload):
    idle = upload("Name", "Pump")
    fresh = upload("Name", "Valve")
    idle.last_activity_at = datetime.now() - timedelta(hours=2)

    removed = store.sweep()

    assert removed == 1
    assert idle.state == SessionState.EXPIRED
    assert not os.path.exists(idle.artifact_path)
    assert store.active_handles() == [fresh.handle]


def test_sweep_never_touches_executing_sessions(store, upload):
    session = upload("Name", "Pump")
    store.begin_execute(session.handle)
    session.last_activity_at = datetime.now() - timedelta(hours=2)

    assert store.sweep() == 0
    assert session.state == SessionState.EXECUTING
    assert os.path.exists(session.artifact_path)


def test_sweep_tolerates_missing_artifact(store, upload):
    session = upload("Name", "Pump")
    os.remove(session.artifact_path)
    session.last_activity_at = datetime.now() - timedelta(hours=2)

    assert store.sweep() == 1
    assert session.state == SessionState.EXPIRED


def test_sweep_removes_old_orphan_artifacts(store, scratch_dir):
    orphan = os.path.join(scratch_dir, "import-left-by-restart.json")
    recent = os.path.join(scratch_dir, "import-still-being-written.json")
    unrelated = os.path.join(scratch_dir, "notes.txt")
    for path in (orphan, recent, unrelated):
        with open(path, "w", encoding="utf-8") as f:
            f.write("{}")
    old = time.time() - 3 * 60 * 60
    os.utime(orphan, (old, old))

    assert store.sweep() == 1
    assert not os.path.exists(orphan)
    assert os.path.exists(recent)
    assert os.path.exists(unrelated)


def test_sweeper_thread_runs_sweep(store, upload):
    session = upload("Name", "Pump")
    session.last_activity_at = datetime.now() - timedelta(hours=2)

    sweeper = SessionSweeper(store, interval_seconds=0.05)
    sweeper.start()
    try:
        deadline = time.time() + 5
        while session.state == SessionState.UPLOADED and time.time() < deadline:
            time.sleep(0.02)
    finally:
        sweeper.stop()

    assert session.state == SessionState.EXPIRED
