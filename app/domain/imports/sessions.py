"""
Import session storage between the preview and execute steps.

A session keeps its full row set in a JSON artifact in the scratch
directory; only metadata and the preview rows stay in memory. Sessions end
exactly once (execute, cancel, or the idle sweep), and ending one always
deletes its artifact.
"""
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from app.domain.imports.errors import SessionNotFoundError
from app.domain.imports.mapping import default_mapping
from app.domain.imports.processors.tabular import ParsedTable

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "import-"
ARTIFACT_SUFFIX = ".json"


class SessionState(str, Enum):
    UPLOADED = "uploaded"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass
class ImportSession:
    """Server-side record of one uploaded file awaiting a mapping decision."""

    handle: str
    file_name: Optional[str]
    file_type: str
    artifact_path: str
    headers: List[str]
    preview_rows: List[Dict[str, str]]
    total_rows: int
    suggested_mapping: Dict[str, str]
    advisor_confidence: str = "none"
    advisor_notes: str = ""
    sheet_name: Optional[str] = None
    sheet_names: List[str] = field(default_factory=list)
    draft_mapping: Optional[Dict[str, Optional[str]]] = None
    draft_options: Optional[Dict[str, Any]] = None
    state: SessionState = SessionState.UPLOADED
    created_at: datetime = field(default_factory=datetime.now)
    last_activity_at: datetime = field(default_factory=datetime.now)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def touch(self) -> None:
        self.last_activity_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "headers": list(self.headers),
            "preview_rows": [dict(row) for row in self.preview_rows],
            "total_rows": self.total_rows,
            "suggested_mapping": dict(self.suggested_mapping),
            "advisor_confidence": self.advisor_confidence,
            "advisor_notes": self.advisor_notes,
            "sheet_name": self.sheet_name,
            "sheet_names": list(self.sheet_names),
            "draft_mapping": dict(self.draft_mapping) if self.draft_mapping is not None else None,
            "draft_options": dict(self.draft_options) if self.draft_options is not None else None,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }


class ImportSessionStore:
    """
    Thread-safe registry of live import sessions.

    ``_lock`` guards the handle index; each session's own lock serializes
    state changes (execute, cancel, advisor update, draft edits, sweep) on
    that handle.
    """

    def __init__(self, scratch_dir: str, idle_timeout: timedelta):
        self.scratch_dir = scratch_dir
        self.idle_timeout = idle_timeout
        self._sessions: Dict[str, ImportSession] = {}
        self._lock = threading.Lock()
        os.makedirs(self.scratch_dir, exist_ok=True)

    def _artifact_path(self, handle: str) -> str:
        return os.path.join(self.scratch_dir, f"{ARTIFACT_PREFIX}{handle}{ARTIFACT_SUFFIX}")

    def _lookup(self, handle: str) -> ImportSession:
        with self._lock:
            session = self._sessions.get(handle)
        if session is None:
            raise SessionNotFoundError(handle)
        return session

    def create(self, parsed: ParsedTable, file_name: Optional[str], preview_limit: int) -> ImportSession:
        """Persist a parsed upload under a new handle and register the session."""
        handle = str(uuid.uuid4())
        artifact_path = self._artifact_path(handle)
        with open(artifact_path, "w", encoding="utf-8") as f:
            json.dump({"headers": parsed.headers, "rows": parsed.rows}, f)

        session = ImportSession(
            handle=handle,
            file_name=file_name,
            file_type=parsed.file_type,
            artifact_path=artifact_path,
            headers=list(parsed.headers),
            preview_rows=parsed.preview(preview_limit),
            total_rows=parsed.total_rows,
            suggested_mapping=default_mapping(parsed.headers),
            sheet_name=parsed.sheet_name,
            sheet_names=list(parsed.sheet_names),
        )
        with self._lock:
            self._sessions[handle] = session
        logger.info(f"Created import session {handle} for '{file_name}' ({parsed.total_rows} rows)")
        return session

    def get(self, handle: str) -> ImportSession:
        """Return a live session awaiting a decision; executing or ended sessions are not found."""
        session = self._lookup(handle)
        with session.lock:
            if session.state != SessionState.UPLOADED:
                raise SessionNotFoundError(handle)
            session.touch()
        return session

    def load_rows(self, session: ImportSession) -> List[List[str]]:
        """Read the full row set back from the session artifact."""
        try:
            with open(session.artifact_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except FileNotFoundError as e:
            raise SessionNotFoundError(
                session.handle, f"Temporary file for import session '{session.handle}' not found. Please upload again."
            ) from e
        return payload["rows"]

    def apply_suggestion(
        self, handle: str, mapping: Dict[str, str], confidence: str, notes: str
    ) -> bool:
        """Store an advisor suggestion if the session is still awaiting a decision."""
        try:
            session = self._lookup(handle)
        except SessionNotFoundError:
            logger.info(f"Advisor result for ended session {handle} discarded")
            return False
        with session.lock:
            if session.state != SessionState.UPLOADED:
                logger.info(f"Advisor result for session {handle} in state '{session.state.value}' discarded")
                return False
            session.suggested_mapping = dict(mapping)
            session.advisor_confidence = confidence
            session.advisor_notes = notes
        return True

    def save_draft(
        self, handle: str, mapping: Dict[str, Optional[str]], options: Dict[str, Any]
    ) -> ImportSession:
        """Remember the operator's latest mapping edit; nothing is committed."""
        session = self._lookup(handle)
        with session.lock:
            if session.state != SessionState.UPLOADED:
                raise SessionNotFoundError(handle)
            session.draft_mapping = dict(mapping)
            session.draft_options = dict(options)
            session.touch()
        return session

    def begin_execute(self, handle: str) -> ImportSession:
        """Move a session from uploaded to executing; only one caller can win."""
        session = self._lookup(handle)
        with session.lock:
            if session.state != SessionState.UPLOADED:
                raise SessionNotFoundError(handle)
            session.state = SessionState.EXECUTING
            session.touch()
        logger.info(f"Import session {handle} executing")
        return session

    def release(self, handle: str) -> None:
        """Return an executing session to uploaded so the operator can retry."""
        session = self._lookup(handle)
        with session.lock:
            if session.state == SessionState.EXECUTING:
                session.state = SessionState.UPLOADED
                session.touch()
        logger.info(f"Import session {handle} released back to uploaded")

    def cancel(self, handle: str) -> None:
        """End an uploaded session without importing anything."""
        session = self._lookup(handle)
        with session.lock:
            if session.state != SessionState.UPLOADED:
                raise SessionNotFoundError(handle)
            self._end(session, SessionState.CANCELLED)

    def terminate(self, handle: str, final_state: SessionState = SessionState.COMPLETED) -> None:
        """End a live session (uploaded or executing) and release its artifact."""
        session = self._lookup(handle)
        with session.lock:
            if session.state not in (SessionState.UPLOADED, SessionState.EXECUTING):
                raise SessionNotFoundError(handle)
            self._end(session, final_state)

    def _end(self, session: ImportSession, final_state: SessionState) -> None:
        # Caller holds session.lock.
        session.state = final_state
        with self._lock:
            self._sessions.pop(session.handle, None)
        self._remove_artifact(session.artifact_path)
        logger.info(f"Import session {session.handle} ended ({final_state.value})")

    def _remove_artifact(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.info(f"Import artifact already removed: {path}")

    def active_handles(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Expire idle sessions and delete orphaned artifacts.

        Executing sessions are never touched. Returns the number of sessions
        and orphan artifacts removed.
        """
        now = now or datetime.now()
        removed = 0

        with self._lock:
            candidates = list(self._sessions.values())

        for session in candidates:
            if not session.lock.acquire(blocking=False):
                continue
            try:
                if session.state != SessionState.UPLOADED:
                    continue
                if now - session.last_activity_at < self.idle_timeout:
                    continue
                logger.info(f"Expiring idle import session {session.handle}")
                self._end(session, SessionState.EXPIRED)
                removed += 1
            finally:
                session.lock.release()

        removed += self._sweep_orphans(now)
        return removed

    def _sweep_orphans(self, now: datetime) -> int:
        """Delete artifacts no live session owns (e.g. left behind by a restart)."""
        with self._lock:
            owned = {session.artifact_path for session in self._sessions.values()}

        try:
            entries = os.listdir(self.scratch_dir)
        except FileNotFoundError:
            logger.warning(f"Import scratch directory missing: {self.scratch_dir}")
            return 0

        cutoff = time.mktime((now - self.idle_timeout).timetuple())
        removed = 0
        for entry in entries:
            if not (entry.startswith(ARTIFACT_PREFIX) and entry.endswith(ARTIFACT_SUFFIX)):
                continue
            path = os.path.join(self.scratch_dir, entry)
            if path in owned:
                continue
            try:
                if os.path.getmtime(path) >= cutoff:
                    continue
            except FileNotFoundError:
                continue
            logger.info(f"Removing orphaned import artifact {path}")
            self._remove_artifact(path)
            removed += 1
        return removed


class SessionSweeper:
    """Background thread that periodically calls ``ImportSessionStore.sweep``."""

    def __init__(self, store: ImportSessionStore, interval_seconds: float):
        self.store = store
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="import-session-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Import session sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Import session sweeper stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                removed = self.store.sweep()
            except Exception:
                logger.exception("Import session sweep failed")
                continue
            if removed:
                logger.info(f"Import session sweep removed {removed} item(s)")
