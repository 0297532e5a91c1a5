"""
Shared dependencies and state for the import API.

The session store and mapping advisor are process-wide singletons created
lazily from settings; tests replace them through ``app.dependency_overrides``.
"""
import threading
from datetime import timedelta
from typing import Optional

from sqlalchemy.engine import Engine

from app.core.config import settings
from app.db.session import get_engine
from app.domain.imports.advisor import MappingAdvisor, build_mapping_advisor
from app.domain.imports.sessions import ImportSessionStore

_session_store: Optional[ImportSessionStore] = None
_session_store_lock = threading.Lock()


def get_import_engine() -> Engine:
    return get_engine()


def get_session_store() -> ImportSessionStore:
    global _session_store
    with _session_store_lock:
        if _session_store is None:
            _session_store = ImportSessionStore(
                scratch_dir=settings.import_scratch_dir,
                idle_timeout=timedelta(minutes=settings.import_session_idle_minutes),
            )
        return _session_store


def get_mapping_advisor() -> Optional[MappingAdvisor]:
    return build_mapping_advisor(settings)
