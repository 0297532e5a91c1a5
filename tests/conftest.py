"""
Pytest configuration and fixtures for the equipment import tests.

Every test gets its own SQLite database file and scratch directory under
``tmp_path``; nothing talks to PostgreSQL or the Anthropic API.
"""
import os

# Skip the startup table bootstrap; fixtures create tables on their own engine.
os.environ["SKIP_DB_INIT"] = "1"

from datetime import timedelta

import pytest

from app.db.schema import create_import_tables
from app.db.session import build_engine
from app.domain.imports.processors.tabular import parse_tabular_file
from app.domain.imports.sessions import ImportSessionStore
from tests.utils.uploads import make_csv


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'equipment.db'}")
    create_import_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def scratch_dir(tmp_path):
    return str(tmp_path / "scratch")


@pytest.fixture
def store(scratch_dir):
    return ImportSessionStore(scratch_dir, idle_timeout=timedelta(minutes=30))


@pytest.fixture
def upload(store):
    """Parse CSV lines and open an import session for them."""

    def _upload(*lines: str, file_name: str = "equipment.csv"):
        parsed = parse_tabular_file(make_csv(*lines), ".csv")
        return store.create(parsed, file_name, preview_limit=5)

    return _upload
