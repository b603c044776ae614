"""Common test fixtures for the anote store."""

import tempfile
from pathlib import Path

import pytest

from anote.config import config
from anote.observability import metrics
from anote.services.store_service import NoteStore


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the database and snapshots."""
    with tempfile.TemporaryDirectory() as data_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(data_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    data_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "data_dir", data_dir)
    monkeypatch.setattr(config, "database_path", db_dir / "test_anote.db")
    monkeypatch.setattr(config, "backup_dir", data_dir / "backups")
    monkeypatch.setattr(config, "log_dir", data_dir / "logs")
    yield config


@pytest.fixture
def db_path(test_config):
    """Absolute path of the test database file."""
    return test_config.get_database_path()


@pytest.fixture
def store(db_path):
    """Create a long-lived test store."""
    note_store = NoteStore(db_path)
    yield note_store
    note_store.close()


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
