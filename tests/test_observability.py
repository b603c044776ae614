"""Tests for logging, timing and metrics."""
import logging
from logging.handlers import RotatingFileHandler

import pytest

from anote import observability
from anote.exceptions import ErrorCode, StorageError
from anote.observability import (LOG_FILE_NAME, OUTCOME_CONFLICT,
                                 OUTCOME_ERROR, MetricsCollector,
                                 configure_logging, metrics, timed_operation,
                                 traced)


@pytest.fixture
def metrics_collector():
    return MetricsCollector()


@pytest.fixture
def clean_anote_logger(monkeypatch):
    """Detach any handlers configure_logging adds during a test."""
    anote_logger = logging.getLogger("anote")
    before = list(anote_logger.handlers)
    level = anote_logger.level
    monkeypatch.setattr(observability, "_logging_configured", False)
    yield anote_logger
    for handler in list(anote_logger.handlers):
        if handler not in before:
            anote_logger.removeHandler(handler)
            handler.close()
    anote_logger.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_outcomes_counted_separately(self, metrics_collector):
        metrics_collector.record("update_note", 10.0)
        metrics_collector.record("update_note", 30.0, OUTCOME_CONFLICT)
        metrics_collector.record("update_note", 20.0, OUTCOME_ERROR, "database is locked",
                                 lock_timeout=True)

        stats = metrics_collector.get_metrics()["update_note"]
        assert stats["calls"] == 3
        assert stats["ok"] == 1
        assert stats["conflicts"] == 1
        assert stats["errors"] == 1
        assert stats["lock_timeouts"] == 1
        assert stats["avg_ms"] == 20.0
        assert stats["fastest_ms"] == 10.0
        assert stats["slowest_ms"] == 30.0
        assert stats["last_error"] == "database is locked"
        assert stats["last_error_at"] is not None

    def test_summary(self, metrics_collector):
        metrics_collector.record("search_notes", 1.0)
        metrics_collector.record("update_note", 1.0, OUTCOME_ERROR, "boom")

        summary = metrics_collector.get_summary()
        assert summary["calls"] == 2
        assert summary["errors"] == 1
        assert summary["error_rate"] == 0.5
        assert summary["operations"] == ["search_notes", "update_note"]

    def test_empty_summary(self, metrics_collector):
        summary = metrics_collector.get_summary()
        assert summary["calls"] == 0
        assert summary["error_rate"] == 0.0

    def test_reset(self, metrics_collector):
        metrics_collector.record("x", 1.0)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for the timed_operation context manager."""

    def test_records_success(self):
        with timed_operation("search_notes", query="milk") as op:
            op["results"] = 3

        stats = metrics.get_metrics()["search_notes"]
        assert stats["calls"] == 1
        assert stats["ok"] == 1

    def test_records_conflict(self):
        with timed_operation("update_note") as op:
            op["outcome"] = OUTCOME_CONFLICT
        assert metrics.get_metrics()["update_note"]["conflicts"] == 1

    def test_records_failure_and_reraises(self):
        with pytest.raises(RuntimeError):
            with timed_operation("update_note"):
                raise RuntimeError("stale")

        stats = metrics.get_metrics()["update_note"]
        assert stats["errors"] == 1
        assert stats["last_error"] == "stale"

    def test_lock_timeout_counted(self):
        with pytest.raises(StorageError):
            with timed_operation("create_note"):
                raise StorageError("database is locked", code=ErrorCode.LOCK_TIMEOUT)
        assert metrics.get_summary()["lock_timeouts"] == 1

    def test_logs_start_and_end(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="anote.observability"):
            with timed_operation("ensure_inbox"):
                pass
        assert "START ensure_inbox" in caplog.text
        assert "END ensure_inbox ok" in caplog.text


class TestTraced:
    """Tests for the traced decorator."""

    def test_uses_function_name(self):
        @traced()
        def list_things():
            return [1, 2, 3]

        assert list_things() == [1, 2, 3]
        assert metrics.get_metrics()["list_things"]["calls"] == 1

    def test_explicit_name_and_error(self):
        @traced("delete_folder")
        def fail(folder_id=None):
            raise ValueError("nope")

        with pytest.raises(ValueError):
            fail(folder_id="abc")
        assert metrics.get_metrics()["delete_folder"]["errors"] == 1

    def test_store_operations_are_traced(self, store):
        created = store.create_note("A")
        store.update_note(created.id, "B", updated_at=created.updated_at + 10)
        store.update_note(created.id, "C", updated_at=created.updated_at + 5)
        store.search_notes("B")

        stats = metrics.get_metrics()
        assert stats["create_note"]["ok"] == 1
        assert stats["update_note"]["conflicts"] == 1
        assert stats["search_notes"]["calls"] == 1


class TestConfigureLogging:
    """Tests for persistent file logging."""

    def test_creates_log_file(self, tmp_path, clean_anote_logger):
        log_dir = tmp_path / "logs"
        assert configure_logging(log_dir) == log_dir
        assert observability.is_logging_configured() is True

        logging.getLogger("anote.storage.database").info("hello from storage")
        for handler in clean_anote_logger.handlers:
            handler.flush()

        content = (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8")
        assert "hello from storage" in content
        assert "[INFO] anote.storage.database" in content

    def test_no_duplicate_handlers(self, tmp_path, clean_anote_logger):
        configure_logging(tmp_path, console=True)
        configure_logging(tmp_path, console=True)

        file_handlers = [
            h for h in clean_anote_logger.handlers if isinstance(h, RotatingFileHandler)
        ]
        console_handlers = [
            h for h in clean_anote_logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert len(console_handlers) == 1
