"""Tests for full-text search and its fallbacks."""
import logging

import pytest
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError

from anote.exceptions import SearchError, StorageError
from anote.storage.fts_index import DEFAULT_LIMIT, MAX_LIMIT


@pytest.fixture
def populated(store):
    folder = store.create_folder("Garden")
    ids = {}
    for i, (title, body) in enumerate([
        ("Tomatoes", "plant after the last frost"),
        ("Roses", "prune in early spring"),
        ("Compost", "turn the pile weekly; 100% organic"),
        ("under_score", "literal underscore title"),
    ]):
        created = store.create_note(title, body, folder_id=folder.id)
        store.update_note(created.id, title, body, updated_at=created.updated_at + 1000 * (i + 1))
        ids[title] = created.id
    return store, ids


class TestFtsSearch:
    """Queries that FTS5 accepts."""

    def test_match_title_and_body(self, populated):
        store, ids = populated
        assert [n.id for n in store.search_notes("tomatoes")] == [ids["Tomatoes"]]
        assert [n.id for n in store.search_notes("prune")] == [ids["Roses"]]

    def test_fts_syntax_is_passed_through(self, populated):
        store, ids = populated
        results = {n.id for n in store.search_notes("frost OR spring")}
        assert results == {ids["Tomatoes"], ids["Roses"]}
        assert [n.id for n in store.search_notes("tom*")] == [ids["Tomatoes"]]

    def test_result_shape(self, populated):
        store, ids = populated
        [hit] = store.search_notes("compost")
        assert hit.folder_name == "Garden"
        assert hit.preview == "turn the pile weekly; 100% organic"

    def test_preview_truncated(self, store):
        store.create_note("Long", "x" * 500)
        [hit] = store.search_notes("Long")
        assert len(hit.preview) == 200


class TestBlankSearch:
    """Blank queries list recent notes."""

    def test_blank_query_orders_by_recency(self, populated):
        store, ids = populated
        results = store.search_notes("   ")
        assert [n.title for n in results] == ["under_score", "Compost", "Roses", "Tomatoes"]

    def test_limit_clamped(self, store):
        for i in range(5):
            store.create_note(f"n{i}")
        assert len(store.search_notes("", limit=0)) == 1
        assert len(store.search_notes("", limit=-10)) == 1
        assert len(store.search_notes("", limit=3)) == 3
        assert len(store.search_notes("", limit=10_000)) == 5

    def test_default_limit(self, store):
        for i in range(DEFAULT_LIMIT + 5):
            store.create_note(f"n{i}")
        assert len(store.search_notes()) == DEFAULT_LIMIT
        assert len(store.search_notes(limit=MAX_LIMIT + 50)) == DEFAULT_LIMIT + 5


class TestFallbackSearch:
    """Malformed expressions degrade to pattern matching."""

    def test_malformed_query_falls_back(self, populated, caplog):
        store, ids = populated
        with caplog.at_level(logging.WARNING, logger="anote.storage.fts_index"):
            results = store.search_notes('"unbalanced')
        assert results == []
        assert "Using fallback search" in caplog.text

    def test_fallback_finds_substring(self, populated):
        store, ids = populated
        results = store.search_notes("pile weekly;")
        assert [n.id for n in results] == [ids["Compost"]]

    def test_fallback_escapes_wildcards(self, populated):
        store, ids = populated
        # Unescaped, either pattern would match every note
        assert [n.id for n in store.search_notes("%")] == [ids["Compost"]]
        assert store.search_notes("_%") == []

    def test_unavailable_index_uses_fallback(self, populated):
        store, ids = populated
        store.fts.available = False
        assert [n.id for n in store.search_notes("frost")] == [ids["Tomatoes"]]
        assert store.fts.reset_availability() is True
        assert store.fts.available is True

    def test_fallback_failure_raises_search_error(self, populated, monkeypatch):
        store, ids = populated
        store.fts.available = False

        def broken_session(*args, **kwargs):
            raise StorageError("disk I/O error")

        monkeypatch.setattr(store.db, "session", broken_session)
        with pytest.raises(SearchError):
            store.search_notes("frost")


class CorruptSession:
    """Session stand-in whose queries fail like a damaged index."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, *args, **kwargs):
        raise SQLAlchemyDatabaseError(
            "SELECT", {}, Exception("database disk image is malformed")
        )


def corrupt_first_session(store, monkeypatch):
    real_session = store.db.session
    state = {"first": True}

    def session(mode=None, operation=None):
        if state["first"]:
            state["first"] = False
            return CorruptSession()
        return real_session(mode, operation)

    monkeypatch.setattr(store.db, "session", session)


class TestCorruptionRecovery:
    """Corruption errors trigger a rebuild."""

    def test_corruption_triggers_rebuild_and_retry(self, populated, monkeypatch):
        store, ids = populated
        rebuilds = []
        real_rebuild = store.fts.rebuild

        def counting_rebuild():
            rebuilds.append(1)
            return real_rebuild()

        corrupt_first_session(store, monkeypatch)
        monkeypatch.setattr(store.fts, "rebuild", counting_rebuild)

        assert [n.id for n in store.search_notes("frost")] == [ids["Tomatoes"]]
        assert len(rebuilds) == 1
        assert store.fts.available is True

    def test_failed_recovery_disables_fts(self, populated, monkeypatch):
        store, ids = populated

        def failing_rebuild():
            raise SQLAlchemyDatabaseError(
                "rebuild", {}, Exception("database disk image is malformed")
            )

        corrupt_first_session(store, monkeypatch)
        monkeypatch.setattr(store.fts, "rebuild", failing_rebuild)

        results = store.search_notes("frost")
        assert [n.id for n in results] == [ids["Tomatoes"]]
        assert store.fts.available is False
