"""Tests for the one-shot JSON bridge."""
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from anote.main import parse_args
from anote.server import bridge as bridge_module
from anote.server.bridge import BridgeServer
from anote.services.store_service import NoteStore

SRC_PATH = str(Path(__file__).parent.parent / "src")


@pytest.fixture
def server(db_path):
    return BridgeServer(database_path=db_path, busy_timeout_ms=2000)


def call(server, op, payload=None):
    request = {"op": op}
    if payload is not None:
        request["payload"] = payload
    return server.handle(json.dumps(request))


class TestEnvelope:
    """Request parsing and validation."""

    def test_invalid_json(self, server):
        response = server.handle("{not json")
        assert response["ok"] is False
        assert response["error"]["code"] == "VALIDATION"

    def test_empty_input(self, server):
        assert server.handle("")["error"]["code"] == "VALIDATION"

    def test_non_object_request(self, server):
        assert server.handle("[1, 2]")["error"]["code"] == "VALIDATION"

    def test_missing_op(self, server):
        assert server.handle('{"payload": {}}')["error"]["code"] == "VALIDATION"

    def test_unknown_op_does_not_open_database(self, db_path, monkeypatch):
        opened = []
        monkeypatch.setattr(bridge_module, "NoteStore", lambda *a, **k: opened.append(a))
        server = BridgeServer(database_path=db_path)
        response = call(server, "drop_everything")
        assert response == {
            "ok": False,
            "error": {"code": "VALIDATION", "message": "unknown op: drop_everything"},
        }
        assert opened == []

    def test_bad_payload_type_does_not_open_database(self, db_path, monkeypatch):
        opened = []
        monkeypatch.setattr(bridge_module, "NoteStore", lambda *a, **k: opened.append(a))
        server = BridgeServer(database_path=db_path)
        response = call(server, "create_note", {"title": 42})
        assert response["error"]["code"] == "VALIDATION"
        assert opened == []

    @pytest.mark.parametrize("op,payload", [
        ("update_note", {"id": "abc", "updated_at": 10 ** 20}),
        ("update_note", {"id": "abc", "updated_at": -(2 ** 63) - 1}),
        ("create_note", {"title": "\ud800"}),
        ("create_note", {"body": "ok \udfff"}),
        ("update_note", {"id": "abc", "body": "\ud83d", "updated_at": 1}),
        ("search_notes", {"query": "\ud800"}),
    ])
    def test_unstorable_values_rejected_before_database(self, db_path, monkeypatch, op, payload):
        opened = []
        monkeypatch.setattr(bridge_module, "NoteStore", lambda *a, **k: opened.append(a))
        server = BridgeServer(database_path=db_path)
        response = call(server, op, payload)
        assert response["ok"] is False
        assert response["error"]["code"] == "VALIDATION"
        assert opened == []

    def test_largest_sqlite_integer_accepted(self, server):
        created = call(server, "create_note", {"title": "A"})["data"]
        response = call(server, "update_note", {"id": created["id"], "updated_at": 2 ** 63 - 1})
        assert response == {"ok": True, "data": {"id": created["id"], "updated_at": 2 ** 63 - 1}}

    def test_surrogate_in_unknown_op_still_serialises(self, server):
        line = server.run('{"op": "\\ud800"}')
        assert json.loads(line)["error"]["code"] == "VALIDATION"
        line.encode("utf-8")

    def test_payload_must_be_object(self, server):
        response = server.handle('{"op": "create_note", "payload": "hello"}')
        assert response["error"]["code"] == "VALIDATION"

    def test_unknown_payload_keys_ignored(self, server):
        response = call(server, "create_note", {"title": "x", "colour": "red"})
        assert response["ok"] is True

    def test_run_returns_single_line(self, server):
        line = server.run(json.dumps({"op": "ensure_inbox"}))
        assert "\n" not in line
        assert json.loads(line)["ok"] is True


class TestOperations:
    """Each bridge operation against a real database."""

    def test_ensure_inbox(self, server):
        first = call(server, "ensure_inbox")
        second = call(server, "ensure_inbox", {"ignored": True})
        assert first["ok"] is True
        assert first["data"]["folder_id"] == second["data"]["folder_id"]

    def test_create_note_defaults_to_inbox(self, server):
        inbox = call(server, "ensure_inbox")["data"]["folder_id"]
        response = call(server, "create_note", {"title": "Hi", "body": "there"})
        assert response["ok"] is True
        data = response["data"]
        assert set(data) == {"id", "folder_id", "created_at", "updated_at"}
        assert data["folder_id"] == inbox

    def test_create_note_in_missing_folder(self, server):
        response = call(server, "create_note", {"folder_id": "nosuch"})
        assert response["error"]["code"] == "VALIDATION"

    def test_create_note_invalid_folder_id(self, server):
        response = call(server, "create_note", {"folder_id": "a b"})
        assert response["error"] == {"code": "VALIDATION", "message": "invalid folder_id"}

    def test_update_note_and_conflict(self, server):
        created = call(server, "create_note", {"title": "A"})["data"]
        ts = created["updated_at"]

        ok = call(server, "update_note", {"id": created["id"], "title": "B", "updated_at": ts + 10})
        assert ok == {"ok": True, "data": {"id": created["id"], "updated_at": ts + 10}}

        stale = call(server, "update_note", {"id": created["id"], "title": "C", "updated_at": ts + 5})
        assert stale == {
            "ok": False,
            "error": {"code": "CONFLICT", "message": "stale note update rejected"},
        }

        note = call(server, "get_note", {"id": created["id"]})["data"]
        assert note["title"] == "B"

    def test_update_missing_note(self, server):
        response = call(server, "update_note", {"id": "missing", "updated_at": 1})
        assert response["error"] == {"code": "VALIDATION", "message": "note not found"}

    def test_update_rejects_non_integer_timestamp(self, server):
        response = call(server, "update_note", {"id": "abc", "updated_at": "soon"})
        assert response["error"]["code"] == "VALIDATION"

    def test_search_notes(self, server):
        call(server, "create_note", {"title": "Groceries", "body": "milk and eggs"})
        call(server, "create_note", {"title": "Chores", "body": "laundry"})

        hits = call(server, "search_notes", {"query": "milk"})["data"]["notes"]
        assert [h["title"] for h in hits] == ["Groceries"]
        assert set(hits[0]) == {"id", "folder_id", "title", "preview", "updated_at", "folder_name"}
        assert hits[0]["folder_name"] == "Inbox"

        recent = call(server, "search_notes", {"limit": 1})["data"]["notes"]
        assert len(recent) == 1

        fallback = call(server, "search_notes", {"query": '"milk'})
        assert fallback["ok"] is True

    def test_get_note(self, server):
        created = call(server, "create_note", {"title": "T", "body": "B"})["data"]
        note = call(server, "get_note", {"id": created["id"]})["data"]
        assert note == {
            "id": created["id"],
            "folder_id": created["folder_id"],
            "title": "T",
            "body": "B",
            "created_at": created["created_at"],
            "updated_at": created["updated_at"],
            "pinned": 0,
            "sort_order": 0,
            "folder_name": "Inbox",
        }

    def test_get_missing_note(self, server):
        response = call(server, "get_note", {"id": "missing"})
        assert response["error"] == {"code": "VALIDATION", "message": "note not found"}

    def test_bridge_and_store_share_the_file(self, server, store):
        folder = store.create_folder("Shared")
        created = call(server, "create_note", {"title": "from bridge", "folder_id": folder.id})
        assert store.get_note(created["data"]["id"]).folder_name == "Shared"


class TestInternalErrors:
    """Engine failures become INTERNAL responses."""

    def test_unopenable_database(self, tmp_path):
        server = BridgeServer(database_path=tmp_path / "missing-dir" / "x.db")
        response = call(server, "ensure_inbox")
        assert response["ok"] is False
        assert response["error"]["code"] == "INTERNAL"

    def test_unexpected_exception(self, server, monkeypatch):
        def explode(self):
            raise RuntimeError("kaboom")

        monkeypatch.setattr(NoteStore, "ensure_inbox", explode)
        response = call(server, "ensure_inbox")
        assert response == {"ok": False, "error": {"code": "INTERNAL", "message": "kaboom"}}


class TestBridgeProcess:
    """The console entry point as a separate process."""

    def _run(self, tmp_path, request):
        env = dict(os.environ)
        env["PYTHONPATH"] = SRC_PATH + os.pathsep + env.get("PYTHONPATH", "")
        env["ANOTE_DATA_DIR"] = str(tmp_path)
        env["ANOTE_LOG_DIR"] = str(tmp_path / "logs")
        return subprocess.run(
            [sys.executable, "-m", "anote.main", "--database-path", str(tmp_path / "bridge.db")],
            input=request,
            capture_output=True,
            text=True,
            env=env,
            timeout=60,
        )

    def test_one_request_one_line(self, tmp_path):
        result = self._run(tmp_path, json.dumps({"op": "create_note", "payload": {"title": "cli"}}))
        assert result.returncode == 0
        lines = result.stdout.splitlines()
        assert len(lines) == 1
        response = json.loads(lines[0])
        assert response["ok"] is True
        assert (tmp_path / "logs" / "anote.log").exists()

    def test_errors_still_exit_zero(self, tmp_path):
        result = self._run(tmp_path, "garbage")
        assert result.returncode == 0
        assert json.loads(result.stdout)["error"]["code"] == "VALIDATION"

    def test_log_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("ANOTE_LOG_LEVEL", "DEBUG")
        assert parse_args([]).log_level == "DEBUG"
        assert parse_args(["--log-level", "ERROR"]).log_level == "ERROR"

    def test_log_level_defaults_to_info(self, monkeypatch):
        monkeypatch.delenv("ANOTE_LOG_LEVEL", raising=False)
        assert parse_args([]).log_level == "INFO"
