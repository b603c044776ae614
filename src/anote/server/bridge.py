"""One-request-per-process JSON bridge to the anote store.

External tools (launchers, scripts) run the bridge once per operation:
one JSON request on stdin, exactly one JSON line on stdout. The bridge
opens the shared database file, runs the operation and exits, so it may
race the desktop app and other bridge runs on the same file.

Request:  ``{"op": "create_note", "payload": {"title": "..."}}``
Response: ``{"ok": true, "data": {...}}`` or
          ``{"ok": false, "error": {"code": "VALIDATION", "message": "..."}}``
"""
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from anote.config import config
from anote.exceptions import CONFLICT, INTERNAL, VALIDATION, AnoteError
from anote.models.schema import ConflictResult
from anote.observability import OUTCOME_CONFLICT, timed_operation
from anote.services.store_service import NoteStore

logger = logging.getLogger(__name__)


class BridgeRequest(BaseModel):
    """Request envelope."""

    model_config = ConfigDict(strict=True, extra="ignore")

    op: str
    payload: Optional[Dict[str, Any]] = None


# Range of a SQLite INTEGER column
SQLITE_INT_MIN = -(2 ** 63)
SQLITE_INT_MAX = 2 ** 63 - 1


class _Payload(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    @field_validator("*")
    @classmethod
    def check_storable_text(cls, v: Any) -> Any:
        # JSON may carry lone surrogates, which SQLite cannot store as UTF-8
        if isinstance(v, str):
            try:
                v.encode("utf-8")
            except UnicodeEncodeError:
                raise ValueError("text is not valid UTF-8") from None
        return v


class EnsureInboxPayload(_Payload):
    pass


class CreateNotePayload(_Payload):
    title: str = ""
    body: str = ""
    folder_id: Optional[str] = None


class UpdateNotePayload(_Payload):
    id: str
    title: str = ""
    body: str = ""
    updated_at: Optional[int] = Field(default=None, ge=SQLITE_INT_MIN, le=SQLITE_INT_MAX)


class SearchNotesPayload(_Payload):
    query: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=SQLITE_INT_MIN, le=SQLITE_INT_MAX)


class GetNotePayload(_Payload):
    id: str


def ok_response(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"ok": True, "data": data}


def error_response(code: str, message: str) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message}}


def _ensure_inbox(store: NoteStore, payload: EnsureInboxPayload) -> Dict[str, Any]:
    return {"folder_id": store.ensure_inbox()}


def _create_note(store: NoteStore, payload: CreateNotePayload) -> Dict[str, Any]:
    created = store.create_note(
        title=payload.title, body=payload.body, folder_id=payload.folder_id
    )
    return created.model_dump()


def _update_note(
    store: NoteStore, payload: UpdateNotePayload
) -> Union[Dict[str, Any], ConflictResult]:
    result = store.update_note(
        payload.id,
        title=payload.title,
        body=payload.body,
        updated_at=payload.updated_at,
    )
    if isinstance(result, ConflictResult):
        return result
    return result.model_dump()


def _search_notes(store: NoteStore, payload: SearchNotesPayload) -> Dict[str, Any]:
    notes = store.search_notes(payload.query or "", payload.limit)
    return {"notes": [note.model_dump() for note in notes]}


def _get_note(store: NoteStore, payload: GetNotePayload) -> Dict[str, Any]:
    data = store.get_note(payload.id).model_dump()
    data["pinned"] = int(data["pinned"])
    return data


Handler = Callable[[NoteStore, Any], Union[Dict[str, Any], ConflictResult]]

OPERATIONS: Dict[str, Tuple[Type[_Payload], Handler]] = {
    "ensure_inbox": (EnsureInboxPayload, _ensure_inbox),
    "create_note": (CreateNotePayload, _create_note),
    "update_note": (UpdateNotePayload, _update_note),
    "search_notes": (SearchNotesPayload, _search_notes),
    "get_note": (GetNotePayload, _get_note),
}


def _describe(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    return f"{location}: {first.get('msg', 'invalid value')}"


class BridgeServer:
    """Runs single bridge requests against the shared database file.

    Args:
        database_path: SQLite file; defaults to the configured path.
        busy_timeout_ms: Lock-wait bound; defaults to the bridge setting.
    """

    def __init__(
        self,
        database_path: Optional[Union[str, Path]] = None,
        busy_timeout_ms: Optional[int] = None,
    ):
        self.database_path = database_path
        self.busy_timeout_ms = busy_timeout_ms or config.bridge_busy_timeout_ms

    def handle(self, raw: Union[str, bytes]) -> Dict[str, Any]:
        """Process one raw request and return the response object.

        Never raises: every failure becomes an error response. Requests
        that fail validation never open the database.
        """
        try:
            request = BridgeRequest.model_validate(json.loads(raw))
        except PydanticValidationError as e:
            return error_response(VALIDATION, f"invalid request: {_describe(e)}")
        except ValueError as e:
            return error_response(VALIDATION, f"invalid request json: {e}")

        entry = OPERATIONS.get(request.op)
        if entry is None:
            return error_response(VALIDATION, f"unknown op: {request.op}")
        payload_model, handler = entry

        try:
            payload = payload_model.model_validate(request.payload or {})
        except PydanticValidationError as e:
            return error_response(VALIDATION, f"invalid payload: {_describe(e)}")

        return self._execute(request.op, handler, payload)

    def _execute(self, op: str, handler: Handler, payload: _Payload) -> Dict[str, Any]:
        store = None
        try:
            with timed_operation(f"bridge_{op}") as timing:
                store = NoteStore(
                    self.database_path,
                    busy_timeout_ms=self.busy_timeout_ms,
                    single_connection=False,
                )
                result = handler(store, payload)
                if isinstance(result, ConflictResult):
                    timing["outcome"] = OUTCOME_CONFLICT
        except AnoteError as e:
            if e.category == INTERNAL:
                logger.error(f"Bridge {op} failed: {e}")
            return error_response(e.category, e.message)
        except Exception as e:
            logger.exception(f"Bridge {op} failed unexpectedly")
            return error_response(INTERNAL, str(e) or e.__class__.__name__)
        finally:
            if store is not None:
                store.close()

        if isinstance(result, ConflictResult):
            return error_response(CONFLICT, result.message)
        return ok_response(result)

    def run(self, raw: Union[str, bytes]) -> str:
        """Handle raw and serialise the response as a single JSON line."""
        response = self.handle(raw)
        try:
            line = json.dumps(response, ensure_ascii=False, separators=(",", ":"))
            line.encode("utf-8")
            return line
        except UnicodeEncodeError:
            # Lone surrogates echoed back from the request stay escaped
            return json.dumps(response, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize bridge response: {e}")
            return json.dumps(error_response(INTERNAL, "failed to serialize response"))
