"""Data models for the anote store."""

import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

# Ids are generated in base36 and must stay alphanumeric; the same check is
# applied to every externally supplied id before it reaches a query.
SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")

INBOX_NAME = "Inbox"
PREVIEW_LENGTH = 200
SNAPSHOT_FORMAT_VERSION = "1.0"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def is_safe_id(value: Any) -> bool:
    """Return True if value is a non-empty alphanumeric id."""
    return isinstance(value, str) and bool(SAFE_ID_PATTERN.match(value))


def validate_safe_id(value: str, field_name: str = "id") -> str:
    """Validate that an id only contains ASCII letters and digits.

    Args:
        value: The id to validate
        field_name: Name of the field for error messages

    Returns:
        The validated value (unchanged)

    Raises:
        ValueError: If the value is empty or contains other characters
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if not is_safe_id(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only ASCII letters and digits are allowed."
        )
    return value


def _to_base36(value: int, width: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)).rjust(width, "0")[-width:]


class IdGenerator:
    """Collision-safe id source owned by one store instance.

    An id is the fixed-width base36 encoding of a nanosecond timestamp
    (13 chars), the process id (5 chars) and a per-generator counter
    (4 chars). Fixed widths keep the concatenation unambiguous, the pid
    separates independent bridge processes and the counter separates ids
    minted in the same nanosecond.
    """

    TIMESTAMP_WIDTH = 13
    PID_WIDTH = 5
    COUNTER_WIDTH = 4

    def __init__(self, pid: Optional[int] = None):
        self._pid = os.getpid() if pid is None else pid
        self._counter = 0
        self._lock = threading.Lock()

    def generate(self) -> str:
        """Return a new globally unique id."""
        with self._lock:
            counter = self._counter
            self._counter = (self._counter + 1) % (36 ** self.COUNTER_WIDTH)
        return (
            _to_base36(time.time_ns(), self.TIMESTAMP_WIDTH)
            + _to_base36(self._pid, self.PID_WIDTH)
            + _to_base36(counter, self.COUNTER_WIDTH)
        )

    __call__ = generate


class Folder(BaseModel):
    """A folder; folders form a forest through parent_id."""

    id: str = Field(..., description="Unique folder id")
    name: str = Field(..., description="Display name")
    created_at: int = Field(..., description="Creation time (epoch ms)")
    updated_at: int = Field(default=0, description="Last change (epoch ms)")
    parent_id: Optional[str] = Field(default=None, description="Parent folder id")

    model_config = {"validate_assignment": True, "extra": "ignore"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_id(v, "Folder ID")

    @field_validator("parent_id")
    @classmethod
    def validate_parent_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return validate_safe_id(v, "Parent ID")

    @field_validator("updated_at", mode="before")
    @classmethod
    def default_updated_at(cls, v: Any) -> Any:
        # Legacy exports carry no folder updated_at
        return 0 if v is None else v


class Note(BaseModel):
    """A note filed in exactly one folder."""

    id: str = Field(..., description="Unique note id")
    folder_id: str = Field(..., description="Containing folder id")
    title: str = Field(default="", description="Title of the note")
    body: str = Field(default="", description="Body of the note")
    created_at: int = Field(..., description="Creation time (epoch ms)")
    updated_at: int = Field(..., description="Last write (epoch ms)")
    pinned: bool = Field(default=False, description="Pinned notes keep their place")
    sort_order: int = Field(default=0, description="Rank among unpinned notes")

    model_config = {"validate_assignment": True, "extra": "ignore"}

    @field_validator("id", "folder_id")
    @classmethod
    def validate_ids(cls, v: str, info: ValidationInfo) -> str:
        return validate_safe_id(v, info.field_name)


class NoteDetail(Note):
    """A full note row plus the name of its folder."""

    folder_name: str = Field(default="", description="Name of the containing folder")


class NoteSummary(BaseModel):
    """Search result row with a truncated body preview."""

    id: str
    folder_id: str
    title: str
    preview: str
    updated_at: int
    folder_name: str = ""


class NoteMetadata(BaseModel):
    """Note row for folder listings: a body preview instead of the body."""

    id: str
    folder_id: str
    title: str
    preview: str
    created_at: int
    updated_at: int
    pinned: bool = False
    sort_order: int = 0


class NoteCreated(BaseModel):
    """Result of creating a note."""

    id: str
    folder_id: str
    created_at: int
    updated_at: int


class NoteUpdated(BaseModel):
    """Result of an accepted note update."""

    id: str
    updated_at: int


@dataclass
class ConflictResult:
    """Response indicating an optimistic-concurrency rejection.

    Attributes:
        status: Always "conflict" for this result type.
        note_id: ID of the note that had a conflict.
        attempted_updated_at: The timestamp the writer supplied.
        stored_updated_at: The newer timestamp currently stored.
        message: Human-readable description of the conflict.
    """

    status: Literal["conflict"]
    note_id: str
    attempted_updated_at: int
    stored_updated_at: int
    message: str = "stale note update rejected"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "note_id": self.note_id,
            "attempted_updated_at": self.attempted_updated_at,
            "stored_updated_at": self.stored_updated_at,
            "message": self.message,
        }


class Snapshot(BaseModel):
    """Full logical dump of the store.

    Serialised with ``by_alias=True`` so files carry ``exportedAt``.
    """

    version: str = Field(default=SNAPSHOT_FORMAT_VERSION)
    exported_at: int = Field(..., alias="exportedAt")
    folders: List[Folder] = Field(default_factory=list)
    notes: List[Note] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
