"""Storage layer for the anote store."""

from anote.storage.database import Database, TxMode, policy_for
from anote.storage.folder_repository import FolderRepository
from anote.storage.fts_index import FtsIndex
from anote.storage.note_repository import NoteRepository

__all__ = [
    "Database",
    "TxMode",
    "policy_for",
    "FolderRepository",
    "NoteRepository",
    "FtsIndex",
]
