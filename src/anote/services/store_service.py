"""Service layer for anote store operations."""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from anote.config import config
from anote.models.schema import (ConflictResult, Folder, IdGenerator, Note,
                                 NoteCreated, NoteDetail, NoteMetadata, NoteSummary,
                                 NoteUpdated, Snapshot)
from anote.observability import traced
from anote.storage.database import Database
from anote.storage.folder_repository import FolderRepository
from anote.storage.fts_index import FtsIndex
from anote.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class NoteStore:
    """Folder and note store over one SQLite file.

    The desktop app keeps one instance open for its lifetime; the bridge
    opens one per request with ``single_connection=False``. Both go through
    the same schema manager, so either may be the first to touch a file.

    Args:
        database_path: SQLite file; defaults to the configured path.
        busy_timeout_ms: Lock-wait bound; defaults to the configured value.
        single_connection: Long-lived mode when True.
        id_generator: Id source; a fresh one is created per store.
    """

    def __init__(
        self,
        database_path: Optional[Union[str, Path]] = None,
        busy_timeout_ms: Optional[int] = None,
        single_connection: bool = True,
        id_generator: Optional[IdGenerator] = None,
    ):
        self.db = Database(
            database_path or config.get_database_path(),
            busy_timeout_ms=busy_timeout_ms or config.busy_timeout_ms,
            single_connection=single_connection,
        )
        self.ids = id_generator or IdGenerator()
        self.folders = FolderRepository(self.db, self.ids.generate)
        self.notes = NoteRepository(self.db, self.ids.generate)
        self.fts = FtsIndex(self.db)

    def __enter__(self) -> "NoteStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Folders

    def list_folders(self) -> List[Folder]:
        return self.folders.get_all()

    @traced("create_folder")
    def create_folder(
        self,
        name: str,
        parent_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Folder:
        return self.folders.create(name, parent_id=parent_id, folder_id=folder_id)

    @traced("rename_folder")
    def rename_folder(self, folder_id: str, name: str) -> Folder:
        return self.folders.rename(folder_id, name)

    @traced("reparent_folder")
    def reparent_folder(self, folder_id: str, parent_id: Optional[str] = None) -> Folder:
        return self.folders.reparent(folder_id, parent_id)

    @traced("delete_folder")
    def delete_folder(self, folder_id: str) -> Dict[str, int]:
        return self.folders.delete(folder_id)

    @traced("ensure_inbox")
    def ensure_inbox(self) -> str:
        """Id of the root Inbox folder, created if absent.

        Safe to call concurrently from many processes: exactly one Inbox is
        ever created and every caller gets its id.
        """
        return self.folders.ensure_inbox()

    # Notes

    @traced("create_note")
    def create_note(
        self,
        title: str = "",
        body: str = "",
        folder_id: Optional[str] = None,
    ) -> NoteCreated:
        """Create a note; without folder_id it is filed into the Inbox."""
        return self.notes.create(title=title, body=body, folder_id=folder_id)

    @traced("update_note")
    def update_note(
        self,
        note_id: str,
        title: str = "",
        body: str = "",
        updated_at: Optional[int] = None,
    ) -> Union[NoteUpdated, ConflictResult]:
        """Overwrite a note unless it was changed after updated_at.

        Returns:
            ``NoteUpdated`` or, for a stale write, ``ConflictResult``.
        """
        return self.notes.update(note_id, title=title, body=body, updated_at=updated_at)

    @traced("delete_note")
    def delete_note(self, note_id: str) -> bool:
        return self.notes.delete(note_id)

    @traced("set_pinned")
    def set_pinned(self, note_id: str, pinned: bool) -> None:
        self.notes.set_pinned(note_id, pinned)

    @traced("reorder_notes")
    def reorder_notes(self, pairs: Sequence[Tuple[str, int]]) -> int:
        return self.notes.reorder(pairs)

    def get_note(self, note_id: str) -> NoteDetail:
        return self.notes.get(note_id)

    def list_notes(self, folder_id: Optional[str] = None) -> List[NoteMetadata]:
        """Bodiless note rows for folder listings, pinned first then manual order."""
        return self.notes.list_metadata(folder_id)

    # Bulk

    @traced("import_data")
    def import_data(self, folders: Iterable[Folder], notes: Iterable[Note]) -> Dict[str, int]:
        """Insert-if-absent import of folders and notes, all or nothing."""
        return self.notes.import_data(folders, notes)

    def export_snapshot(self) -> Snapshot:
        return self.notes.export_snapshot()

    def sync_token(self) -> int:
        """Cheap change marker; differs whenever any note or folder changed."""
        return self.notes.sync_token()

    # Search

    @traced("search_notes")
    def search_notes(self, query: Optional[str] = "", limit: Optional[int] = None) -> List[NoteSummary]:
        return self.fts.search(query, limit)

    def rebuild_search_index(self) -> int:
        return self.fts.rebuild()

    def close(self) -> None:
        self.db.close()
