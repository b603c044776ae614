"""Repository for note storage and retrieval."""
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import IntegrityError

from anote.exceptions import ErrorCode, FolderNotFoundError, NoteNotFoundError, ValidationError
from anote.models.db_models import DBFolder, DBNote
from anote.models.schema import (PREVIEW_LENGTH, ConflictResult, Folder, Note,
                                 NoteCreated, NoteDetail, NoteMetadata,
                                 NoteUpdated, Snapshot)
from anote.storage.database import Database, policy_for
from anote.storage.folder_repository import require_safe_id, resolve_inbox
from anote.utils import now_ms

logger = logging.getLogger(__name__)


class NoteRepository:
    """Note reads and writes plus bulk import/export.

    Args:
        db: Shared database handle.
        id_factory: Callable returning a fresh id.
    """

    def __init__(self, db: Database, id_factory: Callable[[], str]):
        self.db = db
        self._new_id = id_factory

    def create(
        self,
        title: str = "",
        body: str = "",
        folder_id: Optional[str] = None,
    ) -> NoteCreated:
        """Create a note at the top of its folder's manual order.

        With no folder the note is filed into the Inbox, created on demand
        in the same transaction. Every unpinned note already in the folder
        moves down one place.
        """
        if folder_id is not None:
            require_safe_id(folder_id, "folder_id")

        with self.db.session(policy_for("create_note"), "create_note") as session:
            if folder_id is None:
                folder_id = resolve_inbox(session, self._new_id)
            elif session.get(DBFolder, folder_id) is None:
                raise FolderNotFoundError(folder_id)

            ts = now_ms()
            session.execute(
                text(
                    "UPDATE notes SET sort_order = sort_order + 1 "
                    "WHERE folder_id = :folder_id AND pinned = 0"
                ),
                {"folder_id": folder_id},
            )
            note_id = self._new_id()
            session.add(DBNote(
                id=note_id,
                folder_id=folder_id,
                title=title,
                body=body,
                created_at=ts,
                updated_at=ts,
                pinned=0,
                sort_order=0,
            ))
            session.flush()

        logger.info(f"Created note {note_id} in folder {folder_id}")
        return NoteCreated(id=note_id, folder_id=folder_id, created_at=ts, updated_at=ts)

    def update(
        self,
        note_id: str,
        title: str = "",
        body: str = "",
        updated_at: Optional[int] = None,
    ) -> Union[NoteUpdated, ConflictResult]:
        """Overwrite title and body unless the stored row is newer.

        The check and the write are one conditional statement, so there is
        no window between them. An equal timestamp is accepted.

        Returns:
            ``NoteUpdated`` on success, ``ConflictResult`` when the stored
            ``updated_at`` is newer than the one supplied.

        Raises:
            NoteNotFoundError: If no note has this id.
        """
        require_safe_id(note_id, "id")
        ts = now_ms() if updated_at is None else updated_at

        with self.db.session(policy_for("update_note"), "update_note") as session:
            result = session.execute(
                update(DBNote)
                .where(DBNote.id == note_id, DBNote.updated_at <= ts)
                .values(title=title, body=body, updated_at=ts)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return NoteUpdated(id=note_id, updated_at=ts)

            stored = session.execute(
                select(DBNote.updated_at).where(DBNote.id == note_id)
            ).scalar()

        if stored is None:
            raise NoteNotFoundError(note_id)
        logger.info(f"Rejected stale update of note {note_id} ({ts} < {stored})")
        return ConflictResult(
            status="conflict",
            note_id=note_id,
            attempted_updated_at=ts,
            stored_updated_at=stored,
        )

    def delete(self, note_id: str) -> bool:
        """Delete a note; returns False if it did not exist."""
        require_safe_id(note_id, "id")
        with self.db.session(policy_for("delete_note"), "delete_note") as session:
            result = session.execute(
                delete(DBNote)
                .where(DBNote.id == note_id)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    def set_pinned(self, note_id: str, pinned: bool) -> None:
        """Pin or unpin a note. Ordering and updated_at are left alone."""
        require_safe_id(note_id, "id")
        with self.db.session(policy_for("set_pinned"), "set_pinned") as session:
            result = session.execute(
                update(DBNote)
                .where(DBNote.id == note_id)
                .values(pinned=1 if pinned else 0)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                raise NoteNotFoundError(note_id)

    def reorder(self, pairs: Sequence[Tuple[str, int]]) -> int:
        """Assign sort_order values in one transaction.

        Every id is checked before anything is written; unknown ids are
        ignored.

        Returns:
            Number of notes updated.
        """
        pairs = list(pairs)
        if not pairs:
            return 0
        for note_id, order in pairs:
            require_safe_id(note_id, "id")
            if isinstance(order, bool) or not isinstance(order, int):
                raise ValidationError("sort_order must be an integer", field="sort_order", value=order)

        updated = 0
        with self.db.session(policy_for("reorder_notes"), "reorder_notes") as session:
            for note_id, order in pairs:
                result = session.execute(
                    update(DBNote)
                    .where(DBNote.id == note_id)
                    .values(sort_order=order)
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount or 0
        return updated

    def get(self, note_id: str) -> NoteDetail:
        """Full note row plus its folder name."""
        require_safe_id(note_id, "id")
        with self.db.session(policy_for("get_note"), "get_note") as session:
            row = session.execute(
                text("""
                    SELECT n.id, n.folder_id, n.title, n.body, n.created_at, n.updated_at,
                           n.pinned, n.sort_order, COALESCE(f.name, '') AS folder_name
                    FROM notes n
                    LEFT JOIN folders f ON f.id = n.folder_id
                    WHERE n.id = :id
                """),
                {"id": note_id},
            ).mappings().first()

        if row is None:
            raise NoteNotFoundError(note_id)
        return NoteDetail(**dict(row))

    def list_metadata(self, folder_id: Optional[str] = None) -> List[NoteMetadata]:
        """Every note without its body, in display order.

        Notes are grouped by folder, pinned first, then by manual order,
        newest first among equal ranks. With folder_id only that folder's
        notes are listed; an unknown folder lists nothing.
        """
        where = ""
        params: Dict[str, str] = {}
        if folder_id is not None:
            require_safe_id(folder_id, "folder_id")
            where = "WHERE folder_id = :folder_id"
            params["folder_id"] = folder_id

        with self.db.session(policy_for("list_notes"), "list_notes") as session:
            rows = session.execute(
                text(f"""
                    SELECT id, folder_id, title, substr(body, 1, {PREVIEW_LENGTH}) AS preview,
                           created_at, updated_at, pinned, sort_order
                    FROM notes
                    {where}
                    ORDER BY folder_id, pinned DESC, sort_order, updated_at DESC, id
                """),
                params,
            ).mappings().all()
        return [NoteMetadata(**dict(row)) for row in rows]

    def import_data(self, folders: Iterable[Folder], notes: Iterable[Note]) -> Dict[str, int]:
        """Insert folders and notes whose ids are not present yet.

        Runs in one transaction. Folders are inserted parents-first. An
        imported root folder whose name matches an existing root is merged
        into it: its children and notes are filed under the existing
        folder instead. Any integrity failure rolls back the whole batch.

        Returns:
            Counts of inserted folders and notes and merged root folders.
        """
        folders = list(folders)
        notes = list(notes)
        counts = {"folders": 0, "notes": 0, "merged": 0}

        with self.db.session(policy_for("import_data"), "import_data") as session:
            remap: Dict[str, str] = {}
            try:
                for folder in _parents_first(folders):
                    if session.get(DBFolder, folder.id) is not None:
                        continue
                    parent_id = remap.get(folder.parent_id, folder.parent_id)
                    if parent_id is None:
                        existing = session.execute(
                            select(DBFolder.id).where(
                                DBFolder.name == folder.name, DBFolder.parent_id.is_(None)
                            )
                        ).scalar()
                        if existing is not None:
                            remap[folder.id] = existing
                            counts["merged"] += 1
                            continue
                    session.execute(
                        text(
                            "INSERT INTO folders (id, name, created_at, updated_at, parent_id) "
                            "VALUES (:id, :name, :created_at, :updated_at, :parent_id)"
                        ),
                        {
                            "id": folder.id,
                            "name": folder.name,
                            "created_at": folder.created_at,
                            "updated_at": folder.updated_at or folder.created_at,
                            "parent_id": parent_id,
                        },
                    )
                    counts["folders"] += 1

                for note in notes:
                    if session.get(DBNote, note.id) is not None:
                        continue
                    session.execute(
                        text(
                            "INSERT INTO notes (id, folder_id, title, body, created_at, "
                            "updated_at, pinned, sort_order) VALUES (:id, :folder_id, :title, "
                            ":body, :created_at, :updated_at, :pinned, :sort_order)"
                        ),
                        {
                            "id": note.id,
                            "folder_id": remap.get(note.folder_id, note.folder_id),
                            "title": note.title,
                            "body": note.body,
                            "created_at": note.created_at,
                            "updated_at": note.updated_at,
                            "pinned": 1 if note.pinned else 0,
                            "sort_order": note.sort_order,
                        },
                    )
                    counts["notes"] += 1
            except IntegrityError as e:
                logger.warning(f"Import rejected: {e.orig}")
                raise ValidationError(
                    f"import rejected: {e.orig}", code=ErrorCode.IMPORT_FAILED
                ) from e

        logger.info(f"Imported {counts}")
        return counts

    def export_snapshot(self) -> Snapshot:
        """Every folder and note, full bodies included."""
        with self.db.session(policy_for("export_snapshot"), "export_snapshot") as session:
            folder_rows = session.execute(
                select(DBFolder).order_by(DBFolder.created_at, DBFolder.id)
            ).scalars().all()
            note_rows = session.execute(
                select(DBNote).order_by(DBNote.folder_id, DBNote.sort_order, DBNote.id)
            ).scalars().all()
            return Snapshot(
                exported_at=now_ms(),
                folders=[
                    Folder(
                        id=f.id,
                        name=f.name,
                        created_at=f.created_at,
                        updated_at=f.updated_at if f.updated_at is not None else f.created_at,
                        parent_id=f.parent_id,
                    )
                    for f in folder_rows
                ],
                notes=[
                    Note(
                        id=n.id,
                        folder_id=n.folder_id,
                        title=n.title,
                        body=n.body,
                        created_at=n.created_at,
                        updated_at=n.updated_at,
                        pinned=bool(n.pinned),
                        sort_order=n.sort_order,
                    )
                    for n in note_rows
                ],
            )

    def sync_token(self) -> int:
        """Largest modification time across notes and folders, 0 if empty."""
        with self.db.session(policy_for("sync_token"), "sync_token") as session:
            return int(session.execute(text("""
                SELECT MAX(
                    COALESCE((SELECT MAX(updated_at) FROM notes), 0),
                    COALESCE((SELECT MAX(COALESCE(updated_at, created_at)) FROM folders), 0)
                )
            """)).scalar() or 0)


def _parents_first(folders: List[Folder]) -> List[Folder]:
    """Order folders so each parent in the batch precedes its children."""
    by_id = {f.id: f for f in folders}
    depth: Dict[str, int] = {}
    for folder in folders:
        chain = []
        seen = set()
        current = folder
        while current is not None and current.id not in depth and current.id not in seen:
            seen.add(current.id)
            chain.append(current)
            current = by_id.get(current.parent_id) if current.parent_id else None
        base = depth.get(current.id, -1) if current is not None else -1
        for item in reversed(chain):
            base += 1
            depth[item.id] = base
    return sorted(folders, key=lambda f: depth[f.id])
