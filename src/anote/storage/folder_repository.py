"""Repository for folder storage and retrieval."""
import logging
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, text
from sqlalchemy.orm import Session

from anote.exceptions import (ErrorCode, FolderHierarchyError,
                              FolderNotFoundError, ValidationError)
from anote.models.db_models import DBFolder, DBNote
from anote.models.schema import INBOX_NAME, Folder, is_safe_id
from anote.storage.database import Database, policy_for
from anote.utils import now_ms

logger = logging.getLogger(__name__)


def require_safe_id(value: Optional[str], field: str = "id") -> str:
    """Reject ids that are not plain ASCII alphanumerics."""
    if not is_safe_id(value):
        raise ValidationError(f"invalid {field}", field=field, value=value, code=ErrorCode.INVALID_ID)
    return value


def resolve_inbox(session: Session, id_factory: Callable[[], str]) -> str:
    """Return the root Inbox id, creating it inside the caller's transaction.

    The caller must hold the write lock (``BEGIN IMMEDIATE``). The insert
    is ``OR IGNORE`` against the unique index on root folder names, and the
    id is always re-read so the persisted winner is returned.
    """
    lookup = text("SELECT id FROM folders WHERE name = :name AND parent_id IS NULL")
    existing = session.execute(lookup, {"name": INBOX_NAME}).scalar()
    if existing:
        return existing

    ts = now_ms()
    session.execute(
        text(
            "INSERT OR IGNORE INTO folders (id, name, created_at, updated_at, parent_id) "
            "VALUES (:id, :name, :ts, :ts, NULL)"
        ),
        {"id": id_factory(), "name": INBOX_NAME, "ts": ts},
    )
    inbox_id = session.execute(lookup, {"name": INBOX_NAME}).scalar()
    logger.info(f"Created Inbox folder {inbox_id}")
    return inbox_id


class FolderRepository:
    """Folder forest operations.

    Args:
        db: Shared database handle.
        id_factory: Callable returning a fresh id.
    """

    def __init__(self, db: Database, id_factory: Callable[[], str]):
        self.db = db
        self._new_id = id_factory

    def get_all(self) -> List[Folder]:
        """All folders, oldest first."""
        with self.db.session(policy_for("list_folders"), "list_folders") as session:
            rows = session.execute(
                select(DBFolder).order_by(DBFolder.created_at, DBFolder.id)
            ).scalars().all()
            return [self._db_to_model(row) for row in rows]

    def get(self, folder_id: str) -> Optional[Folder]:
        """Get a folder by id, or None."""
        require_safe_id(folder_id, "folder_id")
        with self.db.session(policy_for("get_folder"), "get_folder") as session:
            row = session.get(DBFolder, folder_id)
            return self._db_to_model(row) if row else None

    def ensure_inbox(self) -> str:
        """Return the id of the root Inbox, creating it if absent."""
        with self.db.session(policy_for("ensure_inbox"), "ensure_inbox") as session:
            return resolve_inbox(session, self._new_id)

    def create(
        self,
        name: str,
        parent_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Folder:
        """Create a folder.

        Raises:
            ValidationError: Empty name, bad or duplicate id, a root name
                already in use, or a parent that is missing or would close
                a cycle.
        """
        name = self._clean_name(name)
        if folder_id is not None:
            require_safe_id(folder_id, "folder_id")
        if parent_id is not None:
            require_safe_id(parent_id, "parent_id")

        with self.db.session(policy_for("create_folder"), "create_folder") as session:
            new_id = folder_id or self._new_id()
            if session.get(DBFolder, new_id) is not None:
                raise ValidationError(
                    f"Folder '{new_id}' already exists",
                    field="folder_id",
                    value=new_id,
                    code=ErrorCode.FOLDER_ALREADY_EXISTS,
                )
            if parent_id is None:
                self._check_root_name(session, name)
            else:
                self._check_parent(session, new_id, parent_id)

            ts = now_ms()
            row = DBFolder(id=new_id, name=name, created_at=ts, updated_at=ts, parent_id=parent_id)
            session.add(row)
            session.flush()
            logger.info(f"Created folder {new_id} ('{name}')")
            return self._db_to_model(row)

    def rename(self, folder_id: str, name: str) -> Folder:
        """Rename a folder, touching updated_at."""
        require_safe_id(folder_id, "folder_id")
        name = self._clean_name(name)
        with self.db.session(policy_for("rename_folder"), "rename_folder") as session:
            row = self._require(session, folder_id)
            if row.parent_id is None and row.name != name:
                self._check_root_name(session, name)
            row.name = name
            row.updated_at = max(now_ms(), row.updated_at or 0)
            session.flush()
            return self._db_to_model(row)

    def reparent(self, folder_id: str, parent_id: Optional[str] = None) -> Folder:
        """Move a folder under parent_id, or to the root when None."""
        require_safe_id(folder_id, "folder_id")
        if parent_id is not None:
            require_safe_id(parent_id, "parent_id")
        with self.db.session(policy_for("reparent_folder"), "reparent_folder") as session:
            row = self._require(session, folder_id)
            if parent_id is None:
                if row.parent_id is not None:
                    self._check_root_name(session, row.name)
            else:
                self._check_parent(session, folder_id, parent_id)
            row.parent_id = parent_id
            row.updated_at = max(now_ms(), row.updated_at or 0)
            session.flush()
            return self._db_to_model(row)

    def delete(self, folder_id: str) -> Dict[str, int]:
        """Delete a folder, every descendant folder and all their notes.

        Folders go deepest-first: removing a parent first would promote its
        children to roots through ``ON DELETE SET NULL`` and could collide
        with the unique root-name index.

        Returns:
            ``{"folders": n, "notes": m}`` deletion counts.
        """
        require_safe_id(folder_id, "folder_id")
        with self.db.session(policy_for("delete_folder"), "delete_folder") as session:
            self._require(session, folder_id)
            subtree = self._collect_subtree(session, folder_id)
            ids = [fid for fid, _ in subtree]

            note_result = session.execute(
                delete(DBNote)
                .where(DBNote.folder_id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            for fid, _ in sorted(subtree, key=lambda item: item[1], reverse=True):
                session.execute(
                    delete(DBFolder)
                    .where(DBFolder.id == fid)
                    .execution_options(synchronize_session=False)
                )

            counts = {"folders": len(ids), "notes": note_result.rowcount or 0}
            logger.info(f"Deleted folder {folder_id}: {counts}")
            return counts

    # ------------------------------------------------------------------
    # Helpers; all run inside the caller's transaction
    # ------------------------------------------------------------------

    @staticmethod
    def _clean_name(name: str) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("folder name cannot be empty", field="name", value=name)
        return name.strip()

    @staticmethod
    def _require(session: Session, folder_id: str) -> DBFolder:
        row = session.get(DBFolder, folder_id)
        if row is None:
            raise FolderNotFoundError(folder_id)
        return row

    @staticmethod
    def _check_root_name(session: Session, name: str) -> None:
        taken = session.execute(
            select(func.count())
            .select_from(DBFolder)
            .where(DBFolder.name == name, DBFolder.parent_id.is_(None))
        ).scalar()
        if taken:
            raise ValidationError(
                f"A root folder named '{name}' already exists",
                field="name",
                value=name,
                code=ErrorCode.FOLDER_NAME_TAKEN,
            )

    @staticmethod
    def _check_parent(session: Session, folder_id: str, parent_id: str) -> None:
        """Reject a parent that is the folder itself or one of its descendants.

        Walks up from parent_id; the visited set stops on a pre-existing
        cycle instead of looping.
        """
        if parent_id == folder_id:
            raise FolderHierarchyError(
                f"Folder '{folder_id}' cannot be its own parent",
                folder_id=folder_id,
                parent_id=parent_id,
                code=ErrorCode.FOLDER_SELF_PARENT,
            )
        if session.get(DBFolder, parent_id) is None:
            raise FolderNotFoundError(parent_id, "parent folder not found")

        visited = set()
        current: Optional[str] = parent_id
        while current is not None and current not in visited:
            if current == folder_id:
                raise FolderHierarchyError(
                    f"Setting parent to '{parent_id}' would create a circular reference",
                    folder_id=folder_id,
                    parent_id=parent_id,
                )
            visited.add(current)
            current = session.execute(
                select(DBFolder.parent_id).where(DBFolder.id == current)
            ).scalar()

    @staticmethod
    def _collect_subtree(session: Session, root_id: str) -> List[Tuple[str, int]]:
        """Iterative depth-first walk returning (folder_id, depth) pairs."""
        seen = {root_id}
        result: List[Tuple[str, int]] = []
        stack: List[Tuple[str, int]] = [(root_id, 0)]
        while stack:
            fid, depth = stack.pop()
            result.append((fid, depth))
            children = session.execute(
                select(DBFolder.id).where(DBFolder.parent_id == fid)
            ).scalars().all()
            for child in children:
                if child not in seen:
                    seen.add(child)
                    stack.append((child, depth + 1))
        return result

    @staticmethod
    def _db_to_model(row: DBFolder) -> Folder:
        return Folder(
            id=row.id,
            name=row.name,
            created_at=row.created_at,
            updated_at=row.updated_at if row.updated_at is not None else row.created_at,
            parent_id=row.parent_id,
        )
