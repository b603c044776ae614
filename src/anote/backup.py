"""Snapshot exports for the anote store.

A snapshot is a JSON document holding every folder and every note with its
full body, written into the ``backups`` directory next to the database.
Snapshots can be listed, loaded and restored into a store through the
insert-if-absent import.
"""
import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from anote.config import config
from anote.exceptions import ErrorCode, StorageError, ValidationError
from anote.models.schema import Snapshot

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "anote-backup-"
_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


class SnapshotManager:
    """Writes, rotates, lists and restores JSON snapshots.

    Args:
        backup_dir: Directory for snapshots; defaults to the configured one.
        max_snapshots: Number of snapshots kept after each write.
    """

    def __init__(
        self,
        backup_dir: Optional[Union[str, Path]] = None,
        max_snapshots: Optional[int] = None,
    ):
        self.backup_dir = Path(backup_dir) if backup_dir else config.get_backup_dir()
        self.max_snapshots = max_snapshots or config.max_snapshots
        self._lock = Lock()

    def write_snapshot(self, store, label: Optional[str] = None) -> Path:
        """Export the store to a new snapshot file.

        The file is written to a temporary name and renamed into place, so
        a reader never sees a partial snapshot.

        Args:
            store: A ``NoteStore``.
            label: Optional label appended to the file name.

        Returns:
            Path to the snapshot file.

        Raises:
            StorageError: If the file cannot be written.
        """
        snapshot = store.export_snapshot()
        payload = snapshot.model_dump(mode="json", by_alias=True)

        with self._lock:
            try:
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                path = self._next_path(label)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=".tmp-", suffix=".json", dir=self.backup_dir
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        json.dump(payload, f, ensure_ascii=False, indent=2)
                    os.replace(tmp_name, path)
                except OSError:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
            except OSError as e:
                logger.error(f"Snapshot write failed: {e}")
                raise StorageError(
                    f"Snapshot write failed: {e}",
                    operation="write_snapshot",
                    path=str(self.backup_dir),
                    code=ErrorCode.SNAPSHOT_WRITE_FAILED,
                    original_error=e,
                ) from e

            logger.info(
                f"Snapshot written: {path} ({len(snapshot.folders)} folders, "
                f"{len(snapshot.notes)} notes)"
            )
            self._rotate_snapshots()
            return path

    def list_snapshots(self) -> List[Dict[str, Any]]:
        """Snapshot files with size and modification time, newest first."""
        snapshots = []
        for path in self._snapshot_files():
            stat = path.stat()
            snapshots.append({
                "path": str(path),
                "name": path.name,
                "size_bytes": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
            })
        return snapshots

    def load_snapshot(self, path: Union[str, Path]) -> Snapshot:
        """Read and validate a snapshot file.

        Raises:
            ValidationError: If the file is missing, not JSON, or does not
                describe a snapshot.
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Snapshot.model_validate(data)
        except FileNotFoundError as e:
            raise ValidationError(
                "snapshot not found", field="path", value=path.name,
                code=ErrorCode.INVALID_SNAPSHOT,
            ) from e
        except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
            raise ValidationError(
                f"invalid snapshot: {e}", field="path", value=path.name,
                code=ErrorCode.INVALID_SNAPSHOT,
            ) from e

    def restore_snapshot(self, store, path: Union[str, Path]) -> Dict[str, int]:
        """Import a snapshot into store; rows already present are kept."""
        snapshot = self.load_snapshot(path)
        counts = store.import_data(snapshot.folders, snapshot.notes)
        logger.info(f"Snapshot restored from {path}: {counts}")
        return counts

    def _next_path(self, label: Optional[str]) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        label_part = ""
        if label:
            cleaned = _LABEL_UNSAFE.sub("-", label).strip("-")
            if cleaned:
                label_part = f"-{cleaned}"
        path = self.backup_dir / f"{SNAPSHOT_PREFIX}{timestamp}{label_part}.json"
        counter = 1
        while path.exists():
            path = self.backup_dir / f"{SNAPSHOT_PREFIX}{timestamp}{label_part}-{counter}.json"
            counter += 1
        return path

    def _snapshot_files(self) -> List[Path]:
        if not self.backup_dir.exists():
            return []
        return sorted(
            self.backup_dir.glob(f"{SNAPSHOT_PREFIX}*.json"),
            key=lambda p: (p.stat().st_mtime, p.name),
            reverse=True,
        )

    def _rotate_snapshots(self) -> int:
        """Delete snapshots beyond max_snapshots; returns how many went."""
        removed = 0
        for old in self._snapshot_files()[self.max_snapshots:]:
            try:
                old.unlink()
                removed += 1
                logger.debug(f"Rotated out old snapshot: {old.name}")
            except OSError as e:
                logger.warning(f"Failed to delete old snapshot {old}: {e}")
        return removed
