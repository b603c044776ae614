"""Connection and transaction management for the anote store.

All reads and writes go through ``Database.session``, which starts every
transaction in the mode the operation needs. Every write takes the write
lock up front with ``BEGIN IMMEDIATE``: two processes can never both decide
to insert, and the busy timeout bounds the wait. A deferred transaction that
upgrades from a read snapshot to a write under WAL contention fails at once
with SQLITE_BUSY instead of waiting, so only reads run deferred.
"""
import logging
import threading
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from anote.exceptions import AnoteError, ErrorCode, SchemaInitError, StorageError
from anote.models.db_models import (create_db_engine, get_session_factory, init_db,
                                     rebuild_fts_index)

logger = logging.getLogger(__name__)


class TxMode(str, Enum):
    """SQLite transaction start mode."""
    DEFERRED = "DEFERRED"
    IMMEDIATE = "IMMEDIATE"


OPERATION_POLICIES: Dict[str, TxMode] = {
    "ensure_inbox": TxMode.IMMEDIATE,
    "create_note": TxMode.IMMEDIATE,
    "create_folder": TxMode.IMMEDIATE,
    "rename_folder": TxMode.IMMEDIATE,
    "reparent_folder": TxMode.IMMEDIATE,
    "delete_folder": TxMode.IMMEDIATE,
    "import_data": TxMode.IMMEDIATE,
    "reorder_notes": TxMode.IMMEDIATE,
    "update_note": TxMode.IMMEDIATE,
    "delete_note": TxMode.IMMEDIATE,
    "set_pinned": TxMode.IMMEDIATE,
    "fts_integrity_check": TxMode.IMMEDIATE,
}


def policy_for(operation: str) -> TxMode:
    """Transaction mode for an operation; anything unlisted is a read."""
    return OPERATION_POLICIES.get(operation, TxMode.DEFERRED)


def is_lock_error(error: BaseException) -> bool:
    """True if the engine gave up waiting for the database lock."""
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


class Database:
    """Owns the engine for one database file.

    In long-lived mode a single connection is shared and guarded by a
    re-entrant lock held only for the length of each transaction. The
    bridge uses per-invocation mode: open, run one operation, ``close()``.

    Args:
        database_path: SQLite file path.
        busy_timeout_ms: Lock-wait bound in milliseconds.
        single_connection: Long-lived mode when True.

    Raises:
        SchemaInitError: If the schema cannot be brought up to date.
    """

    def __init__(
        self,
        database_path: Union[str, Path],
        busy_timeout_ms: int = 5000,
        single_connection: bool = True,
    ):
        self.database_path = Path(database_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.single_connection = single_connection
        self._lock = threading.RLock()
        self.engine = create_db_engine(
            self.database_path,
            busy_timeout_ms=busy_timeout_ms,
            single_connection=single_connection,
        )
        try:
            self.schema_version = init_db(self.engine)
        except SchemaInitError:
            self.engine.dispose()
            raise
        self.session_factory = get_session_factory(self.engine)
        logger.debug(
            f"Opened {self.database_path} (schema v{self.schema_version}, "
            f"busy_timeout={busy_timeout_ms}ms)"
        )

    @contextmanager
    def session(
        self,
        mode: TxMode = TxMode.DEFERRED,
        operation: Optional[str] = None,
    ) -> Iterator[Session]:
        """Run one transaction.

        Commits when the block exits normally and rolls back otherwise.
        Domain errors pass through unchanged; engine errors surface as
        ``StorageError`` (``LOCK_TIMEOUT`` when the lock wait expired).

        Example:
            with db.session(TxMode.IMMEDIATE, "create_note") as session:
                session.execute(...)
        """
        with self._lock:
            session = self.session_factory()
            try:
                session.connection(execution_options={"sqlite_begin": TxMode(mode).value})
                yield session
                session.commit()
            except AnoteError:
                session.rollback()
                raise
            except OperationalError as e:
                session.rollback()
                if is_lock_error(e):
                    logger.warning(f"Lock wait expired during {operation or 'transaction'}: {e}")
                    raise StorageError(
                        "database is locked",
                        operation=operation,
                        path=str(self.database_path),
                        code=ErrorCode.LOCK_TIMEOUT,
                        original_error=e,
                    ) from e
                logger.error(f"Database error during {operation or 'transaction'}: {e}")
                raise StorageError(
                    str(e.orig) if e.orig is not None else str(e),
                    operation=operation,
                    path=str(self.database_path),
                    original_error=e,
                ) from e
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Database error during {operation or 'transaction'}: {e}")
                raise StorageError(
                    str(getattr(e, "orig", None) or e),
                    operation=operation,
                    path=str(self.database_path),
                    original_error=e,
                ) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def rebuild_fts_index(self) -> int:
        """Repopulate the search index; returns the number of notes indexed."""
        with self._lock:
            count = rebuild_fts_index(self.engine)
        logger.info(f"Rebuilt search index with {count} notes")
        return count

    def close(self) -> None:
        """Dispose of the engine and its connection."""
        self.engine.dispose()
        logger.debug(f"Closed {self.database_path}")
