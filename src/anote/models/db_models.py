"""SQLAlchemy database models and schema management for the anote store.

Every connection (the long-lived application connection and each bridge
run) goes through ``create_db_engine`` and ``init_db`` so the file is
always at ``CURRENT_SCHEMA_VERSION`` before any operation touches it.
"""
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from sqlalchemy import (Column, ForeignKey, Index, Integer, String, Table, Text,
                        create_engine, event, inspect, text)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from anote.exceptions import SchemaInitError

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 4

# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", String, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class DBFolder(Base):
    """Database model for a folder."""
    __tablename__ = "folders"
    id = Column(String, primary_key=True)
    name = Column(Text, nullable=False)
    created_at = Column(Integer, nullable=False)
    parent_id = Column(String, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(Integer, nullable=True)

    notes = relationship("DBNote", back_populates="folder", passive_deletes=True)

    # Root folder names are unique; this also backs the ensure_inbox race
    __table_args__ = (
        Index(
            "idx_folders_name_root",
            "name",
            unique=True,
            sqlite_where=text("parent_id IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Folder(id='{self.id}', name='{self.name}')>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String, primary_key=True)
    folder_id = Column(
        String, ForeignKey("folders.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(Text, nullable=False, default="", server_default="")
    body = Column(Text, nullable=False, default="", server_default="")
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    pinned = Column(Integer, nullable=False, default=0, server_default="0")
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")

    folder = relationship("DBFolder", back_populates="notes")
    tags = relationship("DBTag", secondary=note_tags, back_populates="notes")

    __table_args__ = (Index("idx_notes_folder", "folder_id"),)

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(String, primary_key=True)
    name = Column(Text, unique=True, nullable=False)
    color = Column(String, default="#888888", server_default="#888888")

    notes = relationship("DBNote", secondary=note_tags, back_populates="tags")

    def __repr__(self) -> str:
        return f"<Tag(id={self.id}, name='{self.name}')>"


def create_db_engine(
    database_path: Path,
    busy_timeout_ms: int = 5000,
    single_connection: bool = True,
) -> Engine:
    """Create an engine with the store's connection settings.

    Applied to every new DBAPI connection:
    - WAL journal so readers work from a snapshot while one writer commits
    - NORMAL synchronous mode (good balance of safety vs speed)
    - bounded page cache and enforced foreign keys
    - a bounded wait on a locked database instead of failing immediately

    The driver's implicit BEGIN is disabled; the ``begin`` hook emits
    ``BEGIN <mode>`` from the ``sqlite_begin`` execution option so callers
    can take the write lock up front with ``BEGIN IMMEDIATE``.

    Args:
        database_path: SQLite file path.
        busy_timeout_ms: Lock-wait bound in milliseconds.
        single_connection: True for the long-lived application (one shared
            connection), False for per-invocation use (no pooling).
    """
    timeout_s = busy_timeout_ms / 1000.0
    engine = create_engine(
        f"sqlite:///{database_path}",
        poolclass=StaticPool if single_connection else NullPool,
        connect_args={"timeout": timeout_s, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=-2000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

def _read_user_version(conn: Connection) -> int:
    return int(conn.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def _column_names(conn: Connection, table: str) -> List[str]:
    return [col["name"] for col in inspect(conn).get_columns(table)]


def _init_base_schema(conn: Connection) -> None:
    """Create base tables, the folder index and the FTS5 shadow of notes.

    The FTS5 table uses external content (``content='notes'``); triggers
    keep it in step with every write to ``notes`` in the same transaction.
    FTS5 rows cannot be patched in place, so an update deletes the old
    entry and inserts the new one.
    """
    fts_existed = conn.execute(text(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'notes_fts'"
    )).scalar() is not None

    Base.metadata.create_all(conn)
    conn.execute(text(
        "CREATE INDEX IF NOT EXISTS idx_notes_folder ON notes(folder_id)"
    ))
    conn.execute(text("""
        CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
            title, body, content='notes', content_rowid='rowid'
        )
    """))
    conn.execute(text("""
        CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
            INSERT INTO notes_fts(rowid, title, body)
            VALUES (new.rowid, new.title, new.body);
        END
    """))
    conn.execute(text("""
        CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, body)
            VALUES ('delete', old.rowid, old.title, old.body);
        END
    """))
    conn.execute(text("""
        CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, body)
            VALUES ('delete', old.rowid, old.title, old.body);
            INSERT INTO notes_fts(rowid, title, body)
            VALUES (new.rowid, new.title, new.body);
        END
    """))
    if not fts_existed:
        # Index rows that predate the index
        conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))


def _migrate_note_ordering(conn: Connection) -> None:
    """Migration 1: add pinned/sort_order to notes.

    A newly added sort_order is backfilled per folder by descending
    updated_at so the existing visual order survives.
    """
    columns = _column_names(conn, "notes")
    if "pinned" not in columns:
        conn.execute(text(
            "ALTER TABLE notes ADD COLUMN pinned INTEGER NOT NULL DEFAULT 0"
        ))
    if "sort_order" not in columns:
        conn.execute(text(
            "ALTER TABLE notes ADD COLUMN sort_order INTEGER NOT NULL DEFAULT 0"
        ))
        conn.execute(text("""
            WITH ranked AS (
                SELECT id, ROW_NUMBER() OVER (
                    PARTITION BY folder_id ORDER BY updated_at DESC
                ) - 1 AS rn
                FROM notes
            )
            UPDATE notes SET sort_order = (
                SELECT rn FROM ranked WHERE ranked.id = notes.id
            )
        """))


def _migrate_folder_parent(conn: Connection) -> None:
    """Migration 2: add parent_id to folders."""
    if "parent_id" not in _column_names(conn, "folders"):
        conn.execute(text(
            "ALTER TABLE folders ADD COLUMN parent_id TEXT "
            "REFERENCES folders(id) ON DELETE SET NULL"
        ))


def _migrate_folder_updated_at(conn: Connection) -> None:
    """Migration 3: add folders.updated_at and unique root folder names."""
    if "updated_at" not in _column_names(conn, "folders"):
        conn.execute(text("ALTER TABLE folders ADD COLUMN updated_at INTEGER"))
    conn.execute(text(
        "UPDATE folders SET updated_at = created_at WHERE updated_at IS NULL"
    ))
    conn.execute(text(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_folders_name_root "
        "ON folders(name) WHERE parent_id IS NULL"
    ))


def _migrate_tags(conn: Connection) -> None:
    """Migration 4: tag tables."""
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS tags (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            color TEXT DEFAULT '#888888'
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS note_tags (
            note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
            tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
            PRIMARY KEY (note_id, tag_id)
        )
    """))


MIGRATIONS: List[Tuple[int, Callable[[Connection], None]]] = [
    (1, _migrate_note_ordering),
    (2, _migrate_folder_parent),
    (3, _migrate_folder_updated_at),
    (4, _migrate_tags),
]


def _apply_step(engine: Engine, version: int, step: Callable[[Connection], None]) -> bool:
    """Apply one migration step in its own immediate transaction.

    The counter is re-read after the write lock is held, so a concurrent
    opener that already applied the step turns this into a no-op. The
    schema change and the counter bump commit together.
    """
    with engine.connect() as conn:
        conn = conn.execution_options(sqlite_begin="IMMEDIATE")
        with conn.begin():
            if _read_user_version(conn) >= version:
                return False
            step(conn)
            conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")
    logger.info(f"Applied schema migration {version}")
    return True


def init_db(engine: Engine, target_version: Optional[int] = None) -> int:
    """Bring the database behind engine up to the current schema.

    Safe to run on every open and from many processes at once: base DDL is
    idempotent, each migration step runs only while the counter is below
    its number, and each step is guarded by existence checks.

    Args:
        engine: Engine from ``create_db_engine``.
        target_version: Stop after this step (used to simulate an
            interrupted upgrade). Defaults to ``CURRENT_SCHEMA_VERSION``.

    Returns:
        The schema version reached.

    Raises:
        SchemaInitError: If any step fails. The caller must not use the
            database.
    """
    target = CURRENT_SCHEMA_VERSION if target_version is None else target_version
    path = engine.url.database
    try:
        with engine.connect() as conn:
            conn = conn.execution_options(sqlite_begin="IMMEDIATE")
            with conn.begin():
                _init_base_schema(conn)
    except Exception as e:
        logger.error(f"Failed to create base schema: {e}")
        raise SchemaInitError(
            f"Failed to create base schema: {e}", path=path, original_error=e
        ) from e

    for version, step in MIGRATIONS:
        if version > target:
            break
        try:
            _apply_step(engine, version, step)
        except Exception as e:
            reached = get_schema_version(engine)
            logger.error(f"Schema migration {version} failed at version {reached}: {e}")
            raise SchemaInitError(
                f"Schema migration {version} failed: {e}",
                version=reached,
                step=version,
                path=path,
                original_error=e,
            ) from e

    return get_schema_version(engine)


def get_schema_version(engine: Engine) -> int:
    """Read the persisted migration counter."""
    with engine.connect() as conn:
        return _read_user_version(conn)


def rebuild_fts_index(engine: Engine) -> int:
    """Rebuild the FTS5 index from the notes table.

    Useful after corruption or when the index gets out of sync.

    Returns:
        Number of notes indexed.
    """
    with engine.connect() as conn:
        conn = conn.execution_options(sqlite_begin="IMMEDIATE")
        with conn.begin():
            conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
            count = conn.execute(text("SELECT COUNT(*) FROM notes")).scalar()
    return int(count or 0)
