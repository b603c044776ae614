"""FTS5 full-text search over notes.

Encapsulates FTS5 querying, graceful degradation, and recovery logic.
User text is passed to MATCH as typed; when SQLite rejects it the search
degrades to a LIKE scan instead of failing the caller.
"""
import logging
import sqlite3
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError

from anote.exceptions import AnoteError, ErrorCode, SearchError
from anote.models.schema import PREVIEW_LENGTH, NoteSummary
from anote.storage.database import Database, policy_for
from anote.utils import clamp, escape_like_pattern

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 80
MAX_LIMIT = 200

_SUMMARY_COLUMNS = f"""
    n.id, n.folder_id, n.title, substr(n.body, 1, {PREVIEW_LENGTH}) AS preview,
    n.updated_at, COALESCE(f.name, '') AS folder_name
"""


class FtsIndex:
    """FTS5 full-text search index with graceful degradation.

    Args:
        db: Shared database handle.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.available: bool = True

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(self, query: Optional[str] = "", limit: Optional[int] = None) -> List[NoteSummary]:
        """Search notes by title and body.

        Args:
            query: FTS5 expression; blank returns the most recent notes.
            limit: Maximum results, default 80, clamped to [1, 200].

        Returns:
            Matching notes, best match first (recency for blank and
            fallback searches).
        """
        query = (query or "").strip()
        limit = clamp(DEFAULT_LIMIT if limit is None else int(limit), 1, MAX_LIMIT)

        if not query:
            return self._recent(limit)

        if not self.available:
            logger.debug("FTS5 unavailable, using fallback search")
            return self._fallback_text_search(query, limit)

        return self._match(query, limit, recover=True)

    def _match(self, query: str, limit: int, recover: bool) -> List[NoteSummary]:
        sql = text(f"""
            SELECT {_SUMMARY_COLUMNS}
            FROM notes_fts nf
            JOIN notes n ON n.rowid = nf.rowid
            LEFT JOIN folders f ON f.id = n.folder_id
            WHERE notes_fts MATCH :query
            ORDER BY rank, n.updated_at DESC
            LIMIT :limit
        """)

        corrupted = False
        with self.db.session(policy_for("search_notes"), "search_notes") as session:
            try:
                rows = session.execute(sql, {"query": query, "limit": limit}).mappings().all()
                return [NoteSummary(**dict(row)) for row in rows]
            except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
                logger.warning(
                    f"FTS5 query failed for '{query}': {e}. Using fallback search."
                )
            except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                error_msg = str(e).lower()
                if "malformed" in error_msg or "corrupt" in error_msg:
                    logger.error(
                        f"FTS5 corruption detected: {e}. Attempting auto-rebuild..."
                    )
                    corrupted = True
                else:
                    logger.error(f"FTS5 database error: {e}. Using fallback search.")

        if corrupted:
            if recover and self._attempt_recovery():
                logger.info("FTS5 rebuilt successfully, retrying search")
                return self._match(query, limit, recover=False)
            logger.error("FTS5 recovery failed. Disabling FTS5 for this session.")
            self.available = False

        return self._fallback_text_search(query, limit)

    def rebuild(self) -> int:
        """Rebuild the FTS5 index from the notes table."""
        return self.db.rebuild_fts_index()

    def reset_availability(self) -> bool:
        """Re-enable FTS5 after manual repair."""
        try:
            with self.db.session(policy_for("fts_integrity_check"), "fts_integrity_check") as session:
                session.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                )
            self.available = True
            logger.info("FTS5 availability reset, FTS5 is now enabled")
            return True
        except (AnoteError, SQLAlchemyDatabaseError) as e:
            logger.error(f"FTS5 still unavailable: {e}")
            self.available = False
            return False

    # ------------------------------------------------------------------
    # Blank query, fallback & recovery
    # ------------------------------------------------------------------

    def _recent(self, limit: int) -> List[NoteSummary]:
        with self.db.session(policy_for("search_notes"), "search_notes") as session:
            rows = session.execute(
                text(f"""
                    SELECT {_SUMMARY_COLUMNS}
                    FROM notes n
                    LEFT JOIN folders f ON f.id = n.folder_id
                    ORDER BY n.updated_at DESC
                    LIMIT :limit
                """),
                {"limit": limit},
            ).mappings().all()
            return [NoteSummary(**dict(row)) for row in rows]

    def _fallback_text_search(self, query: str, limit: int) -> List[NoteSummary]:
        """LIKE-based fallback when FTS5 is unavailable or rejects the query."""
        search_term = f"%{escape_like_pattern(query)}%"
        try:
            with self.db.session(policy_for("search_notes"), "search_notes") as session:
                rows = session.execute(
                    text(f"""
                        SELECT {_SUMMARY_COLUMNS}
                        FROM notes n
                        LEFT JOIN folders f ON f.id = n.folder_id
                        WHERE n.title LIKE :term ESCAPE '\\' OR n.body LIKE :term ESCAPE '\\'
                        ORDER BY n.updated_at DESC
                        LIMIT :limit
                    """),
                    {"term": search_term, "limit": limit},
                ).mappings().all()
                results = [NoteSummary(**dict(row)) for row in rows]
        except (AnoteError, SQLAlchemyDatabaseError) as e:
            raise SearchError(
                f"Fallback text search failed: {e}",
                query=query,
                code=ErrorCode.SEARCH_FAILED,
            ) from e

        logger.debug(
            f"Fallback search returned {len(results)} results for query '{query}'"
        )
        return results

    def _attempt_recovery(self) -> bool:
        """Attempt to recover FTS5 by rebuilding the index."""
        try:
            count = self.rebuild()
            logger.info(f"FTS5 index rebuilt with {count} notes")
            return True
        except SQLAlchemyDatabaseError as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
