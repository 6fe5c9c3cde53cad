"""
SQLite metadata store for yearbooks, their pages and ingestion batches.

This module provides the relational side of the subsystem: plain CRUD on
documents and pages, the batch and ordered-page queries the orchestration
layers rely on, and status-conditional updates so draft commits and discards
can be re-run safely.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional

from .models import Document, IngestionBatch, Page, PageKind, PageStatus


# Default database path
DEFAULT_DB_PATH = Path("data/yearbooks.db")

_DOCUMENT_COLUMNS = {
    "title",
    "is_free",
    "price",
    "front_cover_url",
    "back_cover_url",
    "draft_front_cover_url",
    "draft_back_cover_url",
    "draft_front_cover_object_id",
    "draft_back_cover_object_id",
    "detected_aspect_ratio",
    "has_unsaved_drafts",
    "last_draft_saved",
    "last_auto_saved",
}

_PAGE_COLUMNS = {
    "page_number",
    "title",
    "image_url",
    "object_id",
    "page_type",
    "status",
    "batch_id",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _to_column_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _serialize_datetime(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (PageKind, PageStatus)):
        return value.value
    return value


class YearbookDatabase:
    """
    SQLite database for yearbook metadata.

    Thread-safe: SQLite handles concurrent access with WAL mode. Every
    method opens its own short transaction.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS yearbooks (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    is_free INTEGER NOT NULL DEFAULT 0,
                    price TEXT,
                    front_cover_url TEXT,
                    back_cover_url TEXT,
                    draft_front_cover_url TEXT,
                    draft_back_cover_url TEXT,
                    draft_front_cover_object_id TEXT,
                    draft_back_cover_object_id TEXT,
                    detected_aspect_ratio TEXT,
                    has_unsaved_drafts INTEGER NOT NULL DEFAULT 0,
                    last_draft_saved TEXT,
                    last_auto_saved TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (owner_id, year)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS yearbook_pages (
                    id TEXT PRIMARY KEY,
                    yearbook_id TEXT NOT NULL REFERENCES yearbooks(id) ON DELETE CASCADE,
                    page_number INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    object_id TEXT,
                    page_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    batch_id TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS ingestion_batches (
                    id TEXT PRIMARY KEY,
                    yearbook_id TEXT NOT NULL,
                    source_object_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pages_yearbook
                ON yearbook_pages(yearbook_id, status, page_number)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pages_batch
                ON yearbook_pages(batch_id)
            """)

    # Documents

    def create_document(self, document: Document) -> Document:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO yearbooks (
                    id, owner_id, year, title, is_free, price,
                    has_unsaved_drafts, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                document.id,
                document.owner_id,
                document.year,
                document.title,
                int(document.is_free),
                document.price,
                int(document.has_unsaved_drafts),
                _serialize_datetime(document.created_at),
            ))
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        """
        Retrieve a yearbook by ID.

        Returns:
            Document or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM yearbooks WHERE id = ?", (document_id,)
            ).fetchone()
            return self._row_to_document(row) if row else None

    def get_document_by_owner_and_year(self, owner_id: str, year: int) -> Optional[Document]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM yearbooks WHERE owner_id = ? AND year = ?", (owner_id, year)
            ).fetchone()
            return self._row_to_document(row) if row else None

    def update_document(self, document_id: str, **fields: Any) -> Optional[Document]:
        """
        Update selected yearbook columns.

        Args:
            document_id: The yearbook ID
            **fields: Column names from the yearbooks table and their new values

        Returns:
            The updated Document, or None if it does not exist
        """
        unknown = set(fields) - _DOCUMENT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown yearbook columns: {sorted(unknown)}")

        if fields:
            updates = [f"{name} = ?" for name in fields]
            values = [_to_column_value(value) for value in fields.values()]
            values.append(document_id)
            with self._get_connection() as conn:
                conn.execute(
                    f"UPDATE yearbooks SET {', '.join(updates)} WHERE id = ?",
                    values
                )
        return self.get_document(document_id)

    # Pages

    def create_page(self, page: Page) -> Page:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO yearbook_pages (
                    id, yearbook_id, page_number, title, image_url, object_id,
                    page_type, status, batch_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                page.id,
                page.document_id,
                page.sequence,
                page.title,
                page.url,
                page.object_id,
                page.page_kind.value,
                page.status.value,
                page.batch_id,
                _serialize_datetime(page.created_at),
            ))
        return page

    def get_page(self, page_id: str) -> Optional[Page]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM yearbook_pages WHERE id = ?", (page_id,)
            ).fetchone()
            return self._row_to_page(row) if row else None

    def list_pages(
        self,
        document_id: str,
        statuses: Optional[Iterable[PageStatus]] = None,
        page_kind: Optional[PageKind] = None,
    ) -> List[Page]:
        """
        List a yearbook's pages ordered by sequence number.

        Args:
            document_id: The yearbook ID
            statuses: Only return pages in one of these statuses
            page_kind: Only return pages of this kind
        """
        query = "SELECT * FROM yearbook_pages WHERE yearbook_id = ?"
        values: List[Any] = [document_id]

        if statuses is not None:
            statuses = list(statuses)
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            values.extend(status.value for status in statuses)

        if page_kind is not None:
            query += " AND page_type = ?"
            values.append(page_kind.value)

        query += " ORDER BY page_number ASC, created_at ASC"

        with self._get_connection() as conn:
            rows = conn.execute(query, values).fetchall()
            return [self._row_to_page(row) for row in rows]

    def list_published_pages(self, document_id: str) -> List[Page]:
        return self.list_pages(document_id, statuses=[PageStatus.PUBLISHED])

    def list_pages_by_batch(self, batch_id: str) -> List[Page]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM yearbook_pages WHERE batch_id = ? ORDER BY page_number ASC, created_at ASC",
                (batch_id,)
            ).fetchall()
            return [self._row_to_page(row) for row in rows]

    def count_pages_by_batch(self, batch_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM yearbook_pages WHERE batch_id = ?", (batch_id,)
            ).fetchone()
            return int(row["total"])

    def count_pages_by_object(self, object_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM yearbook_pages WHERE object_id = ?", (object_id,)
            ).fetchone()
            return int(row["total"])

    def next_sequence(self, document_id: str) -> int:
        """Highest content sequence number in the yearbook plus one."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(page_number) AS highest FROM yearbook_pages WHERE yearbook_id = ? AND page_type = ?",
                (document_id, PageKind.CONTENT.value)
            ).fetchone()
            return (row["highest"] or 0) + 1

    def sequence_taken(self, document_id: str, sequence: int, exclude_page_id: Optional[str] = None) -> bool:
        """
        True if a content page of the yearbook already uses ``sequence``.

        Pages marked for deletion keep their number until the removal is
        committed.
        """
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS total FROM yearbook_pages
                WHERE yearbook_id = ? AND page_type = ? AND page_number = ?
                  AND id != ?
            """, (
                document_id,
                PageKind.CONTENT.value,
                sequence,
                exclude_page_id or "",
            )).fetchone()
            return int(row["total"]) > 0

    def update_page(self, page_id: str, **fields: Any) -> Optional[Page]:
        unknown = set(fields) - _PAGE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown page columns: {sorted(unknown)}")

        if fields:
            updates = [f"{name} = ?" for name in fields]
            values = [_to_column_value(value) for value in fields.values()]
            values.append(page_id)
            with self._get_connection() as conn:
                conn.execute(
                    f"UPDATE yearbook_pages SET {', '.join(updates)} WHERE id = ?",
                    values
                )
        return self.get_page(page_id)

    def set_page_status(self, page_id: str, from_status: PageStatus, to_status: PageStatus) -> bool:
        """Move one page between statuses; False if it was not in ``from_status``."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE yearbook_pages SET status = ? WHERE id = ? AND status = ?",
                (to_status.value, page_id, from_status.value)
            )
            return cursor.rowcount > 0

    def update_pages_status(self, document_id: str, from_status: PageStatus, to_status: PageStatus) -> int:
        """
        Move every page of a yearbook from one status to another.

        Returns:
            Number of pages updated; zero when re-run after a completed update
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE yearbook_pages SET status = ? WHERE yearbook_id = ? AND status = ?",
                (to_status.value, document_id, from_status.value)
            )
            return cursor.rowcount

    def delete_page(self, page_id: str, expected_status: Optional[PageStatus] = None) -> bool:
        """
        Delete a page record.

        Args:
            page_id: The page ID
            expected_status: Only delete if the page is still in this status

        Returns:
            True if deleted, False if not found (or not in the expected status)
        """
        query = "DELETE FROM yearbook_pages WHERE id = ?"
        values: List[Any] = [page_id]
        if expected_status is not None:
            query += " AND status = ?"
            values.append(expected_status.value)

        with self._get_connection() as conn:
            cursor = conn.execute(query, values)
            return cursor.rowcount > 0

    # Ingestion batches

    def create_batch(self, batch: IngestionBatch) -> IngestionBatch:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO ingestion_batches (id, yearbook_id, source_object_id, created_at) VALUES (?, ?, ?, ?)",
                (batch.id, batch.document_id, batch.source_object_id, _serialize_datetime(batch.created_at))
            )
        return batch

    def get_batch(self, batch_id: str) -> Optional[IngestionBatch]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM ingestion_batches WHERE id = ?", (batch_id,)
            ).fetchone()
            if not row:
                return None
            return IngestionBatch(
                id=row["id"],
                document_id=row["yearbook_id"],
                source_object_id=row["source_object_id"],
                created_at=_deserialize_datetime(row["created_at"]),
            )

    def delete_batch(self, batch_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM ingestion_batches WHERE id = ?", (batch_id,))
            return cursor.rowcount > 0

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        """Convert a database row to a Document."""
        return Document(
            id=row["id"],
            owner_id=row["owner_id"],
            year=row["year"],
            title=row["title"],
            is_free=bool(row["is_free"]),
            price=row["price"],
            front_cover_url=row["front_cover_url"],
            back_cover_url=row["back_cover_url"],
            draft_front_cover_url=row["draft_front_cover_url"],
            draft_back_cover_url=row["draft_back_cover_url"],
            draft_front_cover_object_id=row["draft_front_cover_object_id"],
            draft_back_cover_object_id=row["draft_back_cover_object_id"],
            detected_aspect_ratio=row["detected_aspect_ratio"],
            has_unsaved_drafts=bool(row["has_unsaved_drafts"]),
            last_draft_saved=_deserialize_datetime(row["last_draft_saved"]),
            last_auto_saved=_deserialize_datetime(row["last_auto_saved"]),
            created_at=_deserialize_datetime(row["created_at"]),
        )

    def _row_to_page(self, row: sqlite3.Row) -> Page:
        """Convert a database row to a Page."""
        return Page(
            id=row["id"],
            document_id=row["yearbook_id"],
            sequence=row["page_number"],
            title=row["title"],
            url=row["image_url"],
            object_id=row["object_id"],
            page_kind=PageKind(row["page_type"]),
            status=PageStatus(row["status"]),
            batch_id=row["batch_id"],
            created_at=_deserialize_datetime(row["created_at"]),
        )
