"""Data access layer for books, pages and the OCR queue."""

import logging
import os
import sqlite3
import threading
import time
from typing import List, Optional

from book_scanner.core import (
    Book,
    Page,
    PageUpdate,
    ProcessingStatus,
    Sentence,
    join_sentences,
    sentences_from_json,
    sentences_to_json,
)

logger = logging.getLogger(__name__)

_PAGE_COLUMNS = """
    id, book_id, page_number, image_path, text, sentences_json,
    last_sentence_complete, processing_status, retry_count, error_message,
    detected_page_label, chapter_title, resolved_chapter, confidence
"""


class BookRepository:
    """Manages persistence of books and pages.

    This repository follows the failing-fast philosophy: lookups of a single
    entity by id raise instead of returning None, and database errors are
    re-raised as RuntimeError.

    Each mutation runs in its own transaction and the connection is guarded by
    a lock, so the queue worker thread and callers enqueueing work never see a
    half-written row.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        """Initialize repository with database connection.

        Args:
            connection: SQLite connection with schema created.

        Raises:
            RuntimeError: If connection is None.
        """
        if connection is None:
            raise RuntimeError("Database connection required")
        self.connection = connection
        self.connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def create_book(self, title: str, cover_image_path: Optional[str] = None) -> int:
        """Insert a new book and return its id.

        Raises:
            RuntimeError: If the title is empty or the write fails.
        """
        if not title or not title.strip():
            raise RuntimeError("Book title cannot be empty")
        now = int(time.time() * 1000)
        try:
            with self._lock, self.connection:
                cur = self.connection.execute(
                    """
                    INSERT INTO books (title, created_at, cover_image_path)
                    VALUES (?, ?, ?)
                    """,
                    (title.strip(), now, cover_image_path),
                )
                return cur.lastrowid
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to create book: {e}") from e

    def get_book(self, book_id: int) -> Book:
        """Retrieve a book by id.

        Raises:
            RuntimeError: If the book does not exist.
        """
        row = self._fetch_one(
            """
            SELECT id, title, created_at, last_read_page_number,
                   last_read_sentence_index, cover_image_path
            FROM books WHERE id = ?
            """,
            (book_id,),
        )
        if row is None:
            raise RuntimeError(f"Book not found: {book_id}")
        return self._row_to_book(row)

    def list_books(self) -> List[Book]:
        """All books, most recently created first."""
        rows = self._fetch_all(
            """
            SELECT id, title, created_at, last_read_page_number,
                   last_read_sentence_index, cover_image_path
            FROM books
            ORDER BY created_at DESC, id DESC
            """
        )
        return [self._row_to_book(row) for row in rows]

    def update_book_title(self, book_id: int, title: str) -> Book:
        if not title or not title.strip():
            raise RuntimeError("Book title cannot be empty")
        self._execute_update(
            "UPDATE books SET title = ? WHERE id = ?",
            (title.strip(), book_id),
            f"Book not found: {book_id}",
        )
        return self.get_book(book_id)

    def update_book_cover(self, book_id: int, cover_image_path: str) -> Book:
        self._execute_update(
            "UPDATE books SET cover_image_path = ? WHERE id = ?",
            (cover_image_path, book_id),
            f"Book not found: {book_id}",
        )
        return self.get_book(book_id)

    def update_last_read_position(
        self, book_id: int, page_number: int, sentence_index: int
    ) -> Book:
        """Record where the reader stopped."""
        self._execute_update(
            """
            UPDATE books
            SET last_read_page_number = ?, last_read_sentence_index = ?
            WHERE id = ?
            """,
            (page_number, sentence_index, book_id),
            f"Book not found: {book_id}",
        )
        return self.get_book(book_id)

    def delete_book(self, book_id: int) -> None:
        """Remove a book; its pages are removed by the foreign key cascade."""
        self._execute_update(
            "DELETE FROM books WHERE id = ?",
            (book_id,),
            f"Book not found: {book_id}",
        )

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def insert_page(self, book_id: int, image_path: str, page_number: Optional[int] = None) -> int:
        """Insert a captured page in PENDING state and return its id.

        Without a page_number the page is appended after the book's last page.
        The number is taken inside the insert transaction, so it cannot collide
        with pages the queue worker inserts concurrently.
        """
        try:
            with self._lock, self.connection:
                if page_number is None:
                    page_number = self._next_page_number(book_id)
                cur = self.connection.execute(
                    """
                    INSERT INTO pages (book_id, page_number, image_path, processing_status)
                    VALUES (?, ?, ?, ?)
                    """,
                    (book_id, page_number, image_path or "", ProcessingStatus.PENDING.value),
                )
                return cur.lastrowid
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to insert page: {e}") from e

    def insert_completed_page(
        self, book_id: int, page_number: int, update: PageUpdate, image_path: str = ""
    ) -> int:
        """Insert a page that was already extracted as part of another capture.

        Pages at page_number and after move up by one in the same transaction,
        so captures queued behind the one being split keep their reading order.
        """
        try:
            with self._lock, self.connection:
                self.connection.execute(
                    """
                    UPDATE pages SET page_number = page_number + 1
                    WHERE book_id = ? AND page_number >= ?
                    """,
                    (book_id, page_number),
                )
                cur = self.connection.execute(
                    """
                    INSERT INTO pages (
                        book_id, page_number, image_path, text, sentences_json,
                        last_sentence_complete, processing_status,
                        detected_page_label, chapter_title, resolved_chapter, confidence
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        book_id,
                        page_number,
                        image_path,
                        update.text,
                        sentences_to_json(update.sentences),
                        int(update.last_sentence_complete),
                        ProcessingStatus.COMPLETED.value,
                        update.detected_page_label,
                        update.chapter_title,
                        update.resolved_chapter,
                        update.confidence,
                    ),
                )
                return cur.lastrowid
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to insert completed page: {e}") from e

    def get_page(self, page_id: int) -> Page:
        """Retrieve a page by id.

        Raises:
            RuntimeError: If the page does not exist.
        """
        row = self._fetch_one(f"SELECT {_PAGE_COLUMNS} FROM pages WHERE id = ?", (page_id,))
        if row is None:
            raise RuntimeError(f"Page not found: {page_id}")
        return self._row_to_page(row)

    def get_page_by_number(self, book_id: int, page_number: int) -> Optional[Page]:
        row = self._fetch_one(
            f"""
            SELECT {_PAGE_COLUMNS} FROM pages
            WHERE book_id = ? AND page_number = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (book_id, page_number),
        )
        return self._row_to_page(row) if row else None

    def get_next_pending_page(self) -> Optional[Page]:
        """Oldest PENDING page across all books (FIFO by insertion)."""
        row = self._fetch_one(
            f"""
            SELECT {_PAGE_COLUMNS} FROM pages
            WHERE processing_status = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (ProcessingStatus.PENDING.value,),
        )
        return self._row_to_page(row) if row else None

    def get_pages_before(self, book_id: int, page_number: int) -> List[Page]:
        """Pages of a book preceding page_number, nearest first."""
        rows = self._fetch_all(
            f"""
            SELECT {_PAGE_COLUMNS} FROM pages
            WHERE book_id = ? AND page_number < ?
            ORDER BY page_number DESC, id DESC
            """,
            (book_id, page_number),
        )
        return [self._row_to_page(row) for row in rows]

    def get_extra_pages(self, book_id: int, page_number: int) -> List[Page]:
        """Pages split off the capture at page_number, in reading order.

        Those are the image-less pages directly following it; the next page
        with an image belongs to another capture.
        """
        rows = self._fetch_all(
            f"""
            SELECT {_PAGE_COLUMNS} FROM pages
            WHERE book_id = ? AND page_number > ?
            ORDER BY page_number ASC, id ASC
            """,
            (book_id, page_number),
        )
        extra = []
        for row in rows:
            page = self._row_to_page(row)
            if page.image_path:
                break
            extra.append(page)
        return extra

    def get_pages_for_book(self, book_id: int) -> List[Page]:
        rows = self._fetch_all(
            f"SELECT {_PAGE_COLUMNS} FROM pages WHERE book_id = ? ORDER BY page_number ASC, id ASC",
            (book_id,),
        )
        return [self._row_to_page(row) for row in rows]

    def get_completed_pages_for_book(self, book_id: int) -> List[Page]:
        rows = self._fetch_all(
            f"""
            SELECT {_PAGE_COLUMNS} FROM pages
            WHERE book_id = ? AND processing_status = ?
            ORDER BY page_number ASC, id ASC
            """,
            (book_id, ProcessingStatus.COMPLETED.value),
        )
        return [self._row_to_page(row) for row in rows]

    def get_queued_pages(self) -> List[Page]:
        """Pages still waiting for or undergoing OCR, in queue order."""
        rows = self._fetch_all(
            f"""
            SELECT {_PAGE_COLUMNS} FROM pages
            WHERE processing_status IN (?, ?)
            ORDER BY id ASC
            """,
            (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value),
        )
        return [self._row_to_page(row) for row in rows]

    def get_pending_page_count(self, book_id: int) -> int:
        row = self._fetch_one(
            """
            SELECT COUNT(*) AS n FROM pages
            WHERE book_id = ? AND processing_status IN (?, ?)
            """,
            (book_id, ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value),
        )
        return row["n"]

    def get_next_page_number(self, book_id: int) -> int:
        try:
            with self._lock:
                return self._next_page_number(book_id)
        except sqlite3.Error as e:
            raise RuntimeError(f"Database query failed: {e}") from e

    def update_page_with_ocr_result(self, page_id: int, update: PageUpdate) -> None:
        """Store a full OCR outcome and mark the page COMPLETED."""
        self._execute_update(
            """
            UPDATE pages
            SET text = ?, sentences_json = ?, last_sentence_complete = ?,
                detected_page_label = ?, chapter_title = ?, resolved_chapter = ?,
                confidence = ?, processing_status = ?, error_message = NULL
            WHERE id = ?
            """,
            (
                update.text,
                sentences_to_json(update.sentences),
                int(update.last_sentence_complete),
                update.detected_page_label,
                update.chapter_title,
                update.resolved_chapter,
                update.confidence,
                ProcessingStatus.COMPLETED.value,
                page_id,
            ),
            f"Page not found: {page_id}",
        )

    def update_page_sentences(self, page_id: int, sentences: List[Sentence]) -> None:
        """Replace a page's sentences, recomputing its text and completeness."""
        last_complete = sentences[-1].is_complete if sentences else True
        self._execute_update(
            """
            UPDATE pages
            SET sentences_json = ?, text = ?, last_sentence_complete = ?
            WHERE id = ?
            """,
            (sentences_to_json(sentences), join_sentences(sentences), int(last_complete), page_id),
            f"Page not found: {page_id}",
        )

    def update_processing_status(
        self, page_id: int, status: ProcessingStatus, error: Optional[str] = None
    ) -> None:
        self._execute_update(
            "UPDATE pages SET processing_status = ?, error_message = ? WHERE id = ?",
            (ProcessingStatus(status).value, error, page_id),
            f"Page not found: {page_id}",
        )

    def update_processing_status_with_retry(
        self,
        page_id: int,
        status: ProcessingStatus,
        retry_count: int,
        error: Optional[str] = None,
    ) -> None:
        self._execute_update(
            """
            UPDATE pages
            SET processing_status = ?, retry_count = ?, error_message = ?
            WHERE id = ?
            """,
            (ProcessingStatus(status).value, retry_count, error, page_id),
            f"Page not found: {page_id}",
        )

    def prepare_for_recapture(self, page_id: int, new_image_path: Optional[str] = None) -> Page:
        """Reset a page to PENDING so it is processed again.

        When new_image_path replaces the current image, the old file is deleted
        first. Error and retry count are cleared.
        """
        page = self.get_page(page_id)
        image_path = page.image_path
        if new_image_path is not None and new_image_path != page.image_path:
            self._delete_image(page.image_path)
            image_path = new_image_path

        self._execute_update(
            """
            UPDATE pages
            SET image_path = ?, processing_status = ?, retry_count = 0, error_message = NULL
            WHERE id = ?
            """,
            (image_path, ProcessingStatus.PENDING.value, page_id),
            f"Page not found: {page_id}",
        )
        return self.get_page(page_id)

    def reset_stale_processing(self) -> int:
        """Return pages left PROCESSING by an interrupted run to PENDING."""
        try:
            with self._lock, self.connection:
                cur = self.connection.execute(
                    "UPDATE pages SET processing_status = ? WHERE processing_status = ?",
                    (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value),
                )
                return cur.rowcount
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to reset interrupted pages: {e}") from e

    def delete_page(self, page_id: int) -> None:
        """Delete a page and its image, closing the gap in page numbers."""
        page = self.get_page(page_id)
        try:
            with self._lock, self.connection:
                self.connection.execute("DELETE FROM pages WHERE id = ?", (page_id,))
                self.connection.execute(
                    """
                    UPDATE pages SET page_number = page_number - 1
                    WHERE book_id = ? AND page_number > ?
                    """,
                    (page.book_id, page.page_number),
                )
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to delete page: {e}") from e
        self._delete_image(page.image_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        try:
            with self._lock:
                return self.connection.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise RuntimeError(f"Database query failed: {e}") from e

    def _fetch_all(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self.connection.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise RuntimeError(f"Database query failed: {e}") from e

    def _next_page_number(self, book_id: int) -> int:
        row = self.connection.execute(
            "SELECT MAX(page_number) AS last FROM pages WHERE book_id = ?",
            (book_id,),
        ).fetchone()
        return (row["last"] or 0) + 1

    def _execute_update(self, sql: str, params: tuple, not_found_message: str) -> None:
        try:
            with self._lock, self.connection:
                cur = self.connection.execute(sql, params)
                if cur.rowcount == 0:
                    raise RuntimeError(not_found_message)
        except sqlite3.Error as e:
            raise RuntimeError(f"Database write failed: {e}") from e

    @staticmethod
    def _delete_image(image_path: str) -> None:
        if not image_path:
            return
        try:
            os.remove(image_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not delete replaced image %s: %s", image_path, e)

    @staticmethod
    def _row_to_book(row: sqlite3.Row) -> Book:
        return Book(
            id=row["id"],
            title=row["title"],
            created_at=row["created_at"],
            last_read_page_number=row["last_read_page_number"],
            last_read_sentence_index=row["last_read_sentence_index"],
            cover_image_path=row["cover_image_path"],
        )

    @staticmethod
    def _row_to_page(row: sqlite3.Row) -> Page:
        return Page(
            id=row["id"],
            book_id=row["book_id"],
            page_number=row["page_number"],
            image_path=row["image_path"] or "",
            text=row["text"] or "",
            sentences=sentences_from_json(row["sentences_json"]),
            last_sentence_complete=bool(row["last_sentence_complete"]),
            processing_status=ProcessingStatus(row["processing_status"]),
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            detected_page_label=row["detected_page_label"],
            chapter_title=row["chapter_title"],
            resolved_chapter=row["resolved_chapter"],
            confidence=row["confidence"],
        )
