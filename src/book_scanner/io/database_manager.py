"""SQLite-backed persistence for books and their pages."""

import sqlite3
from pathlib import Path
from typing import Dict


class DatabaseManager:
    """Owns the SQLite connection and the books/pages schema."""

    # Columns added after the first schema version, applied to older databases.
    PAGE_COLUMN_MIGRATIONS: Dict[str, str] = {
        "detected_page_label": "TEXT",
        "chapter_title": "TEXT",
        "resolved_chapter": "TEXT",
        "confidence": "REAL NOT NULL DEFAULT 1.0",
    }

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # The queue worker runs on a pool thread; callers serialize access.
        self.connection = sqlite3.connect(str(db_path), check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self.connection.execute("PRAGMA foreign_keys = ON;")

    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        cur = self.connection.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                last_read_page_number INTEGER NOT NULL DEFAULT 1,
                last_read_sentence_index INTEGER NOT NULL DEFAULT 0,
                cover_image_path TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                page_number INTEGER NOT NULL,
                image_path TEXT NOT NULL DEFAULT '',
                text TEXT NOT NULL DEFAULT '',
                sentences_json TEXT,
                last_sentence_complete INTEGER NOT NULL DEFAULT 1,
                processing_status TEXT NOT NULL DEFAULT 'PENDING',
                retry_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,

                FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE
            );
            """
        )
        self._migrate_page_columns(cur)
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_pages_book
            ON pages(book_id, page_number);
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_pages_status
            ON pages(processing_status, id);
            """
        )
        self.connection.commit()

    def close(self) -> None:
        self.connection.close()

    def _migrate_page_columns(self, cur: sqlite3.Cursor) -> None:
        cur.execute("PRAGMA table_info(pages)")
        existing = {row["name"] for row in cur.fetchall()}
        for name, definition in self.PAGE_COLUMN_MIGRATIONS.items():
            if name not in existing:
                cur.execute(f"ALTER TABLE pages ADD COLUMN {name} {definition}")
