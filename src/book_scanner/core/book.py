"""Domain entity for a captured book."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Book:
    """Represents a book in the library.

    Attributes:
        id: Unique identifier in the database.
        title: Display title (extracted from the cover or entered by hand).
        created_at: Unix timestamp in milliseconds when the book was created.
        last_read_page_number: Sequential page number the reader stopped on.
        last_read_sentence_index: Sentence index within that page.
        cover_image_path: Path to the cover image, if one was captured.
    """

    id: int
    title: str
    created_at: int
    last_read_page_number: int = 1
    last_read_sentence_index: int = 0
    cover_image_path: Optional[str] = None
