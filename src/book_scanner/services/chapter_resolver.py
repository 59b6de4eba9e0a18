"""Chapter Resolver - attributes a chapter to a page by looking backwards."""

from typing import Optional

from book_scanner.core import Book
from book_scanner.io import BookRepository

MIN_CHAPTER_TITLE_LENGTH = 3


def is_valid_chapter_title(candidate: Optional[str], book_title: str) -> bool:
    """A detected heading counts as a chapter unless it is the book's running
    header, too short, or just a number."""
    if candidate is None:
        return False
    title = candidate.strip()
    if not title:
        return False
    if title.casefold() == (book_title or "").strip().casefold():
        return False
    if len(title) < MIN_CHAPTER_TITLE_LENGTH:
        return False
    if title.isdigit():
        return False
    return True


class ChapterResolver:
    """Infers the chapter a page belongs to.

    A chapter heading detected on the page wins. Otherwise the nearest earlier
    page that has a valid heading, or a chapter resolved earlier, supplies it.
    None means the page precedes any known chapter.
    """

    def __init__(self, book_repository: BookRepository):
        if book_repository is None:
            raise ValueError("BookRepository must not be None")
        self.book_repository = book_repository

    def resolve(
        self, book: Book, page_number: int, detected_chapter: Optional[str]
    ) -> Optional[str]:
        if is_valid_chapter_title(detected_chapter, book.title):
            return detected_chapter.strip()

        for page in self.book_repository.get_pages_before(book.id, page_number):
            if is_valid_chapter_title(page.chapter_title, book.title):
                return page.chapter_title.strip()
            # Resolved chapters are re-validated against the current book title.
            if is_valid_chapter_title(page.resolved_chapter, book.title):
                return page.resolved_chapter.strip()
        return None
