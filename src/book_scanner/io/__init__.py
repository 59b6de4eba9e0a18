"""I/O layer - Data access for persistence and file operations."""

from .book_repository import BookRepository
from .database_manager import DatabaseManager

__all__ = ["DatabaseManager", "BookRepository"]
