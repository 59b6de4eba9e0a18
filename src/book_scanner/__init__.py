"""
Book Scanner - background OCR ingestion for photographed books.

This package provides:
- A durable page queue stored in SQLite
- Page extraction through Google Gemini
- Sentence continuation across page breaks
- Chapter attribution, page gap and low confidence detection
"""

__version__ = "0.1.0"

# Make key components available at package level
from book_scanner.core import Book, Page, Sentence
from book_scanner.coordinators import OCRQueueCoordinator

__all__ = [
    "Book",
    "Page",
    "Sentence",
    "OCRQueueCoordinator",
]
