"""Domain layer - Pure entities representing books, pages and queue state."""

from .book import Book
from .page import Page, PageUpdate, ProcessingStatus
from .queue_state import (
    Error,
    Idle,
    InsufficientCredits,
    LowConfidence,
    MissingPages,
    PagesProcessed,
    Processing,
    QueueState,
)
from .sentence import Sentence, join_sentences, sentences_from_json, sentences_to_json

__all__ = [
    "Book",
    "Page",
    "PageUpdate",
    "ProcessingStatus",
    "Sentence",
    "join_sentences",
    "sentences_from_json",
    "sentences_to_json",
    "QueueState",
    "Idle",
    "Processing",
    "Error",
    "MissingPages",
    "InsufficientCredits",
    "LowConfidence",
    "PagesProcessed",
]
