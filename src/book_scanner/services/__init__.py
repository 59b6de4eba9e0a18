"""Services layer - business logic and external integrations."""

from book_scanner.services.settings_manager import SettingsManager
from book_scanner.services.chapter_resolver import ChapterResolver, is_valid_chapter_title

# Text processing services
from book_scanner.services.text_processing import (
    normalize_text,
    parse_numeric_label,
    split_into_sentences,
)

# Extraction services
from book_scanner.services.extraction import (
    ExtractionError,
    ExtractionResult,
    ExtractionService,
    GeminiExtractionService,
    InsufficientCreditsError,
    InvalidCredentialError,
    MissingCredentialError,
    PageResult,
    RateLimitedError,
    TransientExtractionError,
)

# Caching services
from book_scanner.services.caching import CachingNotifier, InMemoryCachingNotifier

__all__ = [
    "SettingsManager",
    "ChapterResolver",
    "is_valid_chapter_title",
    "normalize_text",
    "parse_numeric_label",
    "split_into_sentences",
    "ExtractionService",
    "ExtractionResult",
    "PageResult",
    "ExtractionError",
    "TransientExtractionError",
    "RateLimitedError",
    "InvalidCredentialError",
    "InsufficientCreditsError",
    "MissingCredentialError",
    "GeminiExtractionService",
    "CachingNotifier",
    "InMemoryCachingNotifier",
]
