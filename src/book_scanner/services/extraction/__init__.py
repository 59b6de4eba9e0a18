"""Extraction services - abstract interface, failure taxonomy and Gemini implementation."""

from book_scanner.services.extraction.extraction_service import (
    ExtractionError,
    ExtractionResult,
    ExtractionService,
    InsufficientCreditsError,
    InvalidCredentialError,
    MissingCredentialError,
    PageResult,
    RateLimitedError,
    TransientExtractionError,
)
from book_scanner.services.extraction.gemini_extraction_service import GeminiExtractionService
from book_scanner.services.extraction.response_parser import parse_extraction_text

__all__ = [
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
    "parse_extraction_text",
]
