"""Extraction Service - contract for turning a page photo into sentences."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from book_scanner.core import Sentence


@dataclass(frozen=True)
class PageResult:
    """One book page found in a captured image."""

    sentences: List[Sentence] = field(default_factory=list)
    full_text: str = ""
    page_label: Optional[str] = None
    confidence: float = 1.0
    chapter_title: Optional[str] = None

    @property
    def last_sentence_complete(self) -> bool:
        return self.sentences[-1].is_complete if self.sentences else True


@dataclass(frozen=True)
class ExtractionResult:
    """Ordered page results for one captured image (left page first)."""

    pages: List[PageResult] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.pages


class ExtractionError(Exception):
    """Base class for extraction failures."""

    retryable = True


class TransientExtractionError(ExtractionError):
    """Network, IO or decode failure; the request may be retried."""


class RateLimitedError(ExtractionError):
    """Backend throttled the request; retry after a cooldown."""


class InvalidCredentialError(ExtractionError):
    """Backend rejected the API key. A new key is required."""

    retryable = False


class InsufficientCreditsError(ExtractionError):
    """Account has no balance left. Requires a billing fix, never retried."""

    retryable = False


class MissingCredentialError(ExtractionError):
    """No API key configured locally."""


class ExtractionService(ABC):
    """
    Abstract service for extracting page text from a captured image.

    Implementations (e.g., GeminiExtractionService) handle API calls.
    """

    @abstractmethod
    def extract(self, image_path: str, api_key: str) -> ExtractionResult:
        """
        Extract every fully visible page in the image.

        Args:
            image_path: Path to the captured image.
            api_key: Model provider API key for authentication.

        Returns:
            ExtractionResult with zero or more pages.

        Raises:
            ExtractionError: One of the typed subclasses on failure.
        """
        pass

    @abstractmethod
    def extract_title(self, image_path: str, api_key: str) -> str:
        """
        Best-effort title read from a cover image. Never raises.
        """
        pass
