"""Page entity - one captured page and its OCR processing state."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .sentence import Sentence


class ProcessingStatus(str, Enum):
    """Lifecycle of a page in the OCR queue."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Page:
    """Represents a single page of a book.

    page_number is the sequential capture order, not the number printed on the
    page; the printed one is kept in detected_page_label.
    """

    id: int
    book_id: int
    page_number: int
    image_path: str = ""
    text: str = ""
    sentences: List[Sentence] = field(default_factory=list)
    last_sentence_complete: bool = True
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    detected_page_label: Optional[str] = None
    chapter_title: Optional[str] = None
    resolved_chapter: Optional[str] = None
    confidence: float = 1.0

    @property
    def is_completed(self) -> bool:
        return self.processing_status == ProcessingStatus.COMPLETED

    @property
    def ends_mid_sentence(self) -> bool:
        """True if the last sentence continues on the next page."""
        return self.is_completed and bool(self.sentences) and not self.last_sentence_complete


@dataclass(frozen=True)
class PageUpdate:
    """OCR outcome applied to a page row in one write."""

    text: str
    sentences: List[Sentence]
    last_sentence_complete: bool
    detected_page_label: Optional[str] = None
    chapter_title: Optional[str] = None
    resolved_chapter: Optional[str] = None
    confidence: float = 1.0
