"""Queue states broadcast by the OCR queue coordinator.

Only the latest value is kept. Observers receive each published value but must
tolerate missing intermediate ones.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Processing:
    page_id: int
    book_id: int


@dataclass(frozen=True)
class Error:
    page_id: int
    message: str


@dataclass(frozen=True)
class MissingPages:
    book_id: int
    expected: int
    detected: int


@dataclass(frozen=True)
class InsufficientCredits:
    message: str


@dataclass(frozen=True)
class LowConfidence:
    book_id: int
    page_label: Optional[str]
    confidence: float


@dataclass(frozen=True)
class PagesProcessed:
    book_id: int
    labels: List[Optional[int]] = field(default_factory=list)
    next_expected_label: Optional[int] = None


QueueState = Union[
    Idle,
    Processing,
    Error,
    MissingPages,
    InsufficientCredits,
    LowConfidence,
    PagesProcessed,
]
