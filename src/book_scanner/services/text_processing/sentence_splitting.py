"""Text helpers for sentence fallback splitting and page label parsing."""

import re
from typing import List, Optional

from book_scanner.core import Sentence

TERMINAL_PUNCTUATION = (".", "!", "?")

# Closing quotes/brackets may follow the terminal mark: 'He said "Go!"'
_TRAILING_CLOSERS = "\"')]}”’"

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])[\"')\]}”’]*\s+")


def normalize_text(text: str) -> str:
    """
    Normalize extracted text.

    Rules:
    - Trim leading and trailing whitespace
    - Collapse runs of whitespace (spaces, tabs, newlines) to single spaces

    Args:
        text: Original text to normalize.

    Returns:
        Normalized text string.
    """
    text = text.strip()
    text = re.sub(r'\s+', ' ', text)
    return text


def ends_with_terminal_punctuation(text: str) -> bool:
    return text.rstrip().rstrip(_TRAILING_CLOSERS).endswith(TERMINAL_PUNCTUATION)


def split_into_sentences(text: str) -> List[Sentence]:
    """Naive punctuation-boundary split used when structured parsing fails.

    Every sentence is complete except a trailing one without terminal
    punctuation, which is assumed to continue on the next page.
    """
    flat = normalize_text(text)
    if not flat:
        return []

    pieces = []
    start = 0
    for match in _SENTENCE_BOUNDARY.finditer(flat):
        # Closing quotes stay attached to the sentence they close.
        pieces.append(flat[start:match.start() + len(match.group(0).rstrip())])
        start = match.end()
    pieces.append(flat[start:])

    sentences = [Sentence(text=p.strip()) for p in pieces if p.strip()]
    if sentences and not ends_with_terminal_punctuation(sentences[-1].text):
        sentences[-1] = Sentence(text=sentences[-1].text, is_complete=False)
    return sentences


def parse_numeric_label(label: Optional[str]) -> Optional[int]:
    """Integer value of a printed page label, or None for roman/blank/other labels."""
    if label is None:
        return None
    stripped = label.strip()
    if not stripped:
        return None
    try:
        return int(stripped)
    except ValueError:
        return None
