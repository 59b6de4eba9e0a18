"""Text processing services - normalization, sentence splitting and labels."""

from book_scanner.services.text_processing.sentence_splitting import (
    ends_with_terminal_punctuation,
    normalize_text,
    parse_numeric_label,
    split_into_sentences,
)

__all__ = [
    "normalize_text",
    "split_into_sentences",
    "ends_with_terminal_punctuation",
    "parse_numeric_label",
]
