"""Decoding of extraction responses.

The model answers in one of three shapes, probed in this order:

1. multi-page JSON  ``{"pages": [{"pageNumber", "confidence", "chapterTitle", "sentences"}]}``
2. legacy JSON      ``{"pageNumber", "sentences": [...]}``
3. plain text, split on sentence punctuation as a last resort
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from book_scanner.core import Sentence, join_sentences
from book_scanner.services.extraction.extraction_service import ExtractionResult, PageResult
from book_scanner.services.text_processing import (
    ends_with_terminal_punctuation,
    normalize_text,
    split_into_sentences,
)

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class MultiPageResponse:
    pages: List[PageResult]


@dataclass(frozen=True)
class LegacyResponse:
    page: PageResult


@dataclass(frozen=True)
class PlainTextResponse:
    text: str


ParsedResponse = Union[MultiPageResponse, LegacyResponse, PlainTextResponse]


class ResponseShapeError(ValueError):
    """JSON was found but does not match a known response shape."""


def decode_response(text: str) -> ParsedResponse:
    """Classify raw model output into one of the known response shapes."""
    payload = _load_json_object(text)
    if payload is None:
        return PlainTextResponse(text)

    try:
        if isinstance(payload.get("pages"), list):
            return MultiPageResponse([_parse_page(item) for item in payload["pages"]])
        if isinstance(payload.get("sentences"), list):
            return LegacyResponse(_parse_page(payload))
    except ResponseShapeError as e:
        logger.warning("Malformed extraction JSON, falling back to text split: %s", e)
        return PlainTextResponse(text)

    logger.warning("Extraction JSON has no pages or sentences, falling back to text split")
    return PlainTextResponse(text)


def parse_extraction_text(text: str) -> ExtractionResult:
    """Turn raw model output into an ExtractionResult."""
    if not text or not text.strip():
        return ExtractionResult()

    parsed = decode_response(text)
    if isinstance(parsed, MultiPageResponse):
        pages = [p for p in parsed.pages if p.sentences]
    elif isinstance(parsed, LegacyResponse):
        pages = [parsed.page] if parsed.page.sentences else []
    else:
        sentences = split_into_sentences(parsed.text)
        pages = [PageResult(sentences=sentences, full_text=normalize_text(parsed.text))] if sentences else []

    return ExtractionResult(pages=_enforce_completeness(pages))


def _load_json_object(text: str) -> Optional[dict]:
    candidate = text.strip()
    fenced = _CODE_FENCE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        payload = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _parse_page(item: Any) -> PageResult:
    if not isinstance(item, dict):
        raise ResponseShapeError(f"page entry is not an object: {item!r}")
    raw_sentences = item.get("sentences")
    if not isinstance(raw_sentences, list):
        raise ResponseShapeError("page entry has no sentence list")

    sentences = []
    for raw in raw_sentences:
        if isinstance(raw, dict):
            sentence_text = normalize_text(str(raw.get("text") or ""))
            complete = _flag(raw.get("isComplete", True))
        elif isinstance(raw, str):
            sentence_text, complete = normalize_text(raw), True
        else:
            raise ResponseShapeError(f"sentence entry is not an object: {raw!r}")
        if sentence_text:
            sentences.append(Sentence(text=sentence_text, is_complete=complete))

    return PageResult(
        sentences=sentences,
        full_text=join_sentences(sentences),
        page_label=_label(item.get("pageNumber")),
        confidence=_confidence(item.get("confidence")),
        chapter_title=_optional_text(item.get("chapterTitle")),
    )


def _enforce_completeness(pages: List[PageResult]) -> List[PageResult]:
    """Only the very last sentence of a response may be incomplete, and only
    when it lacks terminal punctuation."""
    fixed = []
    for page_index, page in enumerate(pages):
        last_page = page_index == len(pages) - 1
        sentences = []
        for sentence_index, sentence in enumerate(page.sentences):
            last_sentence = last_page and sentence_index == len(page.sentences) - 1
            complete = sentence.is_complete
            if not last_sentence or ends_with_terminal_punctuation(sentence.text):
                complete = True
            sentences.append(Sentence(text=sentence.text, is_complete=complete))
        fixed.append(
            PageResult(
                sentences=sentences,
                full_text=page.full_text,
                page_label=page.page_label,
                confidence=page.confidence,
                chapter_title=page.chapter_title,
            )
        )
    return fixed


def _flag(value: Any) -> bool:
    """Completeness flag; the model sometimes answers with the string "false"."""
    if isinstance(value, str):
        return value.strip().lower() != "false"
    return value is not False


def _label(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return _optional_text(value)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _confidence(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 1.0
    return min(1.0, max(0.0, score))
