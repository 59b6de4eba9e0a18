"""Gemini Extraction Service - Implements page OCR via Google Gemini API."""

import logging
import time
from pathlib import Path
from typing import Optional

import google.genai as genai
from google.genai import errors, types

from book_scanner.services.extraction.extraction_service import (
    ExtractionError,
    ExtractionResult,
    ExtractionService,
    InsufficientCreditsError,
    InvalidCredentialError,
    RateLimitedError,
    TransientExtractionError,
)
from book_scanner.services.extraction.image_preparation import prepare_image
from book_scanner.services.extraction.response_parser import parse_extraction_text

logger = logging.getLogger(__name__)


class GeminiExtractionService(ExtractionService):
    """
    Extraction service using Google Gemini API.

    One request per captured image. Retrying is left to the OCR queue, so every
    failure is raised once as a typed ExtractionError.
    """

    MODEL_NAME = "gemini-2.0-flash"
    REQUEST_TIMEOUT_MS = 60_000
    TITLE_MAX_LENGTH = 50

    OCR_PROMPT = """Extract all text from this photo of a book. Return ONLY a JSON object with this exact format:
{
  "pages": [
    {
      "pageNumber": "12",
      "confidence": 0.95,
      "chapterTitle": null,
      "sentences": [
        {"text": "First sentence.", "isComplete": true},
        {"text": "Last sentence that may be cut", "isComplete": false}
      ]
    }
  ]
}

Pages:
- The photo may show one page or two facing pages. Return one entry per page, left page first.
- Only extract pages that are FULLY visible. If a page at the edge is visibly cropped, leave it out.
- "pageNumber" is the number printed on the page (digits or roman numerals) as text, or null if none is visible.
- "chapterTitle" is a chapter heading printed on the page, or null. Never use the running header with the book title.

Sentences:
- Split text into sentences ending with . ! or ?
- IGNORE periods in abbreviations (Dr., Mr., Mrs., U.S., etc., e.g., i.e.)
- IGNORE periods in numbers ($4.99, 3.14)
- Keep dialogue punctuation with the sentence
- Leave out page numbers, running headers and footers from the sentences.
- Only the LAST sentence of the LAST page may have "isComplete": false, and ONLY if it ends mid-thought without terminal punctuation.
- All other sentences must have "isComplete": true

Confidence (0.0 to 1.0) for each page:
- 0.9-1.0: sharp, evenly lit, every word legible
- 0.7-0.9: minor blur, glare or curvature, a few uncertain words
- 0.5-0.7: parts of the page hard to read
- below 0.5: mostly illegible, heavy blur or shadow"""

    TITLE_PROMPT = """Extract the book title from this cover image. Return ONLY a JSON object:
{
  "sentences": [
    {"text": "The Book Title", "isComplete": true}
  ]
}

Return ONLY the main title, not subtitle or author name."""

    def __init__(self, model_name: Optional[str] = None, timeout_ms: int = REQUEST_TIMEOUT_MS):
        self.model_name = model_name or self.MODEL_NAME
        self.timeout_ms = timeout_ms

    def extract(self, image_path: str, api_key: str) -> ExtractionResult:
        """
        Extract every fully visible page of a captured image.

        Args:
            image_path: Path to the captured image.
            api_key: Gemini API key for authentication.

        Returns:
            ExtractionResult with one PageResult per visible page.

        Raises:
            ExtractionError: Typed failure for the queue's retry policy.
        """
        image_bytes = prepare_image(Path(image_path))
        text = self._generate(image_bytes, api_key, self.OCR_PROMPT, json_output=True)
        result = parse_extraction_text(text)
        logger.debug(
            "Extracted %d page(s) from %s using %s", len(result.pages), image_path, self.model_name
        )
        return result

    def extract_title(self, image_path: str, api_key: str) -> str:
        """
        Read the title from a cover image.

        Falls back to a timestamp-based placeholder on any failure.
        """
        try:
            image_bytes = prepare_image(Path(image_path))
            text = self._generate(image_bytes, api_key, self.TITLE_PROMPT, json_output=False)
            result = parse_extraction_text(text)
            if not result.is_empty:
                first_page = result.pages[0]
                title = first_page.sentences[0].text if first_page.sentences else first_page.full_text
                title = title[: self.TITLE_MAX_LENGTH].strip()
                if title:
                    return title
        except Exception as e:
            logger.warning("Title extraction failed for %s: %s", image_path, e)
        return self.fallback_title()

    @staticmethod
    def fallback_title() -> str:
        return f"Book {int(time.time() * 1000)}"

    def _generate(self, image_bytes: bytes, api_key: str, prompt: str, json_output: bool) -> str:
        try:
            client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=self.timeout_ms),
            )
            response = client.models.generate_content(
                model=self.model_name,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type="image/jpeg"),
                    prompt,
                ],
                config=types.GenerateContentConfig(
                    temperature=0.0,
                    max_output_tokens=4096,
                    response_mime_type="application/json" if json_output else None,
                ),
            )
        except errors.APIError as e:
            raise self._classify_api_error(e) from e
        except Exception as e:
            raise TransientExtractionError(f"Extraction request failed: {e}") from e

        try:
            return response.text or ""
        except ValueError as e:
            raise TransientExtractionError(f"Unreadable extraction response: {e}") from e

    @staticmethod
    def _classify_api_error(error: errors.APIError) -> ExtractionError:
        """Map a Gemini API error onto the extraction failure taxonomy."""
        code = getattr(error, "code", None)
        message = str(error)
        lowered = message.lower()

        billing_markers = (
            "credit balance",
            "insufficient balance",
            "insufficient credits",
            "billing",
            "prepayment",
        )
        if code == 402 or any(marker in lowered for marker in billing_markers):
            return InsufficientCreditsError(f"Insufficient credits: {message}")
        if code == 401 or "api_key_invalid" in lowered or "api key not valid" in lowered:
            return InvalidCredentialError("API key is invalid or expired")
        if code == 429 or "resource_exhausted" in lowered or "rate_limit" in lowered:
            return RateLimitedError(f"Rate limited: {message}")
        return TransientExtractionError(f"API error {code}: {message}")
