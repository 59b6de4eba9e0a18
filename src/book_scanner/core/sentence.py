"""Sentence entity - one sentence of extracted page text."""

import json
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class Sentence:
    """A sentence extracted from a page image.

    Attributes:
        text: Sentence text as read from the page.
        is_complete: False only when the sentence is cut off at the page boundary.
    """

    text: str
    is_complete: bool = True

    def to_dict(self) -> dict:
        return {"text": self.text, "isComplete": self.is_complete}

    @classmethod
    def from_dict(cls, data: dict) -> "Sentence":
        return cls(text=str(data.get("text", "")), is_complete=bool(data.get("isComplete", True)))


def sentences_to_json(sentences: List[Sentence]) -> str:
    """Serialize an ordered sentence list for storage in a page row."""
    return json.dumps([s.to_dict() for s in sentences], ensure_ascii=False)


def sentences_from_json(raw: str) -> List[Sentence]:
    """Deserialize a stored sentence list; blank input yields an empty list."""
    if not raw or not raw.strip():
        return []
    return [Sentence.from_dict(item) for item in json.loads(raw)]


def join_sentences(sentences: List[Sentence]) -> str:
    """Full page text rebuilt from its sentences."""
    return " ".join(s.text for s in sentences)
