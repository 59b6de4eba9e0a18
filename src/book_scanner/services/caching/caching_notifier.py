"""Caching Notifier abstraction - downstream consumer of finished page text."""

from abc import ABC, abstractmethod
from typing import List


class CachingNotifier(ABC):
    """
    Receives the sentences of a page once its text is final.

    Implementations typically pre-render audio or warm other per-sentence
    caches. Calls are fire-and-forget: the OCR queue ignores their outcome.
    """

    @abstractmethod
    def queue_for_caching(self, sentence_texts: List[str], cache_id: str) -> None:
        """
        Schedule caching for one page's sentences.

        Args:
            sentence_texts: Sentence texts in reading order.
            cache_id: Opaque identifier of the page result.
        """
        pass
