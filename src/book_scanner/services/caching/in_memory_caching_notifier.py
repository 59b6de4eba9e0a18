"""In-memory caching notifier for testing and session-level pre-caching."""

import threading
from collections import OrderedDict
from typing import List, Optional, Tuple

from book_scanner.services.caching.caching_notifier import CachingNotifier


class InMemoryCachingNotifier(CachingNotifier):
    """
    Keeps pending caching requests in arrival order.

    A later request for the same cache_id replaces the earlier one, so a
    reprocessed page is only cached once with its final sentences.
    """

    def __init__(self, max_pending: int = 500):
        # Structure: {cache_id: [sentence_text, ...]}
        self._pending: "OrderedDict[str, List[str]]" = OrderedDict()
        self._max_pending = max_pending
        self._lock = threading.Lock()

    def queue_for_caching(self, sentence_texts: List[str], cache_id: str) -> None:
        """Store or replace the pending request for cache_id."""
        texts = [t for t in sentence_texts if t and t.strip()]
        with self._lock:
            self._pending.pop(cache_id, None)
            if not texts:
                return
            self._pending[cache_id] = texts
            while len(self._pending) > self._max_pending:
                self._pending.popitem(last=False)

    def pop_next(self) -> Optional[Tuple[str, List[str]]]:
        """Take the oldest pending request, or None if nothing is waiting."""
        with self._lock:
            if not self._pending:
                return None
            return self._pending.popitem(last=False)

    def pending_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending.keys())

    def get(self, cache_id: str) -> Optional[List[str]]:
        with self._lock:
            texts = self._pending.get(cache_id)
            return list(texts) if texts is not None else None
