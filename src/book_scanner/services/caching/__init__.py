"""Caching services - notifier interface and concrete implementations."""

from book_scanner.services.caching.caching_notifier import CachingNotifier
from book_scanner.services.caching.in_memory_caching_notifier import InMemoryCachingNotifier

__all__ = [
    "CachingNotifier",
    "InMemoryCachingNotifier",
]
