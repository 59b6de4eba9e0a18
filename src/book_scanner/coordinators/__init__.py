"""Coordinators package - Orchestrators that connect services and persistence."""

from .ocr_queue_coordinator import OCRQueueCoordinator

__all__ = [
    "OCRQueueCoordinator",
]
