"""Main entry point: queue captured page photos and process them."""

import argparse
import logging
import shutil
import sys
import uuid
from pathlib import Path
from typing import List, Optional

from book_scanner.coordinators import OCRQueueCoordinator
from book_scanner.core import QueueState
from book_scanner.io import BookRepository, DatabaseManager
from book_scanner.services import (
    ChapterResolver,
    GeminiExtractionService,
    InMemoryCachingNotifier,
    SettingsManager,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="book-scanner",
        description="OCR captured book pages into sentences.",
    )
    parser.add_argument("images", nargs="*", help="Page photos to queue, in reading order")
    book = parser.add_mutually_exclusive_group()
    book.add_argument("--book-id", type=int, help="Add pages to an existing book")
    book.add_argument("--title", help="Create a new book with this title")
    book.add_argument("--cover", help="Create a new book titled from this cover photo")
    parser.add_argument("--db", help="Override the library database path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Bootstrap the pipeline following the Composition Root pattern.
    This is the only place that knows how to instantiate and wire all components.
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # 1. Configuration
    settings = SettingsManager()

    # 2. Infrastructure
    database = DatabaseManager(args.db or settings.get_database_path())
    database.ensure_schema()
    repository = BookRepository(database.connection)

    # 3. Services
    extraction = GeminiExtractionService(model_name=settings.get_model_name())
    coordinator = OCRQueueCoordinator(
        book_repository=repository,
        extraction_service=extraction,
        api_key_provider=settings.read_gemini_api_key,
        chapter_resolver=ChapterResolver(repository),
        caching_notifier=InMemoryCachingNotifier(),
    )
    coordinator.subscribe(_print_state)

    try:
        book_id = _select_book(args, repository, coordinator)
        if book_id is not None:
            for image in args.images:
                stored = _store_capture(Path(image), settings.get_image_dir() / f"book_{book_id}")
                page_id = repository.insert_page(book_id, str(stored))
                page_number = repository.get_page(page_id).page_number
                print(f"Queued {image} as page {page_number} (id {page_id})")

        # Work left over from an interrupted run is picked up here too.
        repository.reset_stale_processing()
        coordinator.process_queue()
    finally:
        database.close()
    return 0


def _select_book(args, repository: BookRepository, coordinator: OCRQueueCoordinator) -> Optional[int]:
    if args.book_id is not None:
        return repository.get_book(args.book_id).id
    if args.title:
        return repository.create_book(args.title)
    if args.cover:
        return coordinator.create_book_from_cover(args.cover)
    if args.images:
        raise SystemExit("Pass --book-id, --title or --cover together with images")
    return None


def _store_capture(image: Path, target_dir: Path) -> Path:
    """Copy a capture into the managed image directory.

    Recapture deletes the stored copy, never the caller's original file.
    """
    if not image.is_file():
        raise SystemExit(f"Image not found: {image}")
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{uuid.uuid4().hex}{image.suffix.lower()}"
    shutil.copy2(image, target)
    return target


def _print_state(state: QueueState) -> None:
    print(f"[queue] {state}")


if __name__ == "__main__":
    sys.exit(main())
