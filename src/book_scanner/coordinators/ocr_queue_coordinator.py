"""OCR Queue Coordinator - background processing of captured pages."""

import logging
import threading
import time
from typing import Callable, List, Optional

from PySide6.QtCore import QObject, QRunnable, QSemaphore, QThreadPool, Signal, Slot

from book_scanner.core import (
    Book,
    Error,
    Idle,
    InsufficientCredits,
    LowConfidence,
    MissingPages,
    Page,
    PageUpdate,
    PagesProcessed,
    Processing,
    ProcessingStatus,
    QueueState,
    Sentence,
    join_sentences,
)
from book_scanner.io import BookRepository
from book_scanner.services.caching import CachingNotifier
from book_scanner.services.chapter_resolver import ChapterResolver
from book_scanner.services.extraction import (
    ExtractionError,
    ExtractionResult,
    ExtractionService,
    InsufficientCreditsError,
    MissingCredentialError,
    PageResult,
    RateLimitedError,
)
from book_scanner.services.text_processing import parse_numeric_label

logger = logging.getLogger(__name__)


class _QueueRunnable(QRunnable):
    """Runs the queue loop on a pool thread and hands the run token back."""

    def __init__(self, coordinator: "OCRQueueCoordinator"):
        super().__init__()
        self.coordinator = coordinator
        self.setAutoDelete(True)

    @Slot()
    def run(self):
        try:
            self.coordinator._drain_queue()
        except Exception:
            logger.exception("OCR queue worker stopped unexpectedly")
            self.coordinator._halted = True
        finally:
            self.coordinator._finish_run()


class OCRQueueCoordinator(QObject):
    """
    Manages the background OCR queue.

    Responsibilities:
    - Pages are queued with PENDING status and survive restarts in the database
    - One page is processed at a time, oldest first
    - Multi-page captures create extra COMPLETED pages
    - Sentences cut off at a page break are merged into the next page
    - Chapters are attributed and page gaps / low confidence are reported
    - Failed pages are retried up to MAX_RETRIES with exponential backoff

    The current QueueState is a single value: every change is emitted on
    state_changed and overwrites the previous one.
    """

    state_changed = Signal(object)

    MAX_RETRIES = 3
    RETRY_BASE_DELAY_SECONDS = 2.0
    RATE_LIMIT_COOLDOWN_SECONDS = 5.0
    LOW_CONFIDENCE_THRESHOLD = 0.7

    def __init__(
        self,
        book_repository: BookRepository,
        extraction_service: ExtractionService,
        api_key_provider: Callable[[], Optional[str]],
        chapter_resolver: Optional[ChapterResolver] = None,
        caching_notifier: Optional[CachingNotifier] = None,
        thread_pool: Optional[QThreadPool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__()

        if book_repository is None:
            raise ValueError("BookRepository must not be None")
        if extraction_service is None:
            raise ValueError("ExtractionService must not be None")
        if api_key_provider is None:
            raise ValueError("API key provider must not be None")

        self.book_repository = book_repository
        self.extraction_service = extraction_service
        self.api_key_provider = api_key_provider
        self.chapter_resolver = chapter_resolver or ChapterResolver(book_repository)
        self.caching_notifier = caching_notifier
        self.thread_pool = thread_pool or QThreadPool.globalInstance()
        self._sleep = sleep

        # Single-slot token: whoever holds it runs the loop.
        self._run_token = QSemaphore(1)
        self._stop_requested = False
        self._halted = False
        self._state: QueueState = Idle()
        self._state_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queue state
    # ------------------------------------------------------------------

    @property
    def queue_state(self) -> QueueState:
        with self._state_lock:
            return self._state

    def subscribe(self, callback: Callable[[QueueState], None]) -> None:
        """Deliver the current state now and every later state change."""
        self.state_changed.connect(callback)
        callback(self.queue_state)

    def _publish(self, state: QueueState) -> None:
        with self._state_lock:
            self._state = state
        logger.debug("Queue state: %s", state)
        self.state_changed.emit(state)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def queue_page(self, book_id: int, image_path: str, page_number: Optional[int] = None) -> int:
        """
        Queue a captured page for OCR and make sure the worker is running.

        Args:
            book_id: Book the page belongs to.
            image_path: Path to the captured image.
            page_number: Sequential page number; defaults to the next free one.

        Returns:
            The new page id.
        """
        page_id = self.book_repository.insert_page(book_id, image_path, page_number)
        logger.info("Queued page %s for book %s", page_id, book_id)
        self.start_processing_if_needed()
        return page_id

    def create_book_from_cover(self, cover_image_path: str) -> int:
        """Create a book titled from its cover photo (placeholder title on failure)."""
        title = self.extraction_service.extract_title(cover_image_path, self.api_key_provider() or "")
        book_id = self.book_repository.create_book(title, cover_image_path)
        logger.info("Created book %s titled %r", book_id, title)
        return book_id

    def retry_page(self, page_id: int) -> Page:
        """Send a FAILED page back to the queue with a fresh retry budget."""
        page = self.book_repository.get_page(page_id)
        if page.processing_status != ProcessingStatus.FAILED:
            raise RuntimeError(f"Only failed pages can be retried (page {page_id} is {page.processing_status.value})")
        page = self.book_repository.prepare_for_recapture(page_id)
        self.start_processing_if_needed()
        return page

    def recapture_page(self, page_id: int, new_image_path: Optional[str] = None) -> Page:
        """Replace a page's image (deleting the old file) and process it again."""
        page = self.book_repository.prepare_for_recapture(page_id, new_image_path)
        logger.info("Page %s queued for recapture", page_id)
        self.start_processing_if_needed()
        return page

    def pending_pages(self) -> List[Page]:
        return self.book_repository.get_queued_pages()

    def resume(self) -> bool:
        """Recover pages interrupted by a previous shutdown and start the worker."""
        recovered = self.book_repository.reset_stale_processing()
        if recovered:
            logger.info("Recovered %d page(s) left in PROCESSING", recovered)
        return self.start_processing_if_needed()

    def start_processing_if_needed(self) -> bool:
        """
        Start the background worker unless it is already running.

        Returns:
            True if a worker was started, False if one was already active.
        """
        if not self._run_token.tryAcquire():
            return False
        self._stop_requested = False
        self._halted = False
        try:
            self.thread_pool.start(_QueueRunnable(self))
        except Exception:
            self._run_token.release()
            raise
        return True

    def process_queue(self) -> None:
        """Drain the queue on the calling thread (no-op if a worker is active)."""
        if not self._run_token.tryAcquire():
            return
        self._stop_requested = False
        self._halted = False
        try:
            self._drain_queue()
        except Exception:
            self._halted = True
            raise
        finally:
            self._finish_run()

    def stop(self) -> None:
        """Stop claiming pages once the current one is finished."""
        self._stop_requested = True

    @property
    def is_processing(self) -> bool:
        return self._run_token.available() == 0

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _drain_queue(self) -> None:
        while not self._stop_requested:
            page = self.book_repository.get_next_pending_page()
            if page is None:
                self._publish(Idle())
                return
            if not self._process_page(page):
                # Out of credits: leave the rest queued and keep the state visible.
                self._halted = True
                return

    def _finish_run(self) -> None:
        """Hand the run token back, then pick up pages queued while it was held.

        A page queued after the loop saw an empty queue but before the token
        was released could not start a worker of its own.
        """
        self._run_token.release()
        if self._stop_requested or self._halted:
            return
        try:
            if self.book_repository.get_next_pending_page() is not None:
                self.start_processing_if_needed()
        except Exception:
            logger.exception("Could not restart the OCR queue for late pages")

    def _process_page(self, page: Page) -> bool:
        """Process one claimed page. Returns False if the worker must halt."""
        logger.info("Processing page %s for book %s", page.id, page.book_id)
        self._publish(Processing(page.id, page.book_id))
        self.book_repository.update_processing_status(page.id, ProcessingStatus.PROCESSING)

        try:
            api_key = self.api_key_provider()
            if not api_key:
                raise MissingCredentialError("No API key available")

            result = self.extraction_service.extract(page.image_path, api_key)
            self._apply_result(page, result)
        except InsufficientCreditsError as e:
            logger.error("Page %s failed: insufficient credits", page.id)
            self.book_repository.update_processing_status(page.id, ProcessingStatus.FAILED, str(e))
            self._publish(InsufficientCredits(str(e)))
            return False
        except ExtractionError as e:
            if not e.retryable:
                logger.error("Page %s failed without retry: %s", page.id, e)
                self.book_repository.update_processing_status(page.id, ProcessingStatus.FAILED, str(e))
                self._publish(Error(page.id, str(e)))
                return True
            if isinstance(e, RateLimitedError):
                logger.warning("Rate limited on page %s, cooling down", page.id)
                self._sleep(self.RATE_LIMIT_COOLDOWN_SECONDS)
            else:
                logger.warning("Error processing page %s: %s", page.id, e)
            self._handle_processing_error(page, e)
        except Exception as e:
            logger.warning("Error processing page %s: %s", page.id, e)
            self._handle_processing_error(page, e)
        return True

    def _handle_processing_error(self, page: Page, error: Exception) -> None:
        new_retry_count = page.retry_count + 1
        message = str(error) or type(error).__name__

        if new_retry_count <= self.MAX_RETRIES:
            logger.info("Will retry page %s, attempt %d of %d", page.id, new_retry_count, self.MAX_RETRIES)
            self.book_repository.update_processing_status_with_retry(
                page.id, ProcessingStatus.PENDING, new_retry_count, message
            )
            # Exponential backoff: 2s, 4s, 8s
            self._sleep(self.RETRY_BASE_DELAY_SECONDS * (2 ** (new_retry_count - 1)))
        else:
            logger.error("Page %s failed after %d retries", page.id, self.MAX_RETRIES)
            self.book_repository.update_processing_status_with_retry(
                page.id, ProcessingStatus.FAILED, new_retry_count, message
            )
            self._publish(Error(page.id, message))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _apply_result(self, page: Page, result: ExtractionResult) -> None:
        book = self.book_repository.get_book(page.book_id)
        # Pages split off an earlier run of this capture (recapture or retry).
        extra_pages = self.book_repository.get_extra_pages(book.id, page.page_number)

        if result.is_empty:
            logger.warning("No text found on page %s", page.id)
            self.book_repository.update_page_with_ocr_result(
                page.id, PageUpdate(text="", sentences=[], last_sentence_complete=True)
            )
            self._remove_extra_pages(extra_pages)
            self._publish(PagesProcessed(book.id, [], None))
            return

        previous = None
        if page.page_number > 1:
            previous = self.book_repository.get_page_by_number(book.id, page.page_number - 1)

        labels: List[Optional[int]] = []
        worst: Optional[PageResult] = None
        gap: Optional[MissingPages] = None

        for index, page_result in enumerate(result.pages):
            page_number = page.page_number + index
            numeric_label = parse_numeric_label(page_result.page_label)
            resolved_chapter = self.chapter_resolver.resolve(book, page_number, page_result.chapter_title)

            if index == 0:
                sentences = self._merge_continuation(previous, page_result.sentences)
                update = self._build_update(page_result, sentences, resolved_chapter)
                self.book_repository.update_page_with_ocr_result(page.id, update)
                gap = self._detect_gap(book, previous, numeric_label)
            else:
                update = self._build_update(page_result, page_result.sentences, resolved_chapter)
                if index <= len(extra_pages):
                    self.book_repository.update_page_with_ocr_result(extra_pages[index - 1].id, update)
                else:
                    new_page_id = self.book_repository.insert_completed_page(book.id, page_number, update)
                    logger.info("Created page %s (#%s) from multi-page capture", new_page_id, page_number)

            labels.append(numeric_label)
            if worst is None or page_result.confidence < worst.confidence:
                worst = page_result
            self._notify_caching(update.sentences, f"{page.id}_{index}")

        self._remove_extra_pages(extra_pages[len(result.pages) - 1:])

        logger.info("Processed page %s: %d page(s), labels %s", page.id, len(result.pages), labels)

        if worst is not None and worst.confidence < self.LOW_CONFIDENCE_THRESHOLD:
            self._publish(LowConfidence(book.id, worst.page_label, worst.confidence))

        last_label = labels[-1]
        next_expected = last_label + 1 if last_label is not None else None
        self._publish(PagesProcessed(book.id, labels, next_expected))

        if gap is not None:
            self._publish(gap)

    def _remove_extra_pages(self, pages: List[Page]) -> None:
        for extra in pages:
            self.book_repository.delete_page(extra.id)
            logger.info("Removed page %s no longer present in its capture", extra.id)

    def _merge_continuation(self, previous: Optional[Page], sentences: List[Sentence]) -> List[Sentence]:
        """Join the previous page's cut-off sentence onto this page's first one.

        The previous page is rewritten before the caller commits this page, so
        an interruption between the two writes can only lose the fragment,
        never duplicate it.
        """
        if previous is None or not sentences or not previous.ends_mid_sentence:
            return sentences

        fragment = previous.sentences[-1]
        first = sentences[0]
        merged = Sentence(text=f"{fragment.text} {first.text}".strip(), is_complete=first.is_complete)

        self.book_repository.update_page_sentences(previous.id, previous.sentences[:-1])
        logger.info("Merged continuation from page %s into page #%s", previous.id, previous.page_number + 1)
        return [merged] + list(sentences[1:])

    @staticmethod
    def _detect_gap(book: Book, previous: Optional[Page], label: Optional[int]) -> Optional[MissingPages]:
        if previous is None or label is None:
            return None
        previous_label = parse_numeric_label(previous.detected_page_label)
        if previous_label is None or label <= previous_label + 1:
            return None
        logger.info("Missing pages in book %s: expected %d, found %d", book.id, previous_label + 1, label)
        return MissingPages(book.id, previous_label + 1, label)

    @staticmethod
    def _build_update(
        page_result: PageResult, sentences: List[Sentence], resolved_chapter: Optional[str]
    ) -> PageUpdate:
        return PageUpdate(
            text=join_sentences(sentences),
            sentences=list(sentences),
            last_sentence_complete=sentences[-1].is_complete if sentences else True,
            detected_page_label=page_result.page_label,
            chapter_title=page_result.chapter_title,
            resolved_chapter=resolved_chapter,
            confidence=page_result.confidence,
        )

    def _notify_caching(self, sentences: List[Sentence], cache_id: str) -> None:
        if self.caching_notifier is None or not sentences:
            return
        try:
            self.caching_notifier.queue_for_caching([s.text for s in sentences], cache_id)
        except Exception as e:
            logger.warning("Caching notifier failed for %s: %s", cache_id, e)
