#!/usr/bin/env python3
"""
Tests for OCRQueueCoordinator - validates queue order, retries, reconciliation
and published queue states.

The queue is drained synchronously with process_queue() and sleeps are recorded
instead of waited on.
"""

import threading
from unittest.mock import MagicMock

import pytest
from PySide6.QtCore import QCoreApplication, QThreadPool

from book_scanner.coordinators import OCRQueueCoordinator
from book_scanner.core import (
    Error,
    Idle,
    InsufficientCredits,
    LowConfidence,
    MissingPages,
    PagesProcessed,
    Processing,
    ProcessingStatus,
    Sentence,
)
from book_scanner.io import BookRepository, DatabaseManager
from book_scanner.services.extraction import (
    ExtractionResult,
    ExtractionService,
    InsufficientCreditsError,
    InvalidCredentialError,
    PageResult,
    RateLimitedError,
    TransientExtractionError,
)


def ensure_qt_app():
    if QCoreApplication.instance() is None:
        QCoreApplication([])


class FakeExtractionService(ExtractionService):
    """Returns scripted outcomes in call order; exceptions are raised."""

    def __init__(self, outcomes=None, title="Untitled"):
        self.outcomes = list(outcomes or [])
        self.title = title
        self.calls = []

    def extract(self, image_path, api_key):
        self.calls.append(image_path)
        outcome = self.outcomes.pop(0) if self.outcomes else page_result("Filler text.")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def extract_title(self, image_path, api_key):
        return self.title


def page_result(*texts, complete=True, label=None, confidence=0.95, chapter=None):
    sentences = [Sentence(t) for t in texts]
    if sentences and not complete:
        sentences[-1] = Sentence(sentences[-1].text, is_complete=False)
    return ExtractionResult(
        pages=[
            PageResult(
                sentences=sentences,
                full_text=" ".join(texts),
                page_label=label,
                confidence=confidence,
                chapter_title=chapter,
            )
        ]
    )


@pytest.fixture
def repository(tmp_path):
    manager = DatabaseManager(tmp_path / "library.db")
    manager.ensure_schema()
    yield BookRepository(manager.connection)
    manager.close()


@pytest.fixture
def book_id(repository):
    return repository.create_book("The Borrowers")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def extraction():
    return FakeExtractionService()


@pytest.fixture
def coordinator(repository, extraction, sleeps):
    ensure_qt_app()
    return OCRQueueCoordinator(
        repository,
        extraction,
        api_key_provider=lambda: "test-key",
        thread_pool=MagicMock(),
        sleep=sleeps.append,
    )


@pytest.fixture
def states(coordinator):
    recorded = []
    coordinator.subscribe(recorded.append)
    return recorded


def run_inline(coordinator):
    """Make the mocked pool run each worker on the calling thread."""
    coordinator.thread_pool.start.side_effect = lambda runnable: runnable.run()


def spread_result(left_label="8", right_label="9"):
    return ExtractionResult(
        pages=[
            PageResult([Sentence("Left side.")], "Left side.", page_label=left_label),
            PageResult([Sentence("Right side.")], "Right side.", page_label=right_label),
        ]
    )


def add_page(repository, book_id, name, page_number=None):
    if page_number is None:
        page_number = repository.get_next_page_number(book_id)
    return repository.insert_page(book_id, f"/captures/{name}.jpg", page_number)


def test_coordinator_fails_fast_on_missing_collaborators(repository, extraction):
    ensure_qt_app()
    with pytest.raises(ValueError):
        OCRQueueCoordinator(None, extraction, lambda: "key")
    with pytest.raises(ValueError):
        OCRQueueCoordinator(repository, None, lambda: "key")
    with pytest.raises(ValueError):
        OCRQueueCoordinator(repository, extraction, None)


class TestQueueOrder:
    def test_pages_are_processed_oldest_first_across_books(self, repository, extraction, coordinator):
        first_book = repository.create_book("Stuart Little")
        second_book = repository.create_book("Holes")
        add_page(repository, first_book, "a1")
        add_page(repository, second_book, "b1")
        add_page(repository, first_book, "a2")

        coordinator.process_queue()

        assert extraction.calls == ["/captures/a1.jpg", "/captures/b1.jpg", "/captures/a2.jpg"]
        assert repository.get_queued_pages() == []

    def test_publishes_processing_then_idle(self, repository, book_id, coordinator, states):
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        assert states[0] == Idle()
        assert Processing(page_id, book_id) in states
        assert states[-1] == Idle()

    def test_subscribe_replays_current_state(self, coordinator):
        received = []
        coordinator.subscribe(received.append)
        assert received == [Idle()]

    def test_empty_queue_publishes_idle(self, coordinator, states, extraction):
        coordinator.process_queue()
        assert extraction.calls == []
        assert states == [Idle(), Idle()]


class TestRetries:
    def test_transient_failures_back_off_then_succeed(self, repository, book_id, extraction, coordinator, sleeps):
        extraction.outcomes = [
            TransientExtractionError("timeout"),
            TransientExtractionError("timeout"),
            TransientExtractionError("timeout"),
            page_result("Finally readable."),
        ]
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        page = repository.get_page(page_id)
        assert sleeps == [2.0, 4.0, 8.0]
        assert page.processing_status == ProcessingStatus.COMPLETED
        assert page.retry_count == 3
        assert page.error_message is None
        assert page.text == "Finally readable."

    def test_page_fails_after_max_retries(self, repository, book_id, extraction, coordinator, sleeps, states):
        extraction.outcomes = [TransientExtractionError("connection reset")] * 4
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        page = repository.get_page(page_id)
        assert len(extraction.calls) == 4
        assert sleeps == [2.0, 4.0, 8.0]
        assert page.processing_status == ProcessingStatus.FAILED
        assert page.retry_count == 4
        assert page.error_message == "connection reset"
        assert Error(page_id, "connection reset") in states
        assert states[-1] == Idle()

    def test_invalid_key_fails_without_retry(self, repository, book_id, extraction, coordinator, sleeps, states):
        extraction.outcomes = [InvalidCredentialError("API key is invalid or expired")]
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        page = repository.get_page(page_id)
        assert len(extraction.calls) == 1
        assert sleeps == []
        assert page.processing_status == ProcessingStatus.FAILED
        assert page.retry_count == 0
        assert Error(page_id, "API key is invalid or expired") in states

    def test_rate_limit_cools_down_before_backoff(self, repository, book_id, extraction, coordinator, sleeps):
        extraction.outcomes = [RateLimitedError("slow down"), page_result("Done.")]
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        page = repository.get_page(page_id)
        assert sleeps == [5.0, 2.0]
        assert page.processing_status == ProcessingStatus.COMPLETED
        assert page.retry_count == 1

    def test_missing_api_key_is_retried_then_failed(self, repository, book_id, extraction, sleeps):
        ensure_qt_app()
        coordinator = OCRQueueCoordinator(
            repository, extraction, api_key_provider=lambda: None, thread_pool=MagicMock(), sleep=sleeps.append
        )
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        page = repository.get_page(page_id)
        assert extraction.calls == []
        assert page.processing_status == ProcessingStatus.FAILED
        assert page.error_message == "No API key available"

    def test_insufficient_credits_halts_queue(self, repository, book_id, extraction, coordinator, sleeps, states):
        extraction.outcomes = [InsufficientCreditsError("Insufficient credits: balance too low")]
        first = add_page(repository, book_id, "p1")
        second = add_page(repository, book_id, "p2")

        coordinator.process_queue()

        assert len(extraction.calls) == 1
        assert sleeps == []
        assert repository.get_page(first).processing_status == ProcessingStatus.FAILED
        assert repository.get_page(second).processing_status == ProcessingStatus.PENDING
        assert states[-1] == InsufficientCredits("Insufficient credits: balance too low")
        assert coordinator.queue_state == states[-1]
        assert not coordinator.is_processing
        coordinator.thread_pool.start.assert_not_called()

    def test_queue_continues_after_credits_are_restored(self, repository, book_id, extraction, coordinator, states):
        extraction.outcomes = [InsufficientCreditsError("no balance")]
        first = add_page(repository, book_id, "p1")
        second = add_page(repository, book_id, "p2")
        coordinator.process_queue()

        run_inline(coordinator)
        coordinator.retry_page(first)

        assert repository.get_page(first).processing_status == ProcessingStatus.COMPLETED
        assert repository.get_page(second).processing_status == ProcessingStatus.COMPLETED
        assert states[-1] == Idle()


class TestReconciliation:
    def test_sentence_cut_at_page_break_is_merged(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [
            page_result("It was late.", "The cat ran to the", complete=False, label="1"),
            page_result("barn.", "Then it slept.", label="2"),
        ]
        first = add_page(repository, book_id, "p1")
        second = add_page(repository, book_id, "p2")

        coordinator.process_queue()

        previous = repository.get_page(first)
        current = repository.get_page(second)
        assert [s.text for s in previous.sentences] == ["It was late."]
        assert previous.last_sentence_complete is True
        assert previous.text == "It was late."
        assert [s.text for s in current.sentences] == ["The cat ran to the barn.", "Then it slept."]
        assert current.text == "The cat ran to the barn. Then it slept."

    def test_merge_keeps_incomplete_flag_of_continuation(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [
            page_result("She opened the", complete=False),
            page_result("door and", complete=False),
        ]
        first = add_page(repository, book_id, "p1")
        second = add_page(repository, book_id, "p2")

        coordinator.process_queue()

        assert repository.get_page(first).sentences == []
        current = repository.get_page(second)
        assert current.sentences == [Sentence("She opened the door and", is_complete=False)]
        assert current.last_sentence_complete is False

    def test_complete_previous_page_is_untouched(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [page_result("One."), page_result("Two.")]
        first = add_page(repository, book_id, "p1")
        second = add_page(repository, book_id, "p2")

        coordinator.process_queue()

        assert repository.get_page(first).text == "One."
        assert repository.get_page(second).text == "Two."

    def test_two_page_capture_creates_extra_page(self, repository, book_id, extraction, coordinator, states):
        extraction.outcomes = [
            ExtractionResult(
                pages=[
                    PageResult([Sentence("Left side.")], "Left side.", page_label="8"),
                    PageResult([Sentence("Right side.")], "Right side.", page_label="9"),
                ]
            )
        ]
        page_id = add_page(repository, book_id, "spread")

        coordinator.process_queue()

        pages = repository.get_pages_for_book(book_id)
        assert [p.page_number for p in pages] == [1, 2]
        assert pages[0].id == page_id
        assert pages[0].text == "Left side."
        assert pages[1].text == "Right side."
        assert pages[1].processing_status == ProcessingStatus.COMPLETED
        assert pages[1].detected_page_label == "9"
        assert PagesProcessed(book_id, [8, 9], 10) in states

    def test_non_numeric_label_has_no_next_expected(self, repository, book_id, extraction, coordinator, states):
        extraction.outcomes = [page_result("Preface text.", label="xii")]
        add_page(repository, book_id, "p1")

        coordinator.process_queue()

        assert PagesProcessed(book_id, [None], None) in states

    def test_empty_result_completes_page(self, repository, book_id, extraction, coordinator, states):
        extraction.outcomes = [ExtractionResult()]
        page_id = add_page(repository, book_id, "blank")

        coordinator.process_queue()

        page = repository.get_page(page_id)
        assert page.processing_status == ProcessingStatus.COMPLETED
        assert page.text == ""
        assert PagesProcessed(book_id, [], None) in states

    def test_gap_in_page_labels_is_reported(self, repository, book_id, extraction, coordinator, states):
        extraction.outcomes = [page_result("Before.", label="10"), page_result("After.", label="13")]
        add_page(repository, book_id, "p1")
        add_page(repository, book_id, "p2")

        coordinator.process_queue()

        gap = MissingPages(book_id, 11, 13)
        assert gap in states
        assert states.index(PagesProcessed(book_id, [13], 14)) < states.index(gap)

    def test_consecutive_labels_report_no_gap(self, repository, book_id, extraction, coordinator, states):
        extraction.outcomes = [page_result("Before.", label="10"), page_result("After.", label="11")]
        add_page(repository, book_id, "p1")
        add_page(repository, book_id, "p2")

        coordinator.process_queue()

        assert not any(isinstance(s, MissingPages) for s in states)

    @pytest.mark.parametrize("previous_label", [None, "xii"])
    def test_previous_page_without_numeric_label_reports_no_gap(
        self, repository, book_id, extraction, coordinator, states, previous_label
    ):
        extraction.outcomes = [page_result("Before.", label=previous_label), page_result("After.", label="13")]
        add_page(repository, book_id, "p1")
        add_page(repository, book_id, "p2")

        coordinator.process_queue()

        assert not any(isinstance(s, MissingPages) for s in states)
        assert PagesProcessed(book_id, [13], 14) in states

    def test_spread_followed_by_queued_capture(self, repository, book_id, extraction, coordinator, states):
        extraction.outcomes = [
            ExtractionResult(
                pages=[
                    PageResult([Sentence("Left side.")], "Left side.", page_label="8"),
                    PageResult(
                        [Sentence("Right side."), Sentence("The cat ran to the", is_complete=False)],
                        "Right side. The cat ran to the",
                        page_label="9",
                    ),
                ]
            ),
            page_result("barn.", label="10"),
        ]
        spread = add_page(repository, book_id, "spread")
        following = add_page(repository, book_id, "next")

        coordinator.process_queue()

        pages = repository.get_pages_for_book(book_id)
        assert [(p.page_number, p.detected_page_label) for p in pages] == [(1, "8"), (2, "9"), (3, "10")]
        assert pages[0].id == spread
        assert pages[2].id == following
        assert pages[1].text == "Right side."
        assert pages[2].text == "The cat ran to the barn."
        assert not any(isinstance(s, MissingPages) for s in states)

    def test_recaptured_spread_updates_its_extra_page(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [spread_result(), page_result("After.", label="10"), spread_result()]
        spread = add_page(repository, book_id, "spread")
        add_page(repository, book_id, "next")
        coordinator.process_queue()
        right = repository.get_page_by_number(book_id, 2)

        run_inline(coordinator)
        coordinator.recapture_page(spread)

        pages = repository.get_pages_for_book(book_id)
        assert [p.page_number for p in pages] == [1, 2, 3]
        assert pages[1].id == right.id
        assert [p.text for p in pages] == ["Left side.", "Right side.", "After."]

    def test_recapture_with_fewer_pages_removes_extra_page(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [spread_result(), page_result("After.", label="10"), page_result("Only left.", label="8")]
        spread = add_page(repository, book_id, "spread")
        following = add_page(repository, book_id, "next")
        coordinator.process_queue()

        run_inline(coordinator)
        coordinator.recapture_page(spread)

        pages = repository.get_pages_for_book(book_id)
        assert [(p.id, p.page_number) for p in pages] == [(spread, 1), (following, 2)]
        assert pages[0].text == "Only left."

    def test_retry_after_partial_write_does_not_duplicate_pages(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [spread_result(), spread_result()]
        page_id = add_page(repository, book_id, "spread")
        coordinator.process_queue()
        repository.update_processing_status(page_id, ProcessingStatus.FAILED, "interrupted")

        run_inline(coordinator)
        coordinator.retry_page(page_id)

        pages = repository.get_pages_for_book(book_id)
        assert [p.text for p in pages] == ["Left side.", "Right side."]

    def test_low_confidence_is_reported_before_pages_processed(
        self, repository, book_id, extraction, coordinator, states
    ):
        extraction.outcomes = [page_result("Blurry words.", label="4", confidence=0.5)]
        add_page(repository, book_id, "p1")

        coordinator.process_queue()

        warning = LowConfidence(book_id, "4", 0.5)
        assert warning in states
        assert states.index(warning) < states.index(PagesProcessed(book_id, [4], 5))

    def test_chapter_carries_forward(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [
            page_result("Opening.", chapter="Chapter One"),
            page_result("More story."),
        ]
        first = add_page(repository, book_id, "p1")
        second = add_page(repository, book_id, "p2")

        coordinator.process_queue()

        assert repository.get_page(first).resolved_chapter == "Chapter One"
        assert repository.get_page(second).resolved_chapter == "Chapter One"
        assert repository.get_page(second).chapter_title is None

    def test_book_title_header_is_not_a_chapter(self, repository, book_id, extraction, coordinator):
        extraction.outcomes = [page_result("Opening.", chapter="The Borrowers")]
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        assert repository.get_page(page_id).resolved_chapter is None


class TestCachingNotifier:
    def test_sentences_are_offered_for_caching(self, repository, book_id, extraction, sleeps):
        ensure_qt_app()
        notifier = MagicMock()
        coordinator = OCRQueueCoordinator(
            repository,
            extraction,
            lambda: "key",
            caching_notifier=notifier,
            thread_pool=MagicMock(),
            sleep=sleeps.append,
        )
        extraction.outcomes = [page_result("Hello there.", "General Kenobi.")]
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        notifier.queue_for_caching.assert_called_once_with(["Hello there.", "General Kenobi."], f"{page_id}_0")

    def test_notifier_failure_does_not_fail_page(self, repository, book_id, extraction, sleeps):
        ensure_qt_app()
        notifier = MagicMock()
        notifier.queue_for_caching.side_effect = RuntimeError("cache offline")
        coordinator = OCRQueueCoordinator(
            repository,
            extraction,
            lambda: "key",
            caching_notifier=notifier,
            thread_pool=MagicMock(),
            sleep=sleeps.append,
        )
        extraction.outcomes = [page_result("Still stored.")]
        page_id = add_page(repository, book_id, "p1")

        coordinator.process_queue()

        page = repository.get_page(page_id)
        assert page.processing_status == ProcessingStatus.COMPLETED
        assert page.retry_count == 0
        assert sleeps == []


class TestBackgroundWorker:
    def test_queue_page_starts_single_worker(self, repository, book_id, coordinator):
        first = coordinator.queue_page(book_id, "/captures/p1.jpg")
        second = coordinator.queue_page(book_id, "/captures/p2.jpg")

        assert coordinator.thread_pool.start.call_count == 1
        assert coordinator.is_processing
        assert repository.get_page(first).page_number == 1
        assert repository.get_page(second).page_number == 2
        assert [p.id for p in coordinator.pending_pages()] == [first, second]

    def test_process_queue_is_noop_while_worker_active(self, repository, book_id, extraction, coordinator):
        coordinator.queue_page(book_id, "/captures/p1.jpg")
        coordinator.process_queue()
        assert extraction.calls == []

    def test_stop_prevents_claiming_pages(self, repository, book_id, extraction, coordinator):
        add_page(repository, book_id, "p1")
        coordinator.stop()
        coordinator._drain_queue()
        assert extraction.calls == []

    def test_resume_recovers_interrupted_pages(self, repository, book_id, coordinator):
        page_id = add_page(repository, book_id, "p1")
        repository.update_processing_status(page_id, ProcessingStatus.PROCESSING)

        assert coordinator.resume() is True
        assert repository.get_page(page_id).processing_status == ProcessingStatus.PENDING
        coordinator.thread_pool.start.assert_called_once()

    def test_worker_thread_delivers_states(self, repository, book_id, extraction):
        ensure_qt_app()
        pool = QThreadPool()
        coordinator = OCRQueueCoordinator(
            repository, extraction, lambda: "key", thread_pool=pool, sleep=lambda seconds: None
        )
        received = []
        coordinator.subscribe(received.append)

        page_id = coordinator.queue_page(book_id, "/captures/p1.jpg")

        assert pool.waitForDone(5000)
        QCoreApplication.processEvents()
        assert repository.get_page(page_id).processing_status == ProcessingStatus.COMPLETED
        assert Processing(page_id, book_id) in received
        assert received[-1] == Idle()
        assert not coordinator.is_processing

    def test_backoff_does_not_block_queueing(self, repository, book_id):
        ensure_qt_app()
        sleeping = threading.Event()
        wake = threading.Event()

        def blocking_sleep(seconds):
            sleeping.set()
            wake.wait(5)

        extraction = FakeExtractionService([TransientExtractionError("timeout")])
        pool = QThreadPool()
        coordinator = OCRQueueCoordinator(repository, extraction, lambda: "key", thread_pool=pool, sleep=blocking_sleep)

        first = coordinator.queue_page(book_id, "/captures/p1.jpg")
        assert sleeping.wait(5)
        second = coordinator.queue_page(book_id, "/captures/p2.jpg")

        assert coordinator.is_processing
        assert repository.get_page(second).processing_status == ProcessingStatus.PENDING
        wake.set()
        assert pool.waitForDone(5000)
        QCoreApplication.processEvents()

        assert repository.get_page(first).processing_status == ProcessingStatus.COMPLETED
        assert repository.get_page(first).retry_count == 1
        assert repository.get_page(second).processing_status == ProcessingStatus.COMPLETED

    def test_page_queued_while_worker_finishes_is_processed(self, repository, book_id, extraction, monkeypatch):
        ensure_qt_app()
        pool = QThreadPool()
        coordinator = OCRQueueCoordinator(
            repository, extraction, lambda: "key", thread_pool=pool, sleep=lambda seconds: None
        )
        late = []
        next_pending = repository.get_next_pending_page

        def queue_when_empty():
            page = next_pending()
            if page is None and not late:
                # Lands after the worker saw an empty queue, before it let go of the run token.
                late.append(coordinator.queue_page(book_id, "/captures/late.jpg"))
            return page

        monkeypatch.setattr(repository, "get_next_pending_page", queue_when_empty)

        first = coordinator.queue_page(book_id, "/captures/p1.jpg")

        assert pool.waitForDone(5000)
        QCoreApplication.processEvents()
        assert repository.get_page(first).processing_status == ProcessingStatus.COMPLETED
        assert repository.get_page(late[0]).processing_status == ProcessingStatus.COMPLETED
        assert extraction.calls == ["/captures/p1.jpg", "/captures/late.jpg"]


class TestPageActions:
    def test_retry_page_requires_failed_status(self, repository, book_id, coordinator):
        page_id = add_page(repository, book_id, "p1")
        with pytest.raises(RuntimeError, match="Only failed pages"):
            coordinator.retry_page(page_id)

    def test_retry_page_resets_budget(self, repository, book_id, coordinator):
        page_id = add_page(repository, book_id, "p1")
        repository.update_processing_status_with_retry(page_id, ProcessingStatus.FAILED, 4, "timeout")

        page = coordinator.retry_page(page_id)

        assert page.processing_status == ProcessingStatus.PENDING
        assert page.retry_count == 0
        assert page.error_message is None
        coordinator.thread_pool.start.assert_called_once()

    def test_recapture_replaces_image(self, repository, book_id, coordinator, tmp_path):
        old_image = tmp_path / "old.jpg"
        old_image.write_bytes(b"old")
        page_id = repository.insert_page(book_id, str(old_image), 1)
        repository.update_processing_status(page_id, ProcessingStatus.COMPLETED)

        page = coordinator.recapture_page(page_id, str(tmp_path / "new.jpg"))

        assert not old_image.exists()
        assert page.image_path == str(tmp_path / "new.jpg")
        assert page.processing_status == ProcessingStatus.PENDING

    def test_create_book_from_cover(self, repository, extraction, coordinator):
        extraction.title = "Matilda"
        book_id = coordinator.create_book_from_cover("/captures/cover.jpg")

        book = repository.get_book(book_id)
        assert book.title == "Matilda"
        assert book.cover_image_path == "/captures/cover.jpg"
