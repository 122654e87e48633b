"""Unit tests for segment translation, retry and cache behaviour."""

import threading

import pytest

from src.models.core import SegmentStatus, SubtitleEntry, TaskStatus
from src.services.cache_service import CacheService
from src.services.error_handler import ConfigurationError, TransportError
from src.services.segmenter import Segmenter
from src.services.task_manager import TaskManager
from src.services.task_store import InMemoryTaskStore
from src.services.translation_service import SegmentTranslator, salvage_partial
from tests.fakes import FakeTransport, fast_config, make_track, translated


class TestSegmentTranslator:
    """Tests for translating a single claimed segment."""

    def setup_method(self):
        self.sleeps = []
        self.store = InMemoryTaskStore()
        self.entries = make_track(10)

    def _build(self, transport, **overrides):
        config = fast_config(**overrides)
        self.manager = TaskManager(self.store, config=config)
        self.cache = CacheService(self.store)
        self.translator = SegmentTranslator(
            transport, self.cache, self.manager, config, sleep=self.sleeps.append
        )
        task = self.manager.create_task("video-1", self.entries)
        self.manager.transition(task.id, TaskStatus.SEGMENTING)
        self.manager.record_segments(task.id, Segmenter(max_entries=4).segment(self.entries))
        self.manager.transition(task.id, TaskStatus.TRANSLATING)
        self.task_id = task.id

    def _translate(self, index):
        task = self.manager.get_task(self.task_id)
        segment = self.manager.claim_segment(self.task_id, index)
        return self.translator.translate_segment(task, segment)

    def teardown_method(self):
        self.translator.shutdown()

    def test_successful_translation_completes_and_caches(self):
        transport = FakeTransport()
        self._build(transport)

        segment = self._translate(0)

        assert segment.status == SegmentStatus.COMPLETED
        assert [e.text for e in segment.result] == [f"[zh] line {i}." for i in range(4)]
        assert transport.call_count == 1
        assert len(self.store.list_cache_entries()) == 1

    def test_cache_hit_skips_transport(self):
        transport = FakeTransport()
        self._build(transport)
        self.cache.store_segment(self.entries[0:4], self.manager.get_task(self.task_id).translation_config,
                                 translated(self.entries[0:4]))

        segment = self._translate(0)

        assert segment.status == SegmentStatus.COMPLETED
        assert segment.cache_hit
        assert transport.call_count == 0

    def test_alignment_mismatch_is_retried(self):
        attempts = []

        def short_then_full(entries):
            attempts.append(len(entries))
            if len(attempts) == 1:
                return translated(entries)[:-1]
            return translated(entries)

        self._build(FakeTransport(short_then_full))

        segment = self._translate(0)

        assert segment.status == SegmentStatus.COMPLETED
        assert segment.retry_count == 1
        assert len(attempts) == 2
        assert len(self.sleeps) == 1, "A backoff wait should precede the retry"

    def test_retry_budget_exhaustion_keeps_partial_result(self):
        transport = FakeTransport(lambda entries: translated(entries)[:2])
        self._build(transport)

        segment = self._translate(1)

        assert segment.status == SegmentStatus.FAILED
        assert segment.retry_count == 3
        assert transport.call_count == 3
        assert "expected 4 entries, got 2" in segment.error_message
        assert [e.text for e in segment.partial_result] == [
            "[zh] line 4.", "[zh] line 5.", "line 6.", "line 7.",
        ]
        assert self.store.list_cache_entries() == []

    def test_transport_errors_are_retried(self):
        def fail_twice(entries):
            if transport.call_count <= 2:
                raise TransportError("rate limited")
            return translated(entries)

        transport = FakeTransport(fail_twice)
        self._build(transport)

        segment = self._translate(0)

        assert segment.status == SegmentStatus.COMPLETED
        assert segment.retry_count == 2

    def test_timeout_counts_as_failed_attempt(self):
        release = threading.Event()

        def hang(entries):
            release.wait(5)
            return translated(entries)

        self._build(FakeTransport(hang), segment_timeout_seconds=0.05, max_retries=2)
        try:
            segment = self._translate(0)
        finally:
            release.set()

        assert segment.status == SegmentStatus.FAILED
        assert segment.retry_count == 2
        assert "timed out" in segment.error_message

    def test_configuration_error_fails_fast(self):
        def no_key(entries):
            raise ConfigurationError("missing API key")

        transport = FakeTransport(no_key)
        self._build(transport)

        with pytest.raises(ConfigurationError):
            self._translate(0)

        assert transport.call_count == 1
        assert self.store.get_segment(self.task_id, 0).retry_count == 0

    def test_result_after_cancel_is_discarded(self):
        def cancel_during_call(entries):
            self.manager.cancel_task(self.task_id)
            return translated(entries)

        self._build(FakeTransport(cancel_during_call))

        segment = self._translate(0)

        assert segment.status == SegmentStatus.TRANSLATING
        assert self.store.get_segment(self.task_id, 0).result is None
        assert self.store.list_cache_entries() == []

    def test_cancel_waits_for_cache_store_and_completion(self):
        self._build(FakeTransport())
        store_segment = self.cache.store_segment
        cancellers = []
        blocked = []

        def store_while_cancelling(source, config, output):
            canceller = threading.Thread(target=self.manager.cancel_task, args=(self.task_id,))
            canceller.start()
            canceller.join(0.2)
            blocked.append(canceller.is_alive())
            cancellers.append(canceller)
            return store_segment(source, config, output)

        self.cache.store_segment = store_while_cancelling

        segment = self._translate(0)
        cancellers[0].join(5)

        assert blocked == [True], "A cancel must not land between the check and the cache write"
        assert segment.status == SegmentStatus.COMPLETED
        assert len(self.store.list_cache_entries()) == 1
        assert self.manager.get_task(self.task_id).status == TaskStatus.CANCELLED

    def test_accept_result_discards_after_cancel(self):
        self._build(FakeTransport())
        claimed = self.manager.claim_segment(self.task_id, 0)
        self.manager.cancel_task(self.task_id)
        stored = []

        accepted = self.manager.accept_result(
            self.task_id, claimed.segment_index, translated(self.entries[0:4]),
            before_complete=lambda: stored.append(True),
        )

        assert accepted is None
        assert stored == []

    def test_transport_timings_are_replaced_by_source_timings(self):
        def shifted(entries):
            return [SubtitleEntry(start=e.start + 0.7, end=e.end + 0.9, text=f"[zh] {e.text}") for e in entries]

        self._build(FakeTransport(shifted))

        segment = self._translate(0)

        assert [(e.start, e.end) for e in segment.result] == [(e.start, e.end) for e in self.entries[0:4]]
        assert [e.text for e in segment.result] == [f"[zh] line {i}." for i in range(4)]
        cached = self.cache.lookup_segment(self.entries[0:4], self.manager.get_task(self.task_id).translation_config)
        assert cached == segment.result

    def test_pause_after_claim_releases_segment(self):
        transport = FakeTransport()
        self._build(transport)
        task = self.manager.get_task(self.task_id)
        claimed = self.manager.claim_segment(self.task_id, 0)
        self.manager.pause_task(self.task_id)

        segment = self.translator.translate_segment(task, claimed)

        assert segment.status == SegmentStatus.PENDING
        assert segment.retry_count == 0
        assert transport.call_count == 0
        assert self.manager.claim_segment(self.task_id, 0) is not None, "Released segment can be claimed again"

    def test_backoff_delay_grows_and_is_capped(self):
        self._build(FakeTransport(), backoff_base_seconds=1.0, backoff_max_seconds=30.0)

        assert 1.0 <= self.translator.backoff_delay(1) <= 2.0
        assert 4.0 <= self.translator.backoff_delay(3) <= 5.0
        assert self.translator.backoff_delay(10) == 30.0


class TestSalvagePartial:
    """Unit tests for best-effort partial results."""

    def test_missing_lines_keep_source_text(self):
        source = make_track(3)
        output = [SubtitleEntry(start=9.0, end=9.5, text="一")]

        partial = salvage_partial(source, output)

        assert [e.text for e in partial] == ["一", "line 1.", "line 2."]
        assert [e.start for e in partial] == [e.start for e in source]

    def test_surplus_lines_are_dropped(self):
        source = make_track(1)
        output = translated(make_track(3))

        assert len(salvage_partial(source, output)) == 1

    def test_empty_output_gives_nothing(self):
        assert salvage_partial(make_track(2), []) is None
