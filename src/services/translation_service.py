"""Segment translation with caching, retry and exponential backoff."""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, List, Optional

from .base import BaseTranslationTransport
from .cache_service import CacheService, retime
from .error_handler import (
    AlignmentError,
    ConfigurationError,
    RetryExhaustedError,
    SegmentTimeoutError,
    is_retryable,
)
from .task_manager import TaskManager
from ..models.core import (
    PipelineConfig,
    SegmentStatus,
    SegmentTask,
    SubtitleEntry,
    TranslationConfig,
    TranslationTask,
)


logger = logging.getLogger(__name__)


def salvage_partial(
    source: List[SubtitleEntry],
    output: List[SubtitleEntry]
) -> Optional[List[SubtitleEntry]]:
    """Best-effort result aligned to the source from a misaligned response.

    Lines are paired by position; source lines without a counterpart keep
    their original text. Returns None when nothing was translated.
    """
    if not output:
        return None
    return [
        SubtitleEntry(
            start=src.start,
            end=src.end,
            text=output[i].text if i < len(output) else src.text,
        )
        for i, src in enumerate(source)
    ]


class SegmentTranslator:
    """Translates claimed segments through the transport.

    Every call is bounded by a per-call timeout and by a semaphore shared
    across all tasks so that the number of concurrent LLM requests never
    exceeds max_parallel_llm_calls.
    """

    def __init__(
        self,
        transport: BaseTranslationTransport,
        cache: CacheService,
        manager: TaskManager,
        config: Optional[PipelineConfig] = None,
        llm_semaphore: Optional[threading.BoundedSemaphore] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.transport = transport
        self.cache = cache
        self.manager = manager
        self.config = config or PipelineConfig()
        self.llm_semaphore = llm_semaphore or threading.BoundedSemaphore(self.config.max_parallel_llm_calls)
        self.sleep = sleep
        self._call_executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_parallel_llm_calls),
            thread_name_prefix="llm-call",
        )

    def backoff_delay(self, retry_count: int) -> float:
        """Exponential backoff with jitter, capped at backoff_max_seconds."""
        base = self.config.backoff_base_seconds
        delay = base * (2 ** max(0, retry_count - 1)) + random.uniform(0, base)
        return min(self.config.backoff_max_seconds, delay)

    def translate_segment(self, task: TranslationTask, segment: SegmentTask) -> SegmentTask:
        """Translate a segment already claimed by the calling worker.

        Returns:
            The segment record after the last transition made here

        Raises:
            ConfigurationError: when the transport cannot be used at all
        """
        index = segment.segment_index
        source = task.source_entries[segment.start_entry:segment.start_entry + segment.subtitle_count]
        config = task.translation_config

        cached = self.cache.lookup_segment(source, config)
        if cached is not None:
            return self.manager.complete_segment(task.id, index, cached, 0, cache_hit=True)

        while True:
            if not self.manager.is_accepting_results(task.id):
                logger.info(f"Task {task.id} no longer active, abandoning segment {index}")
                return segment
            if not self.manager.is_scheduling(task.id):
                # Paused after the claim; the segment is picked up again on continue.
                return self.manager.release_segment(task.id, index)

            attempt = segment.retry_count + 1
            logger.info(
                f"Translating segment {index} of task {task.id} "
                f"({len(source)} entries, attempt {attempt}/{self.config.max_retries})"
            )
            started = time.monotonic()
            try:
                output = self._call_transport(source, task.keywords.final, config)
                if len(output) != len(source):
                    raise AlignmentError(len(source), len(output), index, output=output)
            except ConfigurationError:
                raise
            except Exception as e:
                if not is_retryable(e):
                    raise
                segment = self._record_failure(task, segment, source, e)
                if segment.status != SegmentStatus.RETRYING:
                    return segment

                delay = self.backoff_delay(segment.retry_count)
                logger.info(f"Retrying segment {index} in {delay:.2f}s")
                self.sleep(delay)

                if not self.manager.is_accepting_results(task.id):
                    return segment
                reclaimed = self.manager.claim_segment(task.id, index, [SegmentStatus.RETRYING])
                if reclaimed is None:
                    return segment
                segment = reclaimed
                continue

            output = retime(output, source)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            completed = self.manager.accept_result(
                task.id, index, output, elapsed_ms,
                before_complete=lambda: self.cache.store_segment(source, config, output),
            )
            if completed is None:
                logger.info(f"Discarding late result for segment {index} of task {task.id}")
                return segment
            return completed

    def _record_failure(
        self,
        task: TranslationTask,
        segment: SegmentTask,
        source: List[SubtitleEntry],
        error: Exception
    ) -> SegmentTask:
        partial = None
        if isinstance(error, AlignmentError):
            partial = salvage_partial(source, error.output)

        updated = self.manager.fail_segment_attempt(task.id, segment.segment_index, error, partial)
        logger.warning(
            f"Segment {segment.segment_index} of task {task.id} attempt "
            f"{updated.retry_count}/{self.config.max_retries} failed: {error}"
        )
        if self.manager.is_terminal_failure(updated):
            exhausted = RetryExhaustedError(segment.segment_index, updated.retry_count, str(error))
            logger.error(str(exhausted))
        return updated

    def _call_transport(
        self,
        source: List[SubtitleEntry],
        keywords: List[str],
        config: TranslationConfig
    ) -> List[SubtitleEntry]:
        timeout = self.config.segment_timeout_seconds
        self.llm_semaphore.acquire()
        try:
            future = self._call_executor.submit(self.transport.translate, source, keywords, config)
        except Exception:
            self.llm_semaphore.release()
            raise
        # The slot is held until the call really returns, even after a timeout.
        future.add_done_callback(lambda _: self.llm_semaphore.release())

        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError as e:
            raise SegmentTimeoutError(f"Segment translation timed out after {timeout}s") from e

    def shutdown(self) -> None:
        self._call_executor.shutdown(wait=False)
