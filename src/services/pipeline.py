"""Translation pipeline orchestration.

A task moves queued -> segmenting -> translating -> stitching -> optimizing ->
completed. Each stage reads the persisted task record, does its work and
makes one transition, so a run can stop at any stage (pause, cancel, stall or
crash) and a later run picks up from the persisted status.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .base import (
    BaseKeywordGenerator,
    BaseNotificationSink,
    BaseStyleService,
    BaseTaskStore,
    BaseTranslationTransport,
)
from .cache_service import CacheService
from .error_handler import ConfigurationError, ErrorHandler, ErrorSeverity
from .keyword_extractor import KeywordExtractor
from .notification_service import NotificationEmitter
from .segmenter import Segmenter
from .stall_supervisor import StallSupervisor
from .stitcher import Stitcher
from .style_adjuster import StyleAdjuster
from .task_manager import TaskManager
from .task_store import InMemoryTaskStore
from .translation_service import SegmentTranslator
from ..models.core import (
    InvalidTransitionError,
    MergeOperation,
    PipelineConfig,
    PipelineResult,
    SegmentStatus,
    SegmentTask,
    SubtitleEntry,
    TaskAction,
    TaskStatus,
    TranslationConfig,
    TranslationProgress,
    TranslationTask,
)


logger = logging.getLogger(__name__)

# How often a run re-checks segments still owned by an earlier run of the task.
IN_FLIGHT_POLL_SECONDS = 0.05


class _HeartbeatTicker:
    """Refreshes a task's heartbeat on a fixed interval while a run is alive."""

    def __init__(self, manager: TaskManager, task_id: str, interval_seconds: float):
        self.manager = manager
        self.task_id = task_id
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{task_id[:8]}", daemon=True
        )

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            if not self.manager.heartbeat(self.task_id):
                return

    def __enter__(self) -> '_HeartbeatTicker':
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop_event.set()
        self._thread.join()


class TranslationPipeline:
    """Runs translation tasks end to end.

    Example:
        pipeline = TranslationPipeline(GeminiClient(api_key))
        task = pipeline.submit("video-1", entries, title="...")
        result = pipeline.run(task.id)
    """

    def __init__(
        self,
        transport: BaseTranslationTransport,
        store: Optional[BaseTaskStore] = None,
        config: Optional[PipelineConfig] = None,
        style_service: Optional[BaseStyleService] = None,
        keyword_generator: Optional[BaseKeywordGenerator] = None,
        notification_sinks: Optional[Iterable[BaseNotificationSink]] = None,
        error_handler: Optional[ErrorHandler] = None,
        llm_semaphore: Optional[threading.BoundedSemaphore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now
    ):
        if transport is None:
            raise ConfigurationError("A translation transport is required")

        self.config = config or PipelineConfig()
        self.store = store or InMemoryTaskStore()
        self.error_handler = error_handler or ErrorHandler()
        self.emitter = NotificationEmitter(self.store, notification_sinks)
        self.manager = TaskManager(self.store, self.emitter, self.config, clock)
        self.cache = CacheService(self.store)
        self.segmenter = Segmenter(
            self.config.max_segment_characters,
            self.config.max_segment_entries,
            self.config.estimated_tokens_per_char,
        )
        self.translator = SegmentTranslator(
            transport, self.cache, self.manager, self.config, llm_semaphore, sleep
        )
        self.stitcher = Stitcher(self.config.boundary_gap_tolerance, self.config.allow_partial_results)
        self.style_adjuster = StyleAdjuster(style_service)
        self.keyword_extractor = KeywordExtractor(keyword_generator, self.error_handler)
        self.supervisor = StallSupervisor(self.manager)

        self._threads: Dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()
        self._merge_operations: Dict[str, List[MergeOperation]] = {}

    # Submission

    def submit(
        self,
        video_id: str,
        entries: List[SubtitleEntry],
        title: str = "",
        user_keywords: Optional[List[str]] = None,
        translation_config: Optional[TranslationConfig] = None
    ) -> TranslationTask:
        """Create a queued task for a subtitle track."""
        keywords = self.keyword_extractor.extract(title, user_keywords)
        return self.manager.create_task(video_id, entries, translation_config, keywords)

    def translate(
        self,
        video_id: str,
        entries: List[SubtitleEntry],
        title: str = "",
        user_keywords: Optional[List[str]] = None,
        translation_config: Optional[TranslationConfig] = None
    ) -> PipelineResult:
        """Submit and run a task on the calling thread."""
        task = self.submit(video_id, entries, title, user_keywords, translation_config)
        return self.run(task.id)

    # Running

    def run(self, task_id: str) -> PipelineResult:
        """Drive a task through its remaining stages on the calling thread.

        Returns when the task completes, fails, is cancelled or is paused.

        Raises:
            ConfigurationError: after marking the task failed, when the
                transport cannot be used
        """
        stages = {
            TaskStatus.QUEUED: self._start_segmenting,
            TaskStatus.SEGMENTING: self._segment,
            TaskStatus.TRANSLATING: self._translate,
            TaskStatus.STITCHING: self._stitch,
            TaskStatus.OPTIMIZING: self._optimize,
        }

        with _HeartbeatTicker(self.manager, task_id, self.config.heartbeat_interval_seconds):
            while True:
                task = self.manager.get_task(task_id)
                stage = stages.get(task.status)
                if stage is None:
                    break
                try:
                    stage(task)
                except InvalidTransitionError as e:
                    # Paused, cancelled or stalled while the stage was running.
                    logger.info(f"Task {task_id} changed state during {task.status.value}: {e}")
                except ConfigurationError as e:
                    self._fail(task_id, str(e))
                    raise
                except Exception as e:
                    self.error_handler.log_error(
                        e,
                        severity=ErrorSeverity.ERROR,
                        context={'task_id': task_id, 'stage': task.status.value},
                    )
                    self._fail(task_id, f"{type(e).__name__}: {e}")

        return self._result(task_id)

    def start(self, task_id: str) -> threading.Thread:
        """Run a task on a background thread."""
        thread = threading.Thread(
            target=self._run_in_background, args=(task_id,), name=f"task-{task_id[:8]}", daemon=True
        )
        with self._threads_lock:
            self._threads[task_id] = thread
        thread.start()
        return thread

    def _run_in_background(self, task_id: str) -> None:
        try:
            self.run(task_id)
        except ConfigurationError as e:
            logger.error(f"Task {task_id} failed on configuration: {e}")

    def wait(self, task_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for a background run; returns False if it is still running."""
        with self._threads_lock:
            thread = self._threads.get(task_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _fail(self, task_id: str, message: str) -> None:
        task = self.manager.get_task(task_id)
        if task.status.is_terminal:
            return
        self.manager.transition(task_id, TaskStatus.FAILED, error_message=message)

    # Stages

    def _start_segmenting(self, task: TranslationTask) -> None:
        self.manager.transition(task.id, TaskStatus.SEGMENTING)

    def _segment(self, task: TranslationTask) -> None:
        if not self.manager.get_segments(task.id):
            segments = self.segmenter.segment(task.source_entries)
            if not segments:
                self.manager.update_result(task.id, [], [])
                self.manager.transition(task.id, TaskStatus.COMPLETED, phase="Completed (empty track)")
                return
            self.manager.record_segments(task.id, segments)
        self.manager.transition(task.id, TaskStatus.TRANSLATING)

    def _translate(self, task: TranslationTask) -> None:
        self._translate_all(task.id)
        if not self.manager.is_scheduling(task.id):
            return

        segments = self.manager.get_segments(task.id)
        failed = [s for s in segments if self.manager.is_terminal_failure(s)]
        if failed and not self.config.allow_partial_results:
            # The failed task still carries the best-effort track.
            stitched = self.stitcher.stitch(segments, task.source_entries, use_partials=True)
            self.manager.update_result(task.id, stitched.entries, stitched.missing_segments)
            self.manager.transition(
                task.id,
                TaskStatus.FAILED,
                error_message=self._failure_message(failed, len(segments)),
            )
            return
        self.manager.transition(task.id, TaskStatus.STITCHING)

    def _stitch(self, task: TranslationTask) -> None:
        stitched = self.stitcher.stitch(self.manager.get_segments(task.id), task.source_entries)
        self.manager.update_result(task.id, stitched.entries, stitched.missing_segments)

        style = self.config.style
        if style.enable_style_rewrite or style.enable_subtitle_merging or style.enable_complete_sentence_merging:
            self.manager.transition(task.id, TaskStatus.OPTIMIZING)
        else:
            self.manager.transition(task.id, TaskStatus.COMPLETED)

    def _optimize(self, task: TranslationTask) -> None:
        adjusted = self.style_adjuster.adjust(task.result_entries, self.config.style, task.keywords.final)
        self._merge_operations[task.id] = adjusted.merge_operations
        self.manager.update_result(task.id, adjusted.adjusted_entries, task.missing_segments)
        self.manager.transition(task.id, TaskStatus.COMPLETED)

    @staticmethod
    def _failure_message(failed: List[SegmentTask], total: int) -> str:
        details = [
            f"Segment {s.segment_index + 1}/{total} (index {s.segment_index}) failed after "
            f"{s.retry_count} attempts: {s.error_message}"
            for s in failed
        ]
        return "; ".join(details)

    # Segment scheduling

    def _translate_all(self, task_id: str) -> None:
        """Translate pending segments until none are left or scheduling stops."""
        while self.manager.is_scheduling(task_id):
            segments = self.manager.get_segments(task_id)
            pending = [s.segment_index for s in segments if s.status == SegmentStatus.PENDING]
            if pending:
                self._run_workers(task_id, pending)
                continue

            in_flight = [
                s for s in segments
                if s.status in (SegmentStatus.TRANSLATING, SegmentStatus.RETRYING)
                or (s.status == SegmentStatus.FAILED and not self.manager.is_terminal_failure(s))
            ]
            if not in_flight:
                return
            time.sleep(IN_FLIGHT_POLL_SECONDS)

    def _run_workers(self, task_id: str, indexes: List[int]) -> None:
        task = self.manager.get_task(task_id)
        queue = iter(indexes)
        queue_lock = threading.Lock()
        abort = threading.Event()

        def next_index() -> Optional[int]:
            with queue_lock:
                return next(queue, None)

        def worker() -> None:
            while not abort.is_set() and self.manager.is_scheduling(task_id):
                index = next_index()
                if index is None:
                    return
                segment = self.manager.claim_segment(task_id, index)
                if segment is None:
                    continue
                try:
                    self.translator.translate_segment(task, segment)
                except Exception:
                    abort.set()
                    raise

        worker_count = max(1, min(self.config.max_parallel_segments, len(indexes)))
        with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix=f"segment-{task_id[:8]}") as pool:
            futures = [pool.submit(worker) for _ in range(worker_count)]
        for future in futures:
            future.result()

    # Results and queries

    def _result(self, task_id: str) -> PipelineResult:
        task = self.manager.get_task(task_id)
        segments = self.manager.get_segments(task_id)
        return PipelineResult(
            task=task,
            entries=list(task.result_entries),
            missing_segments=list(task.missing_segments),
            cache_hits=sum(1 for s in segments if s.cache_hit),
            merge_operations=list(self._merge_operations.get(task_id, [])),
        )

    def get_progress(self, task_id: str) -> TranslationProgress:
        return self.manager.get_progress(task_id)

    def get_notifications(self, task_id: str):
        return self.store.list_notifications(task_id)

    # Actions

    def perform_action(
        self,
        task_id: str,
        action: TaskAction,
        resume: bool = True
    ) -> Optional[TranslationTask]:
        """Apply a task action; continued and restarted tasks are started again.

        Returns:
            The affected task (the new task for RESTART), or None for DELETE
        """
        task = self.manager.perform_action(task_id, action)
        if resume and task is not None and action in (TaskAction.CONTINUE, TaskAction.RESTART):
            self.start(task.id)
        return task

    def resume_incomplete_tasks(self, now: Optional[datetime] = None) -> List[str]:
        """Restart active tasks left behind by a crashed process.

        A task counts as orphaned when its heartbeat is older than two
        heartbeat intervals and no run for it is alive in this process.
        Segments that were mid-flight go back to pending with their retry
        counts intact.

        Returns:
            IDs of the resumed tasks
        """
        now = now or datetime.now()
        stale_after = timedelta(seconds=2 * self.config.heartbeat_interval_seconds)
        resumed = []

        for task in self.store.list_tasks():
            if not task.status.is_active:
                continue
            if task.last_heartbeat is not None and now - task.last_heartbeat < stale_after:
                continue
            with self._threads_lock:
                thread = self._threads.get(task.id)
            if thread is not None and thread.is_alive():
                continue

            for segment in self.manager.get_segments(task.id):
                orphaned = segment.status in (SegmentStatus.TRANSLATING, SegmentStatus.RETRYING) or (
                    segment.status == SegmentStatus.FAILED and not self.manager.is_terminal_failure(segment)
                )
                if orphaned:
                    self.manager.reset_segment(segment)

            self.manager.heartbeat(task.id)
            logger.info(f"Resuming task {task.id} from {task.status.value}")
            self.start(task.id)
            resumed.append(task.id)

        return resumed

    def start_supervisor(self) -> None:
        self.supervisor.start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.supervisor.stop(timeout)
        with self._threads_lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)
        self.translator.shutdown()
