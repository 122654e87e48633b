"""Task and segment state machine.

All status changes go through this module so that every transition is checked
against the tables in models.core and every terminal event raises a
notification.
"""

import logging
import math
import threading
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from .base import BaseTaskStore
from .cache_service import content_hash
from .error_handler import StallError, TaskNotFoundError
from .notification_service import NotificationEmitter
from .segmenter import TranslationSegment
from ..models.core import (
    InvalidTransitionError,
    KeywordSet,
    PipelineConfig,
    SegmentProgress,
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

PHASE_LABELS = {
    TaskStatus.QUEUED: "Queued",
    TaskStatus.SEGMENTING: "Segmenting subtitles",
    TaskStatus.TRANSLATING: "Translating segments",
    TaskStatus.STITCHING: "Stitching segments",
    TaskStatus.OPTIMIZING: "Adjusting style",
    TaskStatus.COMPLETED: "Completed",
    TaskStatus.FAILED: "Failed",
    TaskStatus.PAUSED: "Paused",
    TaskStatus.CANCELLED: "Cancelled",
}

# Weight of the newest sample in the translation speed moving average.
SPEED_SMOOTHING = 0.3


class TaskManager:
    """Owns task and segment status, progress, heartbeats and task actions."""

    def __init__(
        self,
        store: BaseTaskStore,
        emitter: Optional[NotificationEmitter] = None,
        config: Optional[PipelineConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.emitter = emitter or NotificationEmitter(store)
        self.config = config or PipelineConfig()
        self.clock = clock
        # Guards read-modify-write of task records shared by segment workers.
        self._lock = threading.RLock()

    # Task records

    def create_task(
        self,
        video_id: str,
        source_entries: List[SubtitleEntry],
        translation_config: Optional[TranslationConfig] = None,
        keywords: Optional[KeywordSet] = None
    ) -> TranslationTask:
        now = self.clock()
        task = TranslationTask(
            id=str(uuid.uuid4()),
            video_id=video_id,
            status=TaskStatus.QUEUED,
            current_phase=PHASE_LABELS[TaskStatus.QUEUED],
            last_heartbeat=now,
            created_at=now,
            translation_config=translation_config or TranslationConfig(),
            source_entries=list(source_entries),
            keywords=keywords or KeywordSet(),
        )
        self.store.create_task(task)
        logger.info(f"Created translation task {task.id} for video {video_id} ({len(source_entries)} entries)")
        self.emitter.progress(task.id, "Translation queued", f"{len(source_entries)} subtitle entries queued")
        return task

    def get_task(self, task_id: str) -> TranslationTask:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Translation task not found: {task_id}")
        return task

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        phase: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> TranslationTask:
        """Move a task to target, raising InvalidTransitionError if not allowed."""
        with self._lock:
            task = self.get_task(task_id)
            previous = task.status
            if not previous.can_transition_to(target):
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {previous.value} to {target.value}"
                )

            now = self.clock()
            task.status = target
            task.current_phase = phase or PHASE_LABELS[target]

            if target == TaskStatus.PAUSED:
                task.paused_at = now
                task.paused_from = previous
            elif previous == TaskStatus.PAUSED:
                task.paused_at = None
                task.paused_from = None

            if target == TaskStatus.SEGMENTING and task.started_at is None:
                task.started_at = now
            if target.is_active:
                task.last_heartbeat = now
            if target.is_terminal:
                task.completed_at = now
                task.estimated_time_remaining = None
            if target == TaskStatus.COMPLETED and task.total_segments == 0:
                task.progress_percentage = 100
            if error_message is not None:
                task.error_message = error_message

            self.store.update_task(task)

        logger.info(f"Task {task_id}: {previous.value} -> {target.value}")
        self._notify_transition(task)
        return task

    def _notify_transition(self, task: TranslationTask) -> None:
        if task.status == TaskStatus.COMPLETED:
            message = f"Translated {len(task.result_entries)} subtitle entries"
            if task.missing_segments:
                message += f"; missing segments: {', '.join(str(i) for i in task.missing_segments)}"
            self.emitter.completed(task.id, "Translation completed", message)
        elif task.status == TaskStatus.FAILED:
            self.emitter.failed(task.id, "Translation failed", task.error_message or "Unknown error")
        elif task.status == TaskStatus.PAUSED:
            self.emitter.paused(
                task.id, "Translation paused", f"Paused at {task.progress_percentage}% progress"
            )
        elif task.status == TaskStatus.CANCELLED:
            self.emitter.progress(task.id, "Translation cancelled", "The task was cancelled")

    def update_result(
        self,
        task_id: str,
        entries: List[SubtitleEntry],
        missing_segments: List[int]
    ) -> TranslationTask:
        with self._lock:
            task = self.get_task(task_id)
            task.result_entries = list(entries)
            task.missing_segments = list(missing_segments)
            self.store.update_task(task)
            return task

    # Segment records

    def record_segments(self, task_id: str, segments: List[TranslationSegment]) -> List[SegmentTask]:
        """Persist the segmenter's output as pending segment tasks."""
        records = [
            SegmentTask(
                translation_task_id=task_id,
                segment_index=segment.segment_index,
                status=SegmentStatus.PENDING,
                start_entry=segment.start_entry,
                subtitle_count=len(segment.entries),
                character_count=segment.character_count,
                estimated_tokens=segment.estimated_tokens,
                content_hash=content_hash(segment.entries),
            )
            for segment in segments
        ]
        with self._lock:
            self.store.create_segments(records)
            task = self.get_task(task_id)
            task.total_segments = len(records)
            task.completed_segments = 0
            self.store.update_task(task)
        return records

    def get_segments(self, task_id: str) -> List[SegmentTask]:
        return self.store.list_segments(task_id)

    def claim_segment(
        self,
        task_id: str,
        segment_index: int,
        expected: Optional[List[SegmentStatus]] = None
    ) -> Optional[SegmentTask]:
        """Atomically take ownership of a segment.

        Returns:
            The segment in TRANSLATING status, or None if another worker owns it
        """
        claimed = self.store.claim_segment(
            task_id,
            segment_index,
            expected or [SegmentStatus.PENDING],
            SegmentStatus.TRANSLATING,
        )
        if claimed is None:
            return None

        if claimed.started_at is None:
            claimed.started_at = self.clock()
            self.store.update_segment(claimed)

        with self._lock:
            task = self.get_task(task_id)
            task.current_segment = segment_index
            if task.status.is_active:
                task.last_heartbeat = self.clock()
            self.store.update_task(task)
        return claimed

    def _move_segment(self, segment: SegmentTask, target: SegmentStatus) -> None:
        if not segment.status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Segment {segment.segment_index} of task {segment.translation_task_id} "
                f"cannot move from {segment.status.value} to {target.value}"
            )
        segment.status = target

    def _get_segment(self, task_id: str, segment_index: int) -> SegmentTask:
        segment = self.store.get_segment(task_id, segment_index)
        if segment is None:
            raise TaskNotFoundError(f"Segment {segment_index} of task {task_id} not found")
        return segment

    def complete_segment(
        self,
        task_id: str,
        segment_index: int,
        entries: List[SubtitleEntry],
        processing_time_ms: int = 0,
        cache_hit: bool = False
    ) -> SegmentTask:
        with self._lock:
            segment = self._get_segment(task_id, segment_index)
            self._move_segment(segment, SegmentStatus.COMPLETED)
            segment.result = list(entries)
            segment.processing_time_ms = processing_time_ms
            segment.cache_hit = cache_hit
            segment.error_message = None
            segment.completed_at = self.clock()
            self.store.update_segment(segment)
            self._refresh_progress(task_id)

        source = " (cache hit)" if cache_hit else f" in {processing_time_ms}ms"
        logger.info(f"Segment {segment_index} of task {task_id} completed{source}")
        return segment

    def accept_result(
        self,
        task_id: str,
        segment_index: int,
        entries: List[SubtitleEntry],
        processing_time_ms: int = 0,
        before_complete: Optional[Callable[[], None]] = None
    ) -> Optional[SegmentTask]:
        """Complete a segment unless its task has finished in the meantime.

        before_complete runs under the same lock as the check and the
        completion, so a cancel or stall cannot land between them.

        Returns:
            The completed segment, or None if the result was discarded
        """
        with self._lock:
            if not self.is_accepting_results(task_id):
                return None
            if before_complete is not None:
                before_complete()
            return self.complete_segment(task_id, segment_index, entries, processing_time_ms)

    def fail_segment_attempt(
        self,
        task_id: str,
        segment_index: int,
        error: BaseException,
        partial_result: Optional[List[SubtitleEntry]] = None
    ) -> SegmentTask:
        """Record a failed attempt.

        The segment moves to RETRYING while budget remains, otherwise it stays
        FAILED for good and task progress is recomputed.
        """
        with self._lock:
            segment = self._get_segment(task_id, segment_index)
            self._move_segment(segment, SegmentStatus.FAILED)
            segment.retry_count += 1
            segment.error_message = str(error)
            if partial_result is not None:
                segment.partial_result = list(partial_result)

            if segment.retry_count < self.config.max_retries:
                self._move_segment(segment, SegmentStatus.RETRYING)
            else:
                segment.completed_at = self.clock()

            self.store.update_segment(segment)
            if segment.status == SegmentStatus.FAILED:
                self._refresh_progress(task_id)

        return segment

    def is_terminal_failure(self, segment: SegmentTask) -> bool:
        return segment.status == SegmentStatus.FAILED and segment.retry_count >= self.config.max_retries

    def release_segment(self, task_id: str, segment_index: int) -> SegmentTask:
        """Hand a claimed segment back without counting an attempt."""
        with self._lock:
            segment = self._get_segment(task_id, segment_index)
            self._move_segment(segment, SegmentStatus.PENDING)
            self.store.update_segment(segment)
        logger.info(f"Released segment {segment_index} of task {task_id} back to pending")
        return segment

    def reset_segment(self, segment: SegmentTask) -> SegmentTask:
        """Return an orphaned segment to PENDING after a crash.

        The retry count is kept so that recovered segments cannot exceed their
        budget.
        """
        segment.status = SegmentStatus.PENDING
        self.store.update_segment(segment)
        logger.info(
            f"Reset segment {segment.segment_index} of task {segment.translation_task_id} to pending"
        )
        return segment

    # Progress

    def _refresh_progress(self, task_id: str) -> TranslationTask:
        task = self.get_task(task_id)
        segments = self.store.list_segments(task_id)
        completed = [s for s in segments if s.status == SegmentStatus.COMPLETED]
        task.completed_segments = len(completed)

        if task.total_segments:
            percentage = math.floor(100 * len(completed) / task.total_segments)
            task.progress_percentage = max(task.progress_percentage, percentage)

        now = self.clock()
        if task.started_at is not None:
            elapsed = (now - task.started_at).total_seconds()
            translated_entries = sum(s.subtitle_count for s in completed)
            if elapsed > 0 and translated_entries:
                sample = translated_entries / elapsed
                if task.translation_speed:
                    task.translation_speed = SPEED_SMOOTHING * sample + (1 - SPEED_SMOOTHING) * task.translation_speed
                else:
                    task.translation_speed = sample

        remaining = sum(
            s.subtitle_count for s in segments
            if s.status != SegmentStatus.COMPLETED and not self.is_terminal_failure(s)
        )
        if task.translation_speed:
            task.estimated_time_remaining = remaining / task.translation_speed

        if task.status.is_active:
            task.last_heartbeat = now
        self.store.update_task(task)
        return task

    def get_progress(self, task_id: str) -> TranslationProgress:
        task = self.get_task(task_id)
        segments = self.store.list_segments(task_id)
        return TranslationProgress(
            task_id=task.id,
            video_id=task.video_id,
            status=task.status,
            current_phase=task.current_phase,
            total_segments=task.total_segments,
            completed_segments=task.completed_segments,
            current_segment=task.current_segment,
            progress_percentage=task.progress_percentage,
            segment_details=[
                SegmentProgress(
                    segment_index=s.segment_index,
                    status=s.status,
                    subtitle_count=s.subtitle_count,
                    retry_count=s.retry_count,
                    processing_time=s.processing_time_ms,
                    error_message=s.error_message,
                )
                for s in segments
            ],
            last_update=task.last_heartbeat or task.created_at,
            estimated_time_remaining=task.estimated_time_remaining,
            translation_speed=task.translation_speed,
            error_message=task.error_message,
            start_time=task.started_at,
        )

    # Liveness

    def heartbeat(self, task_id: str) -> bool:
        """Refresh the heartbeat of an active task; returns False otherwise."""
        with self._lock:
            task = self.store.get_task(task_id)
            if task is None or not task.status.is_active:
                return False
            task.last_heartbeat = self.clock()
            self.store.update_task(task)
            return True

    def check_stall(self, task_id: str, now: Optional[datetime] = None) -> bool:
        """Fail the task if its heartbeat is older than the stall threshold.

        Returns:
            True if the task was marked failed
        """
        with self._lock:
            task = self.store.get_task(task_id)
            if task is None or not task.status.is_active or task.last_heartbeat is None:
                return False
            silent_for = ((now or self.clock()) - task.last_heartbeat).total_seconds()
            if silent_for <= self.config.stall_threshold_seconds:
                return False

            error = StallError(
                f"Task became unresponsive: no heartbeat for {silent_for:.0f}s "
                f"(threshold {self.config.stall_threshold_seconds:.0f}s)"
            )
            logger.warning(f"Task {task_id} stalled during {task.status.value}: {error}")
            self.transition(task_id, TaskStatus.FAILED, error_message=str(error))
            return True

    def is_accepting_results(self, task_id: str) -> bool:
        """False once a task is cancelled, failed or otherwise finished."""
        task = self.store.get_task(task_id)
        return task is not None and not task.status.is_terminal

    def is_scheduling(self, task_id: str) -> bool:
        """True while new segments may be started."""
        task = self.store.get_task(task_id)
        return task is not None and task.status == TaskStatus.TRANSLATING

    # Actions

    def pause_task(self, task_id: str) -> TranslationTask:
        return self.transition(task_id, TaskStatus.PAUSED)

    def continue_task(self, task_id: str) -> TranslationTask:
        task = self.get_task(task_id)
        if task.status != TaskStatus.PAUSED:
            raise InvalidTransitionError(
                f"Task {task_id} can only be continued from paused (is {task.status.value})"
            )
        return self.transition(task_id, task.paused_from or TaskStatus.QUEUED)

    def cancel_task(self, task_id: str) -> TranslationTask:
        return self.transition(task_id, TaskStatus.CANCELLED)

    def restart_task(self, task_id: str) -> TranslationTask:
        """Start the same translation again as a fresh task.

        The old task keeps its terminal record; a paused task is cancelled first.
        """
        task = self.get_task(task_id)
        if task.status.is_active:
            raise InvalidTransitionError(
                f"Task {task_id} is {task.status.value}; pause or cancel it before restarting"
            )
        if task.status == TaskStatus.PAUSED:
            self.cancel_task(task_id)

        restarted = self.create_task(
            task.video_id, task.source_entries, task.translation_config, task.keywords
        )
        logger.info(f"Restarted task {task_id} as {restarted.id}")
        return restarted

    def delete_task(self, task_id: str) -> bool:
        task = self.get_task(task_id)
        if not task.status.is_terminal:
            raise InvalidTransitionError(
                f"Task {task_id} must be completed, failed or cancelled before deletion "
                f"(is {task.status.value})"
            )
        deleted = self.store.delete_task(task_id)
        logger.info(f"Deleted task {task_id}")
        return deleted

    def perform_action(self, task_id: str, action: TaskAction) -> Optional[TranslationTask]:
        """Apply an external task action.

        Returns:
            The affected task (the new task for RESTART), or None for DELETE
        """
        if action == TaskAction.PAUSE:
            return self.pause_task(task_id)
        if action == TaskAction.CONTINUE:
            return self.continue_task(task_id)
        if action == TaskAction.CANCEL:
            return self.cancel_task(task_id)
        if action == TaskAction.RESTART:
            return self.restart_task(task_id)
        if action == TaskAction.DELETE:
            self.delete_task(task_id)
            return None
        raise ValueError(f"Unsupported task action: {action}")
