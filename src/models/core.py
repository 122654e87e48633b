"""Core data models for the Subtitle Translation Pipeline."""

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed by the transition table."""


@dataclass
class SubtitleEntry:
    """A single timed subtitle line.

    merged_count is the number of source lines folded into this one by the
    style adjuster; 1 for an untouched line.
    """
    start: float
    end: float
    text: str
    merged_count: int = 1

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(
                f"Subtitle entry must satisfy start < end (got {self.start} >= {self.end})"
            )

    @property
    def duration(self) -> float:
        """Calculate the display duration of the entry."""
        return self.end - self.start

    def to_dict(self) -> Dict[str, Any]:
        data = {'start': self.start, 'end': self.end, 'text': self.text}
        if self.merged_count > 1:
            data['mergedCount'] = self.merged_count
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubtitleEntry':
        return cls(
            start=float(data['start']),
            end=float(data['end']),
            text=str(data['text']),
            merged_count=int(data.get('mergedCount', 1)),
        )


class TaskStatus(Enum):
    """Lifecycle states of a translation task."""
    QUEUED = "queued"
    SEGMENTING = "segmenting"
    TRANSLATING = "translating"
    STITCHING = "stitching"
    OPTIMIZING = "optimizing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATES

    @property
    def is_active(self) -> bool:
        """True for states in which work is being scheduled."""
        return self in _ACTIVE_TASK_STATES

    def can_transition_to(self, target: 'TaskStatus') -> bool:
        return target in TASK_TRANSITIONS[self]


_TERMINAL_TASK_STATES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
_ACTIVE_TASK_STATES = frozenset({
    TaskStatus.QUEUED,
    TaskStatus.SEGMENTING,
    TaskStatus.TRANSLATING,
    TaskStatus.STITCHING,
    TaskStatus.OPTIMIZING,
})

_INTERRUPTS = frozenset({TaskStatus.FAILED, TaskStatus.PAUSED, TaskStatus.CANCELLED})

# An empty track jumps from segmenting straight to completed.
TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.SEGMENTING}) | _INTERRUPTS,
    TaskStatus.SEGMENTING: frozenset({TaskStatus.TRANSLATING, TaskStatus.COMPLETED}) | _INTERRUPTS,
    TaskStatus.TRANSLATING: frozenset({TaskStatus.STITCHING}) | _INTERRUPTS,
    TaskStatus.STITCHING: frozenset({TaskStatus.OPTIMIZING, TaskStatus.COMPLETED}) | _INTERRUPTS,
    TaskStatus.OPTIMIZING: frozenset({TaskStatus.COMPLETED}) | _INTERRUPTS,
    TaskStatus.PAUSED: _ACTIVE_TASK_STATES | frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class SegmentStatus(Enum):
    """Lifecycle states of a single translation segment."""
    PENDING = "pending"
    TRANSLATING = "translating"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    def can_transition_to(self, target: 'SegmentStatus') -> bool:
        return target in SEGMENT_TRANSITIONS[self]


# FAILED is recoverable (-> RETRYING) until the retry budget is spent; the
# translator decides whether a failure is terminal. Crash recovery moves orphaned
# segments back to PENDING through TaskManager.reset_segment(), outside this table.
SEGMENT_TRANSITIONS: Dict[SegmentStatus, FrozenSet[SegmentStatus]] = {
    SegmentStatus.PENDING: frozenset({SegmentStatus.TRANSLATING}),
    SegmentStatus.TRANSLATING: frozenset({
        SegmentStatus.COMPLETED, SegmentStatus.FAILED, SegmentStatus.PENDING,
    }),
    SegmentStatus.FAILED: frozenset({SegmentStatus.RETRYING}),
    SegmentStatus.RETRYING: frozenset({SegmentStatus.TRANSLATING}),
    SegmentStatus.COMPLETED: frozenset(),
}


class NotificationType(Enum):
    """Kinds of task notifications raised for external consumers."""
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class TaskAction(Enum):
    """Task actions that may be requested from outside the pipeline."""
    RESTART = "restart"
    CONTINUE = "continue"
    PAUSE = "pause"
    CANCEL = "cancel"
    DELETE = "delete"


class StylePreference(Enum):
    """Tone presets for the optional post-translation style pass."""
    TEENAGER_FRIENDLY = "teenager_friendly"
    TAIWANESE_COLLOQUIAL = "taiwanese_colloquial"
    FORMAL = "formal"
    SIMPLIFIED_TEXT = "simplified_text"
    ACADEMIC = "academic"
    CASUAL = "casual"
    TECHNICAL = "technical"


@dataclass(frozen=True)
class TranslationConfig:
    """Immutable snapshot of the settings a track was translated with."""
    model: str = "gemini-2.5-flash"
    provider: str = "gemini"
    taiwan_optimization: bool = True
    natural_tone: bool = True
    subtitle_timing: bool = True
    target_language: str = "zh-TW"

    def canonical(self) -> Dict[str, Any]:
        """Return every field, defaults materialized, with keys in sorted order."""
        data = asdict(self)
        return {key: data[key] for key in sorted(data)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TranslationConfig':
        aliases = {
            'taiwanOptimization': 'taiwan_optimization',
            'naturalTone': 'natural_tone',
            'subtitleTiming': 'subtitle_timing',
            'targetLanguage': 'target_language',
        }
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = aliases.get(key, key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass
class StyleAdjustmentConfig:
    """Settings for the post-translation merge and style passes."""
    enable_style_rewrite: bool = False
    enable_subtitle_merging: bool = True
    enable_complete_sentence_merging: bool = True
    max_merge_segments: int = 3
    max_merge_characters: int = 80
    max_merge_display_time: float = 15.0
    min_time_gap: float = 0.3
    style_preference: StylePreference = StylePreference.CASUAL
    custom_style_prompt: str = ""


@dataclass
class PipelineConfig:
    """Tunables for segmenting, scheduling, retries and supervision."""
    max_segment_characters: int = 5000
    max_segment_entries: int = 50
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    segment_timeout_seconds: float = 120.0
    max_parallel_segments: int = 3
    max_parallel_llm_calls: int = 5
    heartbeat_interval_seconds: float = 30.0
    stall_threshold_seconds: float = 300.0
    supervisor_interval_seconds: float = 60.0
    allow_partial_results: bool = False
    boundary_gap_tolerance: float = 2.0
    estimated_tokens_per_char: float = 1.3
    gemini_api_key: str = ""
    style: StyleAdjustmentConfig = field(default_factory=StyleAdjustmentConfig)


@dataclass
class KeywordSet:
    """Terminology used to keep translations consistent across segments."""
    ai_generated: List[str] = field(default_factory=list)
    user: List[str] = field(default_factory=list)
    final: List[str] = field(default_factory=list)


@dataclass
class TranslationTask:
    """Represents the translation of one video's subtitle track."""
    id: str
    video_id: str
    status: TaskStatus = TaskStatus.QUEUED
    current_phase: str = "Initializing"
    total_segments: int = 0
    completed_segments: int = 0
    current_segment: int = 0
    progress_percentage: int = 0
    estimated_time_remaining: Optional[float] = None
    translation_speed: Optional[float] = None
    error_message: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    paused_from: Optional[TaskStatus] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
    translation_config: TranslationConfig = field(default_factory=TranslationConfig)
    source_entries: List[SubtitleEntry] = field(default_factory=list)
    keywords: KeywordSet = field(default_factory=KeywordSet)
    result_entries: List[SubtitleEntry] = field(default_factory=list)
    missing_segments: List[int] = field(default_factory=list)


@dataclass
class SegmentTask:
    """One translation unit owned by a TranslationTask."""
    translation_task_id: str
    segment_index: int
    status: SegmentStatus = SegmentStatus.PENDING
    start_entry: int = 0
    subtitle_count: int = 0
    character_count: int = 0
    estimated_tokens: int = 0
    content_hash: str = ""
    processing_time_ms: Optional[int] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    result: Optional[List[SubtitleEntry]] = None
    partial_result: Optional[List[SubtitleEntry]] = None
    cache_hit: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.translation_task_id, self.segment_index)


@dataclass(frozen=True)
class TaskNotification:
    """Append-only notification about a task transition."""
    id: str
    translation_task_id: str
    type: NotificationType
    title: str
    message: str
    is_read: bool = False
    sent_at: datetime = field(default_factory=datetime.now)


@dataclass
class CacheEntry:
    """Previously computed translation keyed by content and config fingerprints."""
    content_hash: str
    config_fingerprint: str
    entries: List[SubtitleEntry]
    is_cached: bool = True
    access_count: int = 0
    last_accessed_at: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> tuple:
        return (self.content_hash, self.config_fingerprint)


@dataclass
class SegmentProgress:
    """Per-segment view used by polling clients."""
    segment_index: int
    status: SegmentStatus
    subtitle_count: int
    retry_count: int = 0
    processing_time: Optional[int] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'segmentIndex': self.segment_index,
            'status': self.status.value,
            'subtitleCount': self.subtitle_count,
            'retryCount': self.retry_count,
            'processingTime': self.processing_time,
            'errorMessage': self.error_message,
        }


@dataclass
class TranslationProgress:
    """Snapshot of a task's progress for the query surface."""
    task_id: str
    video_id: str
    status: TaskStatus
    current_phase: str
    total_segments: int
    completed_segments: int
    current_segment: int
    progress_percentage: int
    segment_details: List[SegmentProgress]
    last_update: datetime
    estimated_time_remaining: Optional[float] = None
    translation_speed: Optional[float] = None
    error_message: Optional[str] = None
    start_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'taskId': self.task_id,
            'videoId': self.video_id,
            'status': self.status.value,
            'currentPhase': self.current_phase,
            'totalSegments': self.total_segments,
            'completedSegments': self.completed_segments,
            'currentSegment': self.current_segment,
            'progressPercentage': self.progress_percentage,
            'estimatedTimeRemaining': self.estimated_time_remaining,
            'translationSpeed': self.translation_speed,
            'segmentDetails': [detail.to_dict() for detail in self.segment_details],
            'errorMessage': self.error_message,
            'startTime': self.start_time.isoformat() if self.start_time else None,
            'lastUpdate': self.last_update.isoformat(),
        }


@dataclass
class StitchResult:
    """Output of stitching segment results back into one track."""
    entries: List[SubtitleEntry]
    missing_segments: List[int] = field(default_factory=list)
    clamped_boundaries: List[int] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.missing_segments)


@dataclass
class MergeOperation:
    """Record of one merge performed by the style adjuster."""
    original_indexes: List[int]
    new_index: int
    reason: str
    characters_saved: int = 0


@dataclass
class PipelineResult:
    """Final outcome of running a translation task."""
    task: TranslationTask
    entries: List[SubtitleEntry]
    missing_segments: List[int] = field(default_factory=list)
    cache_hits: int = 0
    merge_operations: List[MergeOperation] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.missing_segments)
