"""Base service interfaces for the pipeline's external collaborators."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models.core import (
    CacheEntry,
    SegmentStatus,
    SegmentTask,
    StylePreference,
    SubtitleEntry,
    TaskNotification,
    TranslationConfig,
    TranslationTask,
)


class BaseTranslationTransport(ABC):
    """LLM transport used to translate one segment of entries."""

    @abstractmethod
    def translate(
        self,
        entries: List[SubtitleEntry],
        keywords: List[str],
        config: TranslationConfig
    ) -> List[SubtitleEntry]:
        """Translate entries, returning one output entry per input entry.

        Raises:
            TransportError: on network, provider or rate-limit failures
            ConfigurationError: on missing credentials
        """
        pass


class BaseStyleService(ABC):
    """Rewrites translated text into a given tone without changing line count."""

    @abstractmethod
    def adjust_style(
        self,
        entries: List[SubtitleEntry],
        keywords: List[str],
        style: StylePreference,
        custom_prompt: str = ""
    ) -> List[SubtitleEntry]:
        pass


class BaseKeywordGenerator(ABC):
    """Suggests terminology for a video from its title."""

    @abstractmethod
    def generate_keywords(self, title: str, max_keywords: int) -> List[str]:
        pass


class BaseNotificationSink(ABC):
    """Receives notifications for display or forwarding."""

    @abstractmethod
    def deliver(self, notification: TaskNotification) -> None:
        pass


class BaseTaskStore(ABC):
    """Transactional row store for tasks, segments, notifications and cache entries.

    Implementations return copies; mutating a returned record never changes
    the stored state until it is passed back through an update method.
    """

    # Translation tasks

    @abstractmethod
    def create_task(self, task: TranslationTask) -> TranslationTask:
        pass

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[TranslationTask]:
        pass

    @abstractmethod
    def update_task(self, task: TranslationTask) -> TranslationTask:
        pass

    @abstractmethod
    def list_tasks(self) -> List[TranslationTask]:
        pass

    @abstractmethod
    def delete_task(self, task_id: str) -> bool:
        """Delete a task with its segments and notifications."""
        pass

    # Segment tasks

    @abstractmethod
    def create_segments(self, segments: List[SegmentTask]) -> List[SegmentTask]:
        pass

    @abstractmethod
    def get_segment(self, task_id: str, segment_index: int) -> Optional[SegmentTask]:
        pass

    @abstractmethod
    def list_segments(self, task_id: str) -> List[SegmentTask]:
        """Return a task's segments ordered by segment index."""
        pass

    @abstractmethod
    def update_segment(self, segment: SegmentTask) -> SegmentTask:
        pass

    @abstractmethod
    def claim_segment(
        self,
        task_id: str,
        segment_index: int,
        expected: List[SegmentStatus],
        new_status: SegmentStatus
    ) -> Optional[SegmentTask]:
        """Atomically move a segment to new_status if its status is in expected.

        Returns:
            The updated segment, or None when another worker got there first
        """
        pass

    # Notifications

    @abstractmethod
    def add_notification(self, notification: TaskNotification) -> TaskNotification:
        pass

    @abstractmethod
    def list_notifications(self, task_id: str) -> List[TaskNotification]:
        pass

    @abstractmethod
    def mark_notification_read(self, notification_id: str) -> bool:
        pass

    # Cache entries

    @abstractmethod
    def get_cache_entry(self, content_hash: str, config_fingerprint: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    def put_cache_entry(self, entry: CacheEntry) -> CacheEntry:
        """Insert or overwrite the entry stored under the same key."""
        pass

    @abstractmethod
    def list_cache_entries(self) -> List[CacheEntry]:
        pass

