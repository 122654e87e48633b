"""Task persistence backends.

Two implementations of BaseTaskStore are provided: an in-memory store used by
tests and single-process runs, and a SQLite store whose rows are enough to
rebuild every task after a restart.
"""

import copy
import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .base import BaseTaskStore
from ..models.core import (
    CacheEntry,
    KeywordSet,
    NotificationType,
    SegmentStatus,
    SegmentTask,
    SubtitleEntry,
    TaskNotification,
    TaskStatus,
    TranslationConfig,
    TranslationTask,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _entries_to_list(entries: Optional[List[SubtitleEntry]]) -> Optional[List[Dict[str, Any]]]:
    if entries is None:
        return None
    return [entry.to_dict() for entry in entries]


def _entries_from_list(items: Optional[List[Dict[str, Any]]]) -> Optional[List[SubtitleEntry]]:
    if items is None:
        return None
    return [SubtitleEntry.from_dict(item) for item in items]


def task_to_dict(task: TranslationTask) -> Dict[str, Any]:
    return {
        'id': task.id,
        'video_id': task.video_id,
        'status': task.status.value,
        'current_phase': task.current_phase,
        'total_segments': task.total_segments,
        'completed_segments': task.completed_segments,
        'current_segment': task.current_segment,
        'progress_percentage': task.progress_percentage,
        'estimated_time_remaining': task.estimated_time_remaining,
        'translation_speed': task.translation_speed,
        'error_message': task.error_message,
        'last_heartbeat': _iso(task.last_heartbeat),
        'paused_at': _iso(task.paused_at),
        'paused_from': task.paused_from.value if task.paused_from else None,
        'started_at': _iso(task.started_at),
        'completed_at': _iso(task.completed_at),
        'created_at': _iso(task.created_at),
        'translation_config': task.translation_config.canonical(),
        'source_entries': _entries_to_list(task.source_entries),
        'keywords': {
            'ai_generated': list(task.keywords.ai_generated),
            'user': list(task.keywords.user),
            'final': list(task.keywords.final),
        },
        'result_entries': _entries_to_list(task.result_entries),
        'missing_segments': list(task.missing_segments),
    }


def task_from_dict(data: Dict[str, Any]) -> TranslationTask:
    keywords = data.get('keywords') or {}
    return TranslationTask(
        id=data['id'],
        video_id=data['video_id'],
        status=TaskStatus(data['status']),
        current_phase=data.get('current_phase') or '',
        total_segments=data.get('total_segments', 0),
        completed_segments=data.get('completed_segments', 0),
        current_segment=data.get('current_segment', 0),
        progress_percentage=data.get('progress_percentage', 0),
        estimated_time_remaining=data.get('estimated_time_remaining'),
        translation_speed=data.get('translation_speed'),
        error_message=data.get('error_message'),
        last_heartbeat=_parse_dt(data.get('last_heartbeat')),
        paused_at=_parse_dt(data.get('paused_at')),
        paused_from=TaskStatus(data['paused_from']) if data.get('paused_from') else None,
        started_at=_parse_dt(data.get('started_at')),
        completed_at=_parse_dt(data.get('completed_at')),
        created_at=_parse_dt(data.get('created_at')) or datetime.now(),
        translation_config=TranslationConfig.from_dict(data.get('translation_config') or {}),
        source_entries=_entries_from_list(data.get('source_entries')) or [],
        keywords=KeywordSet(
            ai_generated=list(keywords.get('ai_generated', [])),
            user=list(keywords.get('user', [])),
            final=list(keywords.get('final', [])),
        ),
        result_entries=_entries_from_list(data.get('result_entries')) or [],
        missing_segments=list(data.get('missing_segments', [])),
    )


def segment_to_dict(segment: SegmentTask) -> Dict[str, Any]:
    return {
        'translation_task_id': segment.translation_task_id,
        'segment_index': segment.segment_index,
        'status': segment.status.value,
        'start_entry': segment.start_entry,
        'subtitle_count': segment.subtitle_count,
        'character_count': segment.character_count,
        'estimated_tokens': segment.estimated_tokens,
        'content_hash': segment.content_hash,
        'processing_time_ms': segment.processing_time_ms,
        'retry_count': segment.retry_count,
        'error_message': segment.error_message,
        'result': _entries_to_list(segment.result),
        'partial_result': _entries_to_list(segment.partial_result),
        'cache_hit': segment.cache_hit,
        'started_at': _iso(segment.started_at),
        'completed_at': _iso(segment.completed_at),
    }


def segment_from_dict(data: Dict[str, Any]) -> SegmentTask:
    return SegmentTask(
        translation_task_id=data['translation_task_id'],
        segment_index=data['segment_index'],
        status=SegmentStatus(data['status']),
        start_entry=data.get('start_entry', 0),
        subtitle_count=data.get('subtitle_count', 0),
        character_count=data.get('character_count', 0),
        estimated_tokens=data.get('estimated_tokens', 0),
        content_hash=data.get('content_hash', ''),
        processing_time_ms=data.get('processing_time_ms'),
        retry_count=data.get('retry_count', 0),
        error_message=data.get('error_message'),
        result=_entries_from_list(data.get('result')),
        partial_result=_entries_from_list(data.get('partial_result')),
        cache_hit=bool(data.get('cache_hit', False)),
        started_at=_parse_dt(data.get('started_at')),
        completed_at=_parse_dt(data.get('completed_at')),
    )


def notification_to_dict(notification: TaskNotification) -> Dict[str, Any]:
    return {
        'id': notification.id,
        'translation_task_id': notification.translation_task_id,
        'type': notification.type.value,
        'title': notification.title,
        'message': notification.message,
        'is_read': notification.is_read,
        'sent_at': _iso(notification.sent_at),
    }


def notification_from_dict(data: Dict[str, Any]) -> TaskNotification:
    return TaskNotification(
        id=data['id'],
        translation_task_id=data['translation_task_id'],
        type=NotificationType(data['type']),
        title=data['title'],
        message=data['message'],
        is_read=bool(data.get('is_read', False)),
        sent_at=_parse_dt(data.get('sent_at')) or datetime.now(),
    )


def cache_entry_to_dict(entry: CacheEntry) -> Dict[str, Any]:
    return {
        'content_hash': entry.content_hash,
        'config_fingerprint': entry.config_fingerprint,
        'entries': _entries_to_list(entry.entries),
        'is_cached': entry.is_cached,
        'access_count': entry.access_count,
        'last_accessed_at': _iso(entry.last_accessed_at),
        'created_at': _iso(entry.created_at),
    }


def cache_entry_from_dict(data: Dict[str, Any]) -> CacheEntry:
    return CacheEntry(
        content_hash=data['content_hash'],
        config_fingerprint=data['config_fingerprint'],
        entries=_entries_from_list(data.get('entries')) or [],
        is_cached=bool(data.get('is_cached', True)),
        access_count=int(data.get('access_count', 0)),
        last_accessed_at=_parse_dt(data.get('last_accessed_at')) or datetime.now(),
        created_at=_parse_dt(data.get('created_at')) or datetime.now(),
    )


class InMemoryTaskStore(BaseTaskStore):
    """Lock-guarded dictionaries; every read and write goes through a deep copy."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tasks: Dict[str, TranslationTask] = {}
        self._segments: Dict[tuple, SegmentTask] = {}
        self._notifications: Dict[str, TaskNotification] = {}
        self._cache: Dict[tuple, CacheEntry] = {}

    def create_task(self, task: TranslationTask) -> TranslationTask:
        with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task already exists: {task.id}")
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def get_task(self, task_id: str) -> Optional[TranslationTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def update_task(self, task: TranslationTask) -> TranslationTask:
        with self._lock:
            if task.id not in self._tasks:
                raise KeyError(task.id)
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def list_tasks(self) -> List[TranslationTask]:
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: t.created_at)
            return [copy.deepcopy(task) for task in tasks]

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            for key in [k for k in self._segments if k[0] == task_id]:
                del self._segments[key]
            for nid in [n.id for n in self._notifications.values() if n.translation_task_id == task_id]:
                del self._notifications[nid]
            return True

    def create_segments(self, segments: List[SegmentTask]) -> List[SegmentTask]:
        with self._lock:
            for segment in segments:
                self._segments[segment.key] = copy.deepcopy(segment)
            return [copy.deepcopy(segment) for segment in segments]

    def get_segment(self, task_id: str, segment_index: int) -> Optional[SegmentTask]:
        with self._lock:
            segment = self._segments.get((task_id, segment_index))
            return copy.deepcopy(segment) if segment else None

    def list_segments(self, task_id: str) -> List[SegmentTask]:
        with self._lock:
            segments = [s for (tid, _), s in self._segments.items() if tid == task_id]
            return [copy.deepcopy(s) for s in sorted(segments, key=lambda s: s.segment_index)]

    def update_segment(self, segment: SegmentTask) -> SegmentTask:
        with self._lock:
            if segment.key not in self._segments:
                raise KeyError(segment.key)
            self._segments[segment.key] = copy.deepcopy(segment)
            return copy.deepcopy(segment)

    def claim_segment(
        self,
        task_id: str,
        segment_index: int,
        expected: List[SegmentStatus],
        new_status: SegmentStatus
    ) -> Optional[SegmentTask]:
        with self._lock:
            segment = self._segments.get((task_id, segment_index))
            if segment is None or segment.status not in expected:
                return None
            segment.status = new_status
            return copy.deepcopy(segment)

    def add_notification(self, notification: TaskNotification) -> TaskNotification:
        with self._lock:
            self._notifications[notification.id] = notification
            return notification

    def list_notifications(self, task_id: str) -> List[TaskNotification]:
        with self._lock:
            items = [n for n in self._notifications.values() if n.translation_task_id == task_id]
            return sorted(items, key=lambda n: n.sent_at)

    def mark_notification_read(self, notification_id: str) -> bool:
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None:
                return False
            self._notifications[notification_id] = replace(notification, is_read=True)
            return True

    def get_cache_entry(self, content_hash: str, config_fingerprint: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._cache.get((content_hash, config_fingerprint))
            return copy.deepcopy(entry) if entry else None

    def put_cache_entry(self, entry: CacheEntry) -> CacheEntry:
        with self._lock:
            self._cache[entry.key] = copy.deepcopy(entry)
            return copy.deepcopy(entry)

    def list_cache_entries(self) -> List[CacheEntry]:
        with self._lock:
            return [copy.deepcopy(entry) for entry in self._cache.values()]


class SQLiteTaskStore(BaseTaskStore):
    """SQLite-backed store; each record is one JSON payload row."""

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path), timeout=30, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        return connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self._connect()
            try:
                with connection:
                    yield connection
            finally:
                connection.close()

    def _init_db(self) -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS translation_tasks (
                    id TEXT PRIMARY KEY,
                    video_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS segment_tasks (
                    translation_task_id TEXT NOT NULL,
                    segment_index INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (translation_task_id, segment_index)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS task_notifications (
                    id TEXT PRIMARY KEY,
                    translation_task_id TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    content_hash TEXT NOT NULL,
                    config_fingerprint TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (content_hash, config_fingerprint)
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_task ON task_notifications(translation_task_id)"
            )

    @staticmethod
    def _dump(data: Dict[str, Any]) -> str:
        return json.dumps(data, ensure_ascii=False)

    def create_task(self, task: TranslationTask) -> TranslationTask:
        with self._transaction() as connection:
            connection.execute(
                "INSERT INTO translation_tasks(id, video_id, status, created_at, payload) VALUES (?, ?, ?, ?, ?)",
                (task.id, task.video_id, task.status.value, _iso(task.created_at), self._dump(task_to_dict(task))),
            )
        return copy.deepcopy(task)

    def get_task(self, task_id: str) -> Optional[TranslationTask]:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT payload FROM translation_tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return task_from_dict(json.loads(row["payload"])) if row else None

    def update_task(self, task: TranslationTask) -> TranslationTask:
        with self._transaction() as connection:
            cursor = connection.execute(
                "UPDATE translation_tasks SET status = ?, payload = ? WHERE id = ?",
                (task.status.value, self._dump(task_to_dict(task)), task.id),
            )
            if cursor.rowcount == 0:
                raise KeyError(task.id)
        return copy.deepcopy(task)

    def list_tasks(self) -> List[TranslationTask]:
        with self._transaction() as connection:
            rows = connection.execute(
                "SELECT payload FROM translation_tasks ORDER BY created_at"
            ).fetchall()
        return [task_from_dict(json.loads(row["payload"])) for row in rows]

    def delete_task(self, task_id: str) -> bool:
        with self._transaction() as connection:
            cursor = connection.execute("DELETE FROM translation_tasks WHERE id = ?", (task_id,))
            connection.execute("DELETE FROM segment_tasks WHERE translation_task_id = ?", (task_id,))
            connection.execute("DELETE FROM task_notifications WHERE translation_task_id = ?", (task_id,))
            return cursor.rowcount > 0

    def create_segments(self, segments: List[SegmentTask]) -> List[SegmentTask]:
        with self._transaction() as connection:
            connection.executemany(
                "INSERT OR REPLACE INTO segment_tasks(translation_task_id, segment_index, status, payload) "
                "VALUES (?, ?, ?, ?)",
                [
                    (s.translation_task_id, s.segment_index, s.status.value, self._dump(segment_to_dict(s)))
                    for s in segments
                ],
            )
        return [copy.deepcopy(s) for s in segments]

    def get_segment(self, task_id: str, segment_index: int) -> Optional[SegmentTask]:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT payload FROM segment_tasks WHERE translation_task_id = ? AND segment_index = ?",
                (task_id, segment_index),
            ).fetchone()
        return segment_from_dict(json.loads(row["payload"])) if row else None

    def list_segments(self, task_id: str) -> List[SegmentTask]:
        with self._transaction() as connection:
            rows = connection.execute(
                "SELECT payload FROM segment_tasks WHERE translation_task_id = ? ORDER BY segment_index",
                (task_id,),
            ).fetchall()
        return [segment_from_dict(json.loads(row["payload"])) for row in rows]

    def update_segment(self, segment: SegmentTask) -> SegmentTask:
        with self._transaction() as connection:
            cursor = connection.execute(
                "UPDATE segment_tasks SET status = ?, payload = ? "
                "WHERE translation_task_id = ? AND segment_index = ?",
                (segment.status.value, self._dump(segment_to_dict(segment)),
                 segment.translation_task_id, segment.segment_index),
            )
            if cursor.rowcount == 0:
                raise KeyError(segment.key)
        return copy.deepcopy(segment)

    def claim_segment(
        self,
        task_id: str,
        segment_index: int,
        expected: List[SegmentStatus],
        new_status: SegmentStatus
    ) -> Optional[SegmentTask]:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT status, payload FROM segment_tasks WHERE translation_task_id = ? AND segment_index = ?",
                (task_id, segment_index),
            ).fetchone()
            if row is None or row["status"] not in {status.value for status in expected}:
                return None
            segment = segment_from_dict(json.loads(row["payload"]))
            segment.status = new_status
            connection.execute(
                "UPDATE segment_tasks SET status = ?, payload = ? "
                "WHERE translation_task_id = ? AND segment_index = ? AND status = ?",
                (new_status.value, self._dump(segment_to_dict(segment)), task_id, segment_index, row["status"]),
            )
        return segment

    def add_notification(self, notification: TaskNotification) -> TaskNotification:
        with self._transaction() as connection:
            connection.execute(
                "INSERT INTO task_notifications(id, translation_task_id, sent_at, payload) VALUES (?, ?, ?, ?)",
                (notification.id, notification.translation_task_id, _iso(notification.sent_at),
                 self._dump(notification_to_dict(notification))),
            )
        return notification

    def list_notifications(self, task_id: str) -> List[TaskNotification]:
        with self._transaction() as connection:
            rows = connection.execute(
                "SELECT payload FROM task_notifications WHERE translation_task_id = ? ORDER BY sent_at",
                (task_id,),
            ).fetchall()
        return [notification_from_dict(json.loads(row["payload"])) for row in rows]

    def mark_notification_read(self, notification_id: str) -> bool:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT payload FROM task_notifications WHERE id = ?", (notification_id,)
            ).fetchone()
            if row is None:
                return False
            notification = replace(notification_from_dict(json.loads(row["payload"])), is_read=True)
            connection.execute(
                "UPDATE task_notifications SET payload = ? WHERE id = ?",
                (self._dump(notification_to_dict(notification)), notification_id),
            )
            return True

    def get_cache_entry(self, content_hash: str, config_fingerprint: str) -> Optional[CacheEntry]:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT payload FROM cache_entries WHERE content_hash = ? AND config_fingerprint = ?",
                (content_hash, config_fingerprint),
            ).fetchone()
        return cache_entry_from_dict(json.loads(row["payload"])) if row else None

    def put_cache_entry(self, entry: CacheEntry) -> CacheEntry:
        with self._transaction() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO cache_entries(content_hash, config_fingerprint, payload) VALUES (?, ?, ?)",
                (entry.content_hash, entry.config_fingerprint, self._dump(cache_entry_to_dict(entry))),
            )
        return copy.deepcopy(entry)

    def list_cache_entries(self) -> List[CacheEntry]:
        with self._transaction() as connection:
            rows = connection.execute("SELECT payload FROM cache_entries").fetchall()
        return [cache_entry_from_dict(json.loads(row["payload"])) for row in rows]
