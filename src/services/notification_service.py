"""Task notification emitter and sinks."""

import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from .base import BaseNotificationSink, BaseTaskStore
from ..models.core import NotificationType, TaskNotification


logger = logging.getLogger(__name__)


class LoggingNotificationSink(BaseNotificationSink):
    """Writes every notification to the application log."""

    def deliver(self, notification: TaskNotification) -> None:
        logger.info(
            f"[{notification.type.value}] {notification.title}: {notification.message} "
            f"(task {notification.translation_task_id})"
        )


class NotificationEmitter:
    """Records notifications in the store and forwards them to sinks.

    Delivery is fire-and-forget: a failing sink is logged and skipped, and a
    failure to persist never interrupts the transition that raised the event.
    """

    def __init__(
        self,
        store: BaseTaskStore,
        sinks: Optional[Iterable[BaseNotificationSink]] = None
    ):
        self.store = store
        self.sinks: List[BaseNotificationSink] = list(sinks) if sinks is not None else [LoggingNotificationSink()]

    def add_sink(self, sink: BaseNotificationSink) -> None:
        self.sinks.append(sink)

    def emit(
        self,
        task_id: str,
        notification_type: NotificationType,
        title: str,
        message: str
    ) -> TaskNotification:
        notification = TaskNotification(
            id=str(uuid.uuid4()),
            translation_task_id=task_id,
            type=notification_type,
            title=title,
            message=message,
            is_read=False,
            sent_at=datetime.now(),
        )

        try:
            self.store.add_notification(notification)
        except Exception as e:
            logger.warning(f"Failed to persist notification for task {task_id}: {e}")

        for sink in self.sinks:
            try:
                sink.deliver(notification)
            except Exception as e:
                logger.warning(f"Notification sink {type(sink).__name__} failed: {e}")

        return notification

    def progress(self, task_id: str, title: str, message: str) -> TaskNotification:
        return self.emit(task_id, NotificationType.PROGRESS, title, message)

    def completed(self, task_id: str, title: str, message: str) -> TaskNotification:
        return self.emit(task_id, NotificationType.COMPLETED, title, message)

    def failed(self, task_id: str, title: str, message: str) -> TaskNotification:
        return self.emit(task_id, NotificationType.FAILED, title, message)

    def paused(self, task_id: str, title: str, message: str) -> TaskNotification:
        return self.emit(task_id, NotificationType.PAUSED, title, message)
