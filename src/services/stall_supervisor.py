"""Timer-driven supervisor that fails tasks whose heartbeat went silent."""

import logging
import threading
from datetime import datetime
from typing import List, Optional

from .error_handler import TaskNotFoundError
from .task_manager import TaskManager
from ..models.core import InvalidTransitionError


logger = logging.getLogger(__name__)


class StallSupervisor:
    """Polls active tasks and fails those whose heartbeat is too old.

    The supervisor never touches the worker threads or their LLM calls; a
    stalled task is only marked failed, and any result that arrives later is
    discarded by the translator.
    """

    def __init__(self, manager: TaskManager, interval_seconds: Optional[float] = None):
        self.manager = manager
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None
            else manager.config.supervisor_interval_seconds
        )
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_once(self, now: Optional[datetime] = None) -> List[str]:
        """Run a single supervision pass.

        Returns:
            IDs of the tasks marked failed in this pass
        """
        stalled = []
        for task in self.manager.store.list_tasks():
            if not task.status.is_active:
                continue
            try:
                if self.manager.check_stall(task.id, now):
                    stalled.append(task.id)
            except (InvalidTransitionError, TaskNotFoundError) as e:
                # The task may have moved on between listing and checking.
                logger.debug(f"Stall check for task {task.id} skipped: {e}")
        if stalled:
            logger.warning(f"Marked {len(stalled)} stalled task(s) as failed: {', '.join(stalled)}")
        return stalled

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.check_once()
            except Exception as e:
                logger.error(f"Stall supervisor pass failed: {e}", exc_info=True)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stall-supervisor", daemon=True)
        self._thread.start()
        logger.info(f"Stall supervisor started (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
