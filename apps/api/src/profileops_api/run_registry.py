from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class QueueRun:
    """Handle for one queue run, carrying its cooperative stop flag."""

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        self.started_at = datetime.now(timezone.utc).isoformat()
        self._stop_event = threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        self._stop_event.set()

    def __repr__(self) -> str:
        return f"QueueRun(run_id={self.run_id!r}, stop_requested={self.stop_requested})"


class RunRegistry:
    """Holds at most one active queue run for the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: QueueRun | None = None

    def register(self, run: QueueRun) -> bool:
        with self._lock:
            if self._current is not None:
                logger.info("queue run %s rejected: %s already active", run.run_id, self._current.run_id)
                return False
            self._current = run
        logger.info("queue run %s registered", run.run_id)
        return True

    def request_stop(self) -> bool:
        with self._lock:
            current = self._current
            if current is None:
                return False
            current.request_stop()
        logger.info("stop requested for queue run %s", current.run_id)
        return True

    def clear(self, run: QueueRun | None = None) -> None:
        with self._lock:
            if self._current is None:
                return
            if run is not None and self._current is not run:
                return
            cleared = self._current
            self._current = None
        logger.info("queue run %s cleared", cleared.run_id)

    def current(self) -> QueueRun | None:
        with self._lock:
            return self._current

    def is_active(self) -> bool:
        return self.current() is not None
