"""
Progress Listener Registry
===========================
Thread-safe mapping from job id to the callback that observes that job.

Each pipeline instance owns its own registry, so separate pipelines (for
example in tests) never see each other's listeners.
"""

import logging
import threading
from typing import Callable, Dict, Optional

ProgressCallback = Callable[[str, int, str], None]

logger = logging.getLogger("scan3d.progress")


class ProgressListenerRegistry:
    """Insert, remove and look up listeners by job id under a lock."""

    def __init__(self):
        self._listeners: Dict[str, ProgressCallback] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, callback: ProgressCallback):
        if not callable(callback):
            raise TypeError("Progress listener must be callable")
        with self._lock:
            self._listeners[job_id] = callback

    def unregister(self, job_id: str) -> Optional[ProgressCallback]:
        with self._lock:
            return self._listeners.pop(job_id, None)

    def get(self, job_id: str) -> Optional[ProgressCallback]:
        with self._lock:
            return self._listeners.get(job_id)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._listeners

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def notify(self, job_id: str, stage: str, progress: int, message: str) -> bool:
        """
        Deliver one notification to the job's listener, if any.

        The callback runs outside the lock. An exception raised by the
        callback is logged and does not reach the caller.

        Returns:
            True when a listener was present
        """
        return self._deliver(self.get(job_id), job_id, stage, progress, message)

    def pop_and_notify(self, job_id: str, stage: str, progress: int, message: str) -> bool:
        """
        Remove the job's listener and deliver it one last notification.

        The removal happens under the lock before the callback runs, so a
        listener registered for the same id afterwards (for a restarted
        job) is left in place.

        Returns:
            True when a listener was present
        """
        return self._deliver(self.unregister(job_id), job_id, stage, progress, message)

    @staticmethod
    def _deliver(callback, job_id: str, stage: str, progress: int, message: str) -> bool:
        if callback is None:
            return False
        try:
            callback(stage, progress, message)
        except Exception:
            logger.exception(f"Progress listener for job {job_id} raised")
        return True
