"""
Per-job "already running" guard.

APScheduler's max_instances=1 stops the scheduler from overlapping a job with
itself; this guard also covers manual invocations from admin tooling or tests
that call the job function directly while a scheduled tick is in flight.
"""

import logging
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class JobRunGuard:
    """Non-blocking mutex with a readable ``running`` flag"""

    def __init__(self, name: str):
        self.name = name
        self.running = False
        self._lock = threading.Lock()

    @contextmanager
    def hold(self):
        """Yield True if this caller owns the run, False if a run is already in progress"""
        if not self._lock.acquire(blocking=False):
            logger.warning(f"⏭️ {self.name}: previous run still in progress - skipping tick")
            yield False
            return

        self.running = True
        try:
            yield True
        finally:
            self.running = False
            self._lock.release()
