from __future__ import annotations

import threading


class ConcurrencyLimiter:
    """Per-project running-job counter shared by the consumer threads of one worker.

    The count is process-local: two worker processes each admit up to
    ``limit`` jobs for the same project.
    """

    def __init__(self, limit: int = 1) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._running: dict[str, int] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            current = self._running.get(key, 0)
            if current >= self.limit:
                return False
            self._running[key] = current + 1
            return True

    def release(self, key: str) -> None:
        with self._lock:
            current = self._running.get(key, 0)
            if current <= 1:
                self._running.pop(key, None)
            else:
                self._running[key] = current - 1

    def running(self, key: str) -> int:
        with self._lock:
            return self._running.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._running)
