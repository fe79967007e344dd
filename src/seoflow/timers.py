from __future__ import annotations

import heapq
import itertools
import logging
import threading
from typing import Callable, Protocol

from .utils import log_event

Task = Callable[[], None]


class DelayScheduler(Protocol):
    def call_later(self, delay_ms: int, task: Task) -> None:
        ...


class ThreadTimerScheduler:
    """Runs delayed tasks on daemon ``threading.Timer`` threads."""

    def __init__(self) -> None:
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._logger = logging.getLogger("seoflow.timers")

    def call_later(self, delay_ms: int, task: Task) -> None:
        timer: threading.Timer

        def _run() -> None:
            with self._lock:
                self._timers.discard(timer)
            try:
                task()
            except Exception as exc:  # noqa: BLE001
                log_event(self._logger, logging.ERROR, "delayed_task_error", error=str(exc))

        timer = threading.Timer(max(0, delay_ms) / 1000.0, _run)
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class ManualScheduler:
    """Virtual clock for tests; tasks run only when time is advanced."""

    def __init__(self) -> None:
        self.now_ms = 0
        self.delays: list[int] = []
        self._heap: list[tuple[int, int, Task]] = []
        self._seq = itertools.count()

    def call_later(self, delay_ms: int, task: Task) -> None:
        self.delays.append(int(delay_ms))
        heapq.heappush(self._heap, (self.now_ms + int(delay_ms), next(self._seq), task))

    def advance(self, ms: int) -> int:
        target = self.now_ms + int(ms)
        ran = 0
        while self._heap and self._heap[0][0] <= target:
            due, _, task = heapq.heappop(self._heap)
            self.now_ms = due
            task()
            ran += 1
        self.now_ms = target
        return ran

    def run_all(self, max_tasks: int = 1000) -> int:
        ran = 0
        while self._heap and ran < max_tasks:
            due, _, task = heapq.heappop(self._heap)
            self.now_ms = max(self.now_ms, due)
            task()
            ran += 1
        return ran

    def pending(self) -> int:
        return len(self._heap)
