"""Queue transports used to deliver job messages to workers.

Both transports are at-least-once: a message may be handed to a handler more
than once, and the job row (not the message) is the source of truth for state.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Protocol

from .models import QueueMessage
from .utils import json_dumps, json_loads, log_event, utc_now_iso, utc_now_iso_offset

Handler = Callable[[QueueMessage], None]


class QueuePublishError(RuntimeError):
    pass


class QueueTransport(Protocol):
    def publish(self, message: QueueMessage) -> None:
        ...

    def consume(
        self,
        handler: Handler,
        stop_event: threading.Event,
        poll_interval: float = 1.0,
    ) -> None:
        ...

    def consume_one(self, handler: Handler) -> bool:
        ...


class InMemoryQueue:
    def __init__(self) -> None:
        self._queue: queue.Queue[QueueMessage] = queue.Queue()

    def publish(self, message: QueueMessage) -> None:
        self._queue.put(message)

    def receive(self, timeout: float | None = None) -> QueueMessage | None:
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def consume(
        self,
        handler: Handler,
        stop_event: threading.Event,
        poll_interval: float = 1.0,
    ) -> None:
        while not stop_event.is_set():
            message = self.receive(timeout=poll_interval)
            if message is None:
                continue
            handler(message)

    def consume_one(self, handler: Handler) -> bool:
        message = self.receive()
        if message is None:
            return False
        handler(message)
        return True

    def drain(self, handler: Handler, limit: int | None = None) -> int:
        """Deliver every message currently queued, in the calling thread."""
        handled = 0
        while limit is None or handled < limit:
            message = self.receive()
            if message is None:
                break
            handler(message)
            handled += 1
        return handled

    def pending(self) -> int:
        return self._queue.qsize()


class SqlQueue:
    """Queue backed by the ``queue_messages`` table.

    Messages are claimed inside a write transaction and deleted once the
    handler returns. Claims older than ``lock_timeout_seconds`` are handed
    out again.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        worker_id: str = "worker",
        lock_timeout_seconds: int = 600,
    ) -> None:
        self._connect = connect
        self._worker_id = worker_id
        self._lock_timeout_seconds = lock_timeout_seconds
        self._local = threading.local()
        self._logger = logging.getLogger("seoflow.queue")

    def _conn(self):
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    def publish(self, message: QueueMessage) -> None:
        conn = self._conn()
        now = utc_now_iso()
        try:
            conn.execute(
                """
                INSERT INTO queue_messages
                    (job_id, job_type, payload_json, retries, priority, available_at,
                     claimed_by, claimed_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, ?)
                """,
                (
                    message.job_id,
                    message.job_type,
                    json_dumps(message.payload),
                    message.retries,
                    message.priority,
                    message.run_at or now,
                    now,
                ),
            )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            raise QueuePublishError(str(exc)) from exc

    def claim(self) -> tuple[int, QueueMessage] | None:
        conn = self._conn()
        now = utc_now_iso()
        stale_cutoff = utc_now_iso_offset(seconds=-self._lock_timeout_seconds)
        with conn.transaction():
            conn.execute(
                """
                UPDATE queue_messages
                SET claimed_by = NULL, claimed_at = NULL
                WHERE claimed_by IS NOT NULL AND claimed_at < ?
                """,
                (stale_cutoff,),
            )
            row = conn.execute(
                """
                SELECT id, job_id, job_type, payload_json, retries, priority, available_at
                FROM queue_messages
                WHERE claimed_by IS NULL AND available_at <= ?
                ORDER BY priority DESC, available_at ASC, id ASC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
                """,
                (now,),
            ).fetchone()
            if not row:
                return None
            cursor = conn.execute(
                """
                UPDATE queue_messages
                SET claimed_by = ?, claimed_at = ?
                WHERE id = ? AND claimed_by IS NULL
                """,
                (self._worker_id, now, row[0]),
            )
            if cursor.rowcount != 1:
                return None
        message = QueueMessage(
            job_id=row[1],
            job_type=row[2],
            payload=json_loads(row[3], {}),
            retries=int(row[4] or 0),
            priority=int(row[5] or 0),
            run_at=row[6],
        )
        return int(row[0]), message

    def ack(self, message_id: int) -> None:
        conn = self._conn()
        conn.execute("DELETE FROM queue_messages WHERE id = ?", (message_id,))
        conn.commit()

    def nack(self, message_id: int) -> None:
        conn = self._conn()
        conn.execute(
            "UPDATE queue_messages SET claimed_by = NULL, claimed_at = NULL WHERE id = ?",
            (message_id,),
        )
        conn.commit()

    def consume(
        self,
        handler: Handler,
        stop_event: threading.Event,
        poll_interval: float = 1.0,
    ) -> None:
        while not stop_event.is_set():
            if not self.consume_one(handler):
                stop_event.wait(poll_interval)

    def consume_one(self, handler: Handler) -> bool:
        claimed = self.claim()
        if claimed is None:
            return False
        message_id, message = claimed
        try:
            handler(message)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "queue_handler_error",
                job_id=message.job_id,
                error=str(exc),
            )
            self.nack(message_id)
            return True
        self.ack(message_id)
        return True

    def pending(self) -> int:
        row = self._conn().execute("SELECT COUNT(*) FROM queue_messages").fetchone()
        return int(row[0]) if row else 0

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


def get_queue(backend: str, connect: Callable[[], Any], worker_id: str, lock_timeout_seconds: int):
    if backend == "memory":
        return InMemoryQueue()
    if backend == "sql":
        return SqlQueue(connect, worker_id=worker_id, lock_timeout_seconds=lock_timeout_seconds)
    raise ValueError(f"unknown queue backend {backend}")
