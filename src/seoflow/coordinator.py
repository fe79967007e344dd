from __future__ import annotations

import logging
from typing import Any

from .db import is_integrity_error
from .models import Job, QueueMessage
from .payloads import target_id_for, validate_payload
from .queue import QueuePublishError, QueueTransport
from .storage import (
    append_job_log,
    cancel_job,
    clear_delivery_failed,
    get_job,
    get_job_status,
    insert_job,
    list_project_jobs,
    list_stuck_jobs,
    mark_delivery_failed,
    mark_job_failed,
    mark_job_started,
    mark_job_succeeded,
    release_job,
    update_job_progress,
)
from .utils import log_event


class JobCoordinator:
    """Creates jobs and applies lifecycle events to job rows.

    Every callback is a single conditional UPDATE, so duplicate or late
    deliveries leave the row unchanged instead of raising.
    """

    def __init__(self, conn: Any, queue: QueueTransport, list_limit: int = 50) -> None:
        self.conn = conn
        self.queue = queue
        self.list_limit = list_limit
        self.logger = logging.getLogger("seoflow.coordinator")

    def enqueue(
        self,
        project_id: str,
        job_type: str,
        payload: dict[str, object] | None = None,
        job_id: str | None = None,
        priority: int = 0,
        run_at: str | None = None,
    ) -> str:
        body = dict(payload or {})
        body["project_id"] = project_id
        body = validate_payload(job_type, body)
        job_type = str(getattr(job_type, "value", job_type))
        try:
            job_id = insert_job(
                self.conn,
                project_id,
                job_type,
                body,
                job_id=job_id,
                target_id=target_id_for(job_type, body),
                priority=priority,
                run_at=run_at,
            )
        except Exception as exc:
            self.conn.rollback()
            if not is_integrity_error(exc):
                log_event(
                    self.logger,
                    logging.ERROR,
                    "job_insert_failed",
                    project_id=project_id,
                    job_type=job_type,
                    error=str(exc),
                )
            raise
        message = QueueMessage(
            job_id=job_id,
            job_type=job_type,
            payload=body,
            retries=0,
            priority=priority,
            run_at=run_at,
        )
        try:
            self.queue.publish(message)
        except Exception as exc:  # noqa: BLE001
            self._record_delivery_failure(job_id, exc)
            raise QueuePublishError(f"publish failed for {job_id}: {exc}") from exc
        log_event(
            self.logger,
            logging.INFO,
            "job_enqueued",
            job_id=job_id,
            job_type=job_type,
            project_id=project_id,
        )
        return job_id

    def publish(self, message: QueueMessage) -> bool:
        """Hand an existing job's message back to the transport."""
        try:
            self.queue.publish(message)
        except Exception as exc:  # noqa: BLE001
            self._record_delivery_failure(message.job_id, exc)
            return False
        return True

    def redeliver(self, job_id: str) -> bool:
        job = get_job(self.conn, job_id, include_logs=False)
        if not job or job.status != "queued":
            return False
        message = QueueMessage(
            job_id=job.id,
            job_type=job.job_type,
            payload=job.payload,
            retries=job.retries,
            priority=job.priority,
            run_at=job.run_at,
        )
        if not self.publish(message):
            return False
        clear_delivery_failed(self.conn, job.id)
        append_job_log(self.conn, job.id, "redelivered", "info")
        log_event(self.logger, logging.INFO, "job_redelivered", job_id=job.id)
        return True

    def on_started(self, job_id: str, retries: int | None = None) -> bool:
        started = mark_job_started(self.conn, job_id, retries=retries)
        if not started:
            log_event(
                self.logger,
                logging.INFO,
                "job_start_skipped",
                job_id=job_id,
                status=get_job_status(self.conn, job_id),
            )
        return started

    def on_succeeded(self, job_id: str, result: dict[str, object] | None = None) -> bool:
        applied = mark_job_succeeded(self.conn, job_id, result)
        if not applied:
            log_event(
                self.logger,
                logging.DEBUG,
                "job_succeeded_ignored",
                job_id=job_id,
                status=get_job_status(self.conn, job_id),
            )
        return applied

    def on_failed(self, job_id: str, error: str) -> bool:
        return mark_job_failed(self.conn, job_id, error)

    def on_released(
        self,
        job_id: str,
        retries: int | None = None,
        run_at: str | None = None,
        error: str | None = None,
    ) -> bool:
        return release_job(self.conn, job_id, retries=retries, run_at=run_at, error=error)

    def cancel(self, job_id: str, reason: str = "canceled_by_admin") -> bool:
        canceled = cancel_job(self.conn, job_id, reason)
        if canceled:
            append_job_log(self.conn, job_id, f"canceled: {reason}", "warn")
            log_event(self.logger, logging.INFO, "job_canceled", job_id=job_id, reason=reason)
        return canceled

    def append_log(self, job_id: str, message: str, level: str = "info") -> None:
        append_job_log(self.conn, job_id, message, level)

    def update_progress(self, job_id: str, progress_pct: int) -> bool:
        return update_job_progress(self.conn, job_id, progress_pct)

    def get_job(self, job_id: str) -> Job | None:
        return get_job(self.conn, job_id)

    def list_project_jobs(
        self,
        project_id: str,
        job_type: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        return list_project_jobs(
            self.conn,
            project_id,
            job_type=job_type,
            status=status,
            limit=min(limit or self.list_limit, self.list_limit),
        )

    def list_stuck_jobs(self, older_than_seconds: int, check_queue: bool = False) -> list[Job]:
        return list_stuck_jobs(self.conn, older_than_seconds, check_queue=check_queue)

    def _record_delivery_failure(self, job_id: str, exc: Exception) -> None:
        error = f"queue_publish_failed: {exc}"
        mark_delivery_failed(self.conn, job_id, error)
        append_job_log(self.conn, job_id, error, "error")
        log_event(self.logger, logging.ERROR, "job_publish_failed", job_id=job_id, error=str(exc))
