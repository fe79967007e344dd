from __future__ import annotations

import argparse
import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Any, Callable

from .config import Config, ConfigError, default_config, load_runtime_config
from .coordinator import JobCoordinator
from .guards import EnqueueError, enqueue_generate, enqueue_stage
from .limiter import ConcurrencyLimiter
from .models import JobType, QueueMessage
from .payloads import PayloadError
from .processors import PermanentStageError, ProcessorRegistry, StageContext, default_registry
from .queue import get_queue
from .schedule import maybe_run_schedule
from .storage import get_plan_item, init_db
from .timers import DelayScheduler, ThreadTimerScheduler
from .utils import configure_logging, log_event, parse_day, utc_now_iso_offset, utc_today

TICK_INTERVAL_SECONDS = 60

NON_RETRYABLE_ERRORS = (PermanentStageError, PayloadError, EnqueueError)


def backoff_delay_ms(base_delay_ms: int, attempt: int) -> int:
    return int(base_delay_ms) * (2 ** int(attempt))


class Worker:
    """Consumes job messages and drives them through their lifecycle.

    ``connect`` must return a new connection on every call; the worker opens
    one per message and closes it when the message is done.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        queue: Any,
        config: Config | None = None,
        registry: ProcessorRegistry | None = None,
        limiter: ConcurrencyLimiter | None = None,
        scheduler: DelayScheduler | None = None,
        worker_id: str = "worker",
    ) -> None:
        self.connect = connect
        self.queue = queue
        self.config = config or default_config()
        self.registry = registry or default_registry()
        self.limiter = limiter or ConcurrencyLimiter(self.config.worker.project_concurrency)
        self.scheduler = scheduler or ThreadTimerScheduler()
        self.worker_id = worker_id
        self.logger = logging.getLogger("seoflow.worker")

    def handle_message(self, message: QueueMessage) -> None:
        project_id = message.project_id
        if not self.limiter.try_acquire(project_id):
            log_event(
                self.logger,
                logging.DEBUG,
                "project_concurrency_saturated",
                job_id=message.job_id,
                project_id=project_id,
            )
            self.scheduler.call_later(
                self.config.worker.release_delay_ms,
                lambda: self._republish(message),
            )
            return
        try:
            conn = self.connect()
            try:
                self._process(conn, message)
            finally:
                conn.close()
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "job_handler_error",
                job_id=message.job_id,
                job_type=message.job_type,
                error=str(exc),
            )
        finally:
            self.limiter.release(project_id)

    def _process(self, conn, message: QueueMessage) -> None:
        coordinator = self._coordinator(conn)
        job_id = message.job_id
        if not coordinator.on_started(job_id, retries=message.retries):
            log_event(self.logger, logging.INFO, "job_message_dropped", job_id=job_id)
            return
        try:
            self._run_started(conn, coordinator, message)
        except Exception as exc:
            self._fail_abandoned(message, exc)
            raise

    def _fail_abandoned(self, message: QueueMessage, exc: Exception) -> None:
        # The row is still running and nothing else will move it.
        error = f"handler_error: {exc}"
        try:
            conn = self.connect()
        except Exception as connect_exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "job_abandon_error",
                job_id=message.job_id,
                error=str(connect_exc),
            )
            return
        try:
            if self._coordinator(conn).on_failed(message.job_id, error):
                log_event(
                    self.logger,
                    logging.WARNING,
                    "job_abandoned",
                    job_id=message.job_id,
                    error=error,
                )
        except Exception as fail_exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "job_abandon_error",
                job_id=message.job_id,
                error=str(fail_exc),
            )
        finally:
            conn.close()

    def _run_started(self, conn, coordinator: JobCoordinator, message: QueueMessage) -> None:
        job_id = message.job_id
        coordinator.append_log(job_id, "running")
        job = coordinator.get_job(job_id)
        log_event(
            self.logger,
            logging.INFO,
            "job_started",
            job_id=job_id,
            job_type=message.job_type,
            project_id=message.project_id,
            attempt=message.retries,
        )

        processor = self.registry.get(message.job_type)
        if processor is None:
            log_event(
                self.logger,
                logging.WARNING,
                "job_type_unhandled",
                job_id=job_id,
                job_type=message.job_type,
            )
            coordinator.append_log(job_id, f"no processor for {message.job_type}", "warn")
            coordinator.on_succeeded(job_id, {"skipped": True, "reason": "no_processor"})
            return

        ctx = StageContext(conn=conn, job=job, coordinator=coordinator, logger=self.logger)
        try:
            result = processor(ctx, dict(job.payload))
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(coordinator, message, exc)
            return

        if not coordinator.on_succeeded(job_id, result):
            log_event(self.logger, logging.INFO, "job_result_discarded", job_id=job_id)
            return
        coordinator.append_log(job_id, "succeeded")
        log_event(
            self.logger,
            logging.INFO,
            "job_succeeded",
            job_id=job_id,
            job_type=message.job_type,
            project_id=message.project_id,
        )
        self._chain(coordinator, job.job_type, job.project_id, job.payload, result or {})

    def _handle_failure(
        self, coordinator: JobCoordinator, message: QueueMessage, exc: Exception
    ) -> None:
        job_id = message.job_id
        error = str(exc) or exc.__class__.__name__
        attempt = message.retries
        max_retries = self.config.worker.max_retries
        if not isinstance(exc, NON_RETRYABLE_ERRORS) and attempt < max_retries:
            delay_ms = backoff_delay_ms(self.config.worker.base_delay_ms, attempt)
            run_at = utc_now_iso_offset(seconds=delay_ms / 1000.0)
            if not coordinator.on_released(job_id, retries=attempt + 1, run_at=run_at, error=error):
                log_event(self.logger, logging.INFO, "job_retry_skipped", job_id=job_id)
                return
            coordinator.append_log(
                job_id,
                f"attempt {attempt + 1} failed: {error}; retrying in {delay_ms}ms",
                "warn",
            )
            log_event(
                self.logger,
                logging.WARNING,
                "job_retry_scheduled",
                job_id=job_id,
                attempt=attempt,
                delay_ms=delay_ms,
                error=error,
            )
            retry = replace(message, retries=attempt + 1, run_at=run_at)
            self.scheduler.call_later(delay_ms, lambda: self._republish(retry))
            return
        coordinator.on_failed(job_id, error)
        coordinator.append_log(job_id, f"failed: {error}", "error")
        log_event(
            self.logger,
            logging.ERROR,
            "job_failed",
            job_id=job_id,
            job_type=message.job_type,
            attempt=attempt,
            error=error,
        )

    def _republish(self, message: QueueMessage) -> None:
        conn = self.connect()
        try:
            self._coordinator(conn).publish(message)
        finally:
            conn.close()

    def _chain(
        self,
        coordinator: JobCoordinator,
        job_type: str,
        project_id: str,
        payload: dict[str, Any],
        result: dict[str, Any],
    ) -> None:
        for successor in self.config.pipeline.successors.get(job_type, []):
            try:
                if successor == JobType.GENERATE.value:
                    self._chain_generate(coordinator, result)
                    continue
                outcome = enqueue_stage(
                    coordinator,
                    project_id,
                    successor,
                    self._successor_payload(successor, payload, result),
                )
                log_event(
                    self.logger,
                    logging.INFO,
                    "job_chained",
                    job_type=successor,
                    job_id=outcome.job_id,
                    reused=outcome.reused,
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "job_chain_error",
                    project_id=project_id,
                    job_type=successor,
                    error=str(exc),
                )

    def _chain_generate(self, coordinator: JobCoordinator, result: dict[str, Any]) -> None:
        horizon = utc_today().toordinal() + self.config.pipeline.draft_lookahead_days
        for plan_item_id in result.get("plan_item_ids") or []:
            plan_item = get_plan_item(coordinator.conn, str(plan_item_id))
            if not plan_item or plan_item.status != "planned":
                continue
            if parse_day(plan_item.planned_date).toordinal() > horizon:
                continue
            try:
                enqueue_generate(coordinator, plan_item.id)
            except EnqueueError as exc:
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "job_chain_skipped",
                    plan_item_id=plan_item.id,
                    code=exc.code,
                )

    def _successor_payload(
        self, successor: str, payload: dict[str, Any], result: dict[str, Any]
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if payload.get("locale"):
            body["locale"] = payload["locale"]
        if successor == JobType.DISCOVERY.value:
            body["page_ids"] = list(result.get("page_ids") or [])
        elif successor == JobType.PLAN.value:
            body["days"] = self.config.pipeline.plan_days
            body["keywords"] = list(result.get("keywords") or [])
            if result.get("keyword_ids"):
                body["keyword_ids"] = list(result["keyword_ids"])
        return body

    def _coordinator(self, conn) -> JobCoordinator:
        return JobCoordinator(conn, self.queue, list_limit=self.config.jobs.list_limit)

    def tick(self) -> None:
        conn = self.connect()
        try:
            maybe_run_schedule(self._coordinator(conn), self.config.scheduler, self.worker_id)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "schedule_tick_error", error=str(exc))
        finally:
            conn.close()

    def run_once(self) -> int:
        self.tick()
        handled = 0
        while True:
            while self.queue.consume_one(self.handle_message):
                handled += 1
            if not self.scheduler.pending():
                return handled
            time.sleep(0.05)

    def run(self, stop_event: threading.Event | None = None, concurrency: int | None = None) -> None:
        stop_event = stop_event or threading.Event()
        consumers = max(1, concurrency or self.config.worker.concurrency)
        poll = self.config.worker.poll_interval_seconds
        with ThreadPoolExecutor(max_workers=consumers + 1) as executor:
            futures = {
                executor.submit(self.queue.consume, self.handle_message, stop_event, poll)
                for _ in range(consumers)
            }
            futures.add(executor.submit(self._tick_loop, stop_event))
            try:
                while futures and not stop_event.is_set():
                    done, futures = wait(futures, timeout=poll, return_when=FIRST_COMPLETED)
                    for future in done:
                        exc = future.exception()
                        if exc is not None:
                            log_event(
                                self.logger, logging.ERROR, "worker_thread_error", error=str(exc)
                            )
            except KeyboardInterrupt:
                log_event(self.logger, logging.INFO, "worker_stopping", worker_id=self.worker_id)
            finally:
                stop_event.set()

    def _tick_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(TICK_INTERVAL_SECONDS)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="seoflow-worker")
    parser.add_argument("--once", action="store_true", help="Drain ready messages and exit")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("SF_WORKER_CONCURRENCY", "0")),
        help="Consumer threads (defaults to worker.concurrency from config)",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = configure_logging("seoflow.worker")
    try:
        conn = init_db()
        config = load_runtime_config(conn)
        conn.close()
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if config.queue.backend != "sql":
        log_event(
            logger,
            logging.WARNING,
            "queue_backend_in_process",
            backend=config.queue.backend,
        )
    queue = get_queue(
        config.queue.backend,
        init_db,
        args.worker_id,
        config.queue.lock_timeout_seconds,
    )
    worker = Worker(init_db, queue, config=config, worker_id=args.worker_id)
    log_event(
        logger,
        logging.INFO,
        "worker_started",
        worker_id=args.worker_id,
        backend=config.queue.backend,
        processors=",".join(worker.registry.registered()),
    )
    if args.once:
        handled = worker.run_once()
        log_event(logger, logging.INFO, "worker_once_done", handled=handled)
        return 0
    worker.run(concurrency=args.concurrency or None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
