from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from datetime import date

from .config import (
    ConfigError,
    get_runtime_config,
    load_config_file,
    load_runtime_config,
    set_runtime_config,
)
from .coordinator import JobCoordinator
from .db import get_db_url, get_state_db_path, is_postgres_url
from .guards import EnqueueError, enqueue_generate, enqueue_publish, enqueue_stage
from .models import JobType
from .payloads import PayloadError
from .queue import QueuePublishError, get_queue
from .schedule import run_schedule
from .storage import init_db
from .utils import configure_logging, log_event


def _open(logger: logging.Logger, publishing: bool = True):
    conn = init_db()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    if publishing and config.queue.backend != "sql":
        log_event(
            logger,
            logging.ERROR,
            "queue_backend_in_process",
            backend=config.queue.backend,
            hint="set queue.backend to sql to publish jobs from the CLI",
        )
        conn.close()
        return None, None
    queue = get_queue(
        config.queue.backend, lambda: conn, "cli", config.queue.lock_timeout_seconds
    )
    return conn, JobCoordinator(conn, queue, list_limit=config.jobs.list_limit)


def _log_job(logger: logging.Logger, job) -> None:
    log_event(
        logger,
        logging.INFO,
        "job",
        job_id=job.id,
        project_id=job.project_id,
        job_type=job.job_type,
        status=job.status,
        retries=job.retries,
        progress_pct=job.progress_pct,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        error=job.error,
        delivery_failed_at=job.delivery_failed_at,
    )


def _log_enqueue(logger: logging.Logger, outcome) -> None:
    log_event(
        logger,
        logging.INFO,
        "job_reused" if outcome.reused else "job_enqueued",
        job_id=outcome.job_id,
        project_id=outcome.project_id,
        status=outcome.status,
    )


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    conn.close()
    db_url = get_db_url()
    target = "postgres" if db_url and is_postgres_url(db_url) else get_state_db_path()
    log_event(logger, logging.INFO, "db_migrated", target=target)
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    logger.info(json.dumps(cfg, indent=2, sort_keys=True))
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        cfg = load_config_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = init_db()
    try:
        set_runtime_config(conn, cfg)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger, publishing=False)
    if coordinator is None:
        return 1
    try:
        jobs = coordinator.list_project_jobs(
            args.project, job_type=args.type, status=args.status, limit=args.limit
        )
    finally:
        conn.close()
    for job in jobs:
        _log_job(logger, job)
    log_event(logger, logging.INFO, "jobs_listed", project_id=args.project, count=len(jobs))
    return 0


def _cmd_jobs_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger, publishing=False)
    if coordinator is None:
        return 1
    try:
        job = coordinator.get_job(args.job_id)
    finally:
        conn.close()
    if job is None:
        log_event(logger, logging.ERROR, "job_not_found", job_id=args.job_id)
        return 1
    logger.info(json.dumps(dataclasses.asdict(job), indent=2, sort_keys=True))
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as exc:
        log_event(logger, logging.ERROR, "payload_invalid", error=str(exc))
        return 1
    if not isinstance(payload, dict):
        log_event(logger, logging.ERROR, "payload_invalid", error="payload must be a JSON object")
        return 1
    conn, coordinator = _open(logger)
    if coordinator is None:
        return 1
    try:
        if args.type == JobType.GENERATE.value:
            outcome = enqueue_generate(coordinator, str(payload.get("plan_item_id") or ""))
        elif args.type == JobType.PUBLISH.value:
            outcome = enqueue_publish(
                coordinator,
                str(payload.get("article_id") or ""),
                str(payload.get("integration_id") or ""),
            )
        else:
            outcome = enqueue_stage(coordinator, args.project, args.type, payload)
    except EnqueueError as exc:
        log_event(logger, logging.ERROR, "enqueue_rejected", code=exc.code, error=str(exc))
        return 1
    except (PayloadError, QueuePublishError) as exc:
        log_event(logger, logging.ERROR, "enqueue_error", error=str(exc))
        return 1
    finally:
        conn.close()
    _log_enqueue(logger, outcome)
    return 0


def _cmd_jobs_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger, publishing=False)
    if coordinator is None:
        return 1
    try:
        canceled = coordinator.cancel(args.job_id, args.reason)
    finally:
        conn.close()
    if not canceled:
        log_event(logger, logging.ERROR, "job_not_cancelable", job_id=args.job_id)
        return 1
    return 0


def _cmd_jobs_stuck(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger, publishing=False)
    if coordinator is None:
        return 1
    try:
        config = load_runtime_config(conn)
        threshold = args.older_than if args.older_than is not None else config.jobs.stuck_after_seconds
        jobs = coordinator.list_stuck_jobs(threshold, check_queue=config.queue.backend == "sql")
    finally:
        conn.close()
    for job in jobs:
        _log_job(logger, job)
    log_event(logger, logging.INFO, "jobs_stuck", count=len(jobs), older_than_seconds=threshold)
    return 0


def _cmd_jobs_redeliver(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger)
    if coordinator is None:
        return 1
    try:
        redelivered = coordinator.redeliver(args.job_id)
    finally:
        conn.close()
    if not redelivered:
        log_event(logger, logging.ERROR, "job_redeliver_failed", job_id=args.job_id)
        return 1
    return 0


def _cmd_articles_generate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger)
    if coordinator is None:
        return 1
    try:
        outcome = enqueue_generate(coordinator, args.plan_item_id)
    except EnqueueError as exc:
        log_event(logger, logging.ERROR, "enqueue_rejected", code=exc.code, error=str(exc))
        return 1
    except QueuePublishError as exc:
        log_event(logger, logging.ERROR, "enqueue_error", error=str(exc))
        return 1
    finally:
        conn.close()
    _log_enqueue(logger, outcome)
    return 0


def _cmd_articles_publish(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger)
    if coordinator is None:
        return 1
    try:
        outcome = enqueue_publish(coordinator, args.article_id, args.integration)
    except EnqueueError as exc:
        log_event(logger, logging.ERROR, "enqueue_rejected", code=exc.code, error=str(exc))
        return 1
    except QueuePublishError as exc:
        log_event(logger, logging.ERROR, "enqueue_error", error=str(exc))
        return 1
    finally:
        conn.close()
    _log_enqueue(logger, outcome)
    return 0


def _cmd_schedule_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, coordinator = _open(logger)
    if coordinator is None:
        return 1
    try:
        result = run_schedule(
            coordinator,
            project_id=args.project,
            override_mode=args.policy,
            override_buffer_days=args.buffer_days,
            today=date.fromisoformat(args.today) if args.today else None,
        )
    finally:
        conn.close()
    logger.info(json.dumps(dataclasses.asdict(result), sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="seoflow", description="seoflow CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)

    config_show = config_subparsers.add_parser("show", help="Print the runtime config")
    config_show.set_defaults(func=_cmd_config_show)

    config_import = config_subparsers.add_parser("import", help="Replace runtime config from YAML")
    config_import.add_argument("path", help="Path to config YAML file")
    config_import.set_defaults(func=_cmd_config_import)

    jobs_parser = subparsers.add_parser("jobs", help="Job commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_list = jobs_subparsers.add_parser("list", help="List a project's jobs, newest first")
    jobs_list.add_argument("--project", required=True, help="Project id")
    jobs_list.add_argument("--type", choices=[kind.value for kind in JobType], help="Job type")
    jobs_list.add_argument("--status", help="Job status")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_show = jobs_subparsers.add_parser("show", help="Show a job with its logs")
    jobs_show.add_argument("job_id", help="Job id")
    jobs_show.set_defaults(func=_cmd_jobs_show)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("--project", required=True, help="Project id")
    jobs_enqueue.add_argument(
        "--type",
        required=True,
        choices=[kind.value for kind in JobType],
        help="Job type to enqueue",
    )
    jobs_enqueue.add_argument("--payload", help="Job payload as a JSON object")
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_cancel = jobs_subparsers.add_parser("cancel", help="Cancel a queued or running job")
    jobs_cancel.add_argument("job_id", help="Job id")
    jobs_cancel.add_argument("--reason", default="canceled_by_admin", help="Recorded reason")
    jobs_cancel.set_defaults(func=_cmd_jobs_cancel)

    jobs_stuck = jobs_subparsers.add_parser("stuck", help="List jobs that look undelivered")
    jobs_stuck.add_argument("--older-than", type=int, default=None, help="Age threshold in seconds")
    jobs_stuck.set_defaults(func=_cmd_jobs_stuck)

    jobs_redeliver = jobs_subparsers.add_parser("redeliver", help="Publish a queued job again")
    jobs_redeliver.add_argument("job_id", help="Job id")
    jobs_redeliver.set_defaults(func=_cmd_jobs_redeliver)

    articles_parser = subparsers.add_parser("articles", help="Article commands")
    articles_subparsers = articles_parser.add_subparsers(dest="articles_command", required=True)

    articles_generate = articles_subparsers.add_parser("generate", help="Enqueue draft generation")
    articles_generate.add_argument("plan_item_id", help="Plan item id")
    articles_generate.set_defaults(func=_cmd_articles_generate)

    articles_publish = articles_subparsers.add_parser("publish", help="Enqueue publishing")
    articles_publish.add_argument("article_id", help="Article id")
    articles_publish.add_argument("--integration", required=True, help="Integration id")
    articles_publish.set_defaults(func=_cmd_articles_publish)

    schedule_parser = subparsers.add_parser("schedule", help="Autopublish scheduler")
    schedule_subparsers = schedule_parser.add_subparsers(dest="schedule_command", required=True)

    schedule_run = schedule_subparsers.add_parser("run", help="Run the scheduler once")
    schedule_run.add_argument("--project", default=None, help="Limit to one project")
    schedule_run.add_argument(
        "--policy",
        choices=["immediate", "buffered", "manual"],
        default=None,
        help="Override the resolved publish mode",
    )
    schedule_run.add_argument("--buffer-days", type=int, default=None, help="Override buffer days")
    schedule_run.add_argument("--today", default=None, help="Run as of this UTC date (YYYY-MM-DD)")
    schedule_run.set_defaults(func=_cmd_schedule_run)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = configure_logging("seoflow")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
