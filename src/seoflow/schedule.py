"""Autopublish scheduler.

Each run enqueues ``generate`` for due plan items that have no article yet,
then enqueues ``publish`` for drafts whose project policy allows it today.
Both phases go through the enqueue guards, so repeated runs only add jobs
for targets that have none active.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from .config import SchedulerConfig
from .coordinator import JobCoordinator
from .guards import EnqueueError, enqueue_generate, enqueue_publish
from .models import (
    DEFAULT_BUFFER_DAYS,
    DEFAULT_PUBLISH_MODE,
    PUBLISH_MODES,
    Integration,
    SchedulePolicy,
    ScheduleRunResult,
)
from .storage import (
    get_latest_connected_integration,
    get_org,
    get_project,
    get_setting,
    list_draft_articles,
    list_due_plan_items,
    list_plan_item_ids_with_articles,
    release_lease,
    set_setting,
    try_acquire_lease,
)
from .utils import log_event, parse_day, parse_iso, utc_now_iso, utc_today

logger = logging.getLogger("seoflow.schedule")

SCHEDULER_LEASE = "scheduler.autopublish"
LAST_RUN_KEY = "scheduler.last_run_at"


def resolve_schedule_policy(
    conn: Any,
    project_id: str,
    override_mode: str | None = None,
    override_buffer_days: int | None = None,
) -> SchedulePolicy:
    project = get_project(conn, project_id)
    if not project:
        # Run-level overrides still apply; otherwise unknown projects stay manual.
        mode = _first_mode(override_mode, "manual")
        buffer_days = 0 if mode == "immediate" else _first_buffer_days(override_buffer_days)
        return SchedulePolicy(mode=mode, buffer_days=buffer_days)
    entitlements: dict[str, object] = {}
    if project.org_id:
        org = get_org(conn, project.org_id)
        if org:
            entitlements = org.entitlements
    mode = _first_mode(
        override_mode,
        project.auto_publish_policy,
        entitlements.get("autoPublishPolicy", entitlements.get("auto_publish_policy")),
    )
    buffer_days = _first_buffer_days(
        override_buffer_days,
        project.buffer_days,
        entitlements.get("bufferDays", entitlements.get("buffer_days")),
    )
    if mode == "immediate":
        buffer_days = 0
    return SchedulePolicy(mode=mode, buffer_days=buffer_days)


def publish_cutoff(policy: SchedulePolicy, today: date) -> date:
    if policy.mode == "buffered":
        return today - timedelta(days=policy.buffer_days)
    return today


def is_publish_eligible(policy: SchedulePolicy, planned_date: str | date, today: date) -> bool:
    if policy.mode == "manual":
        return False
    return parse_day(planned_date) <= publish_cutoff(policy, today)


def run_schedule(
    coordinator: JobCoordinator,
    project_id: str | None = None,
    override_mode: str | None = None,
    override_buffer_days: int | None = None,
    today: date | None = None,
) -> ScheduleRunResult:
    today = today or utc_today()
    generated = _generate_due_drafts(coordinator, today, project_id)
    published = _publish_eligible_drafts(
        coordinator, today, project_id, override_mode, override_buffer_days
    )
    result = ScheduleRunResult(
        generated_drafts=generated,
        enqueued_jobs=generated,
        published_articles=published,
    )
    log_event(
        logger,
        logging.INFO,
        "schedule_run",
        today=today.isoformat(),
        project_id=project_id or "*",
        generated_drafts=result.generated_drafts,
        published_articles=result.published_articles,
    )
    return result


def _generate_due_drafts(
    coordinator: JobCoordinator, today: date, project_id: str | None
) -> int:
    conn = coordinator.conn
    due = list_due_plan_items(conn, today.isoformat(), project_id)
    with_articles = list_plan_item_ids_with_articles(conn, [item.id for item in due])
    generated = 0
    for item in due:
        if item.id in with_articles:
            continue
        try:
            outcome = enqueue_generate(coordinator, item.id)
        except EnqueueError as exc:
            log_event(
                logger,
                logging.DEBUG,
                "schedule_generate_skipped",
                plan_item_id=item.id,
                code=exc.code,
            )
            continue
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "schedule_generate_error",
                plan_item_id=item.id,
                error=str(exc),
            )
            continue
        if not outcome.reused:
            generated += 1
    return generated


def _publish_eligible_drafts(
    coordinator: JobCoordinator,
    today: date,
    project_id: str | None,
    override_mode: str | None,
    override_buffer_days: int | None,
) -> int:
    conn = coordinator.conn
    policies: dict[str, SchedulePolicy] = {}
    integrations: dict[str, Integration | None] = {}
    published = 0
    for article, planned_date in list_draft_articles(conn, project_id):
        if not article.plan_item_id or not planned_date:
            continue
        try:
            policy = policies.get(article.project_id)
            if policy is None:
                policy = resolve_schedule_policy(
                    conn, article.project_id, override_mode, override_buffer_days
                )
                policies[article.project_id] = policy
            if not is_publish_eligible(policy, planned_date, today):
                continue
            if article.project_id not in integrations:
                integrations[article.project_id] = get_latest_connected_integration(
                    conn, article.project_id
                )
            integration = integrations[article.project_id]
            if integration is None:
                continue
            outcome = enqueue_publish(coordinator, article.id, integration.id)
        except EnqueueError as exc:
            log_event(
                logger,
                logging.DEBUG,
                "schedule_publish_skipped",
                article_id=article.id,
                code=exc.code,
            )
            continue
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "schedule_publish_error",
                article_id=article.id,
                error=str(exc),
            )
            continue
        if not outcome.reused:
            published += 1
    return published


def maybe_run_schedule(
    coordinator: JobCoordinator,
    config: SchedulerConfig,
    holder: str,
) -> ScheduleRunResult | None:
    conn = coordinator.conn
    if not config.enabled or not _schedule_due(conn, config.interval_minutes):
        return None
    if not try_acquire_lease(conn, SCHEDULER_LEASE, holder, config.lease_ttl_seconds):
        return None
    try:
        if not _schedule_due(conn, config.interval_minutes):
            return None
        result = run_schedule(coordinator)
        set_setting(conn, LAST_RUN_KEY, utc_now_iso())
        return result
    finally:
        release_lease(conn, SCHEDULER_LEASE, holder)


def _schedule_due(conn: Any, interval_minutes: int) -> bool:
    last_run = get_setting(conn, LAST_RUN_KEY, None)
    if not isinstance(last_run, str):
        return True
    try:
        last_dt = parse_iso(last_run)
    except ValueError:
        return True
    return last_dt + timedelta(minutes=interval_minutes) <= datetime.now(tz=timezone.utc)


def _first_mode(*candidates: object) -> str:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate in PUBLISH_MODES:
            return candidate
    return DEFAULT_PUBLISH_MODE


def _first_buffer_days(*candidates: object) -> int:
    for candidate in candidates:
        if isinstance(candidate, bool) or not isinstance(candidate, int):
            continue
        if candidate >= 0:
            return candidate
    return DEFAULT_BUFFER_DAYS
