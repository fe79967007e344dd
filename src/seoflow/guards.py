"""Check-then-enqueue helpers that keep one active job per logical target.

The lookup runs against ``jobs.target_id``; the partial unique index on
active rows catches callers that race past the lookup, and the loser is
answered with the winner's job.
"""

from __future__ import annotations

import logging

from .coordinator import JobCoordinator
from .db import is_integrity_error
from .models import EnqueueResult, JobType
from .payloads import parse_job_type
from .storage import (
    find_active_job,
    get_article,
    get_article_for_plan_item,
    get_integration,
    get_plan_item,
)
from .utils import log_event

logger = logging.getLogger("seoflow.guards")


class EnqueueError(ValueError):
    def __init__(self, code: str, message: str | None = None, status: int = 400) -> None:
        super().__init__(message or code)
        self.code = code
        self.status = status


def enqueue_generate(coordinator: JobCoordinator, plan_item_id: str) -> EnqueueResult:
    conn = coordinator.conn
    plan_item = get_plan_item(conn, plan_item_id)
    if not plan_item:
        raise EnqueueError("plan_item_not_found", f"plan item {plan_item_id} not found", 404)
    if get_article_for_plan_item(conn, plan_item_id):
        raise EnqueueError("article_exists", f"plan item {plan_item_id} already has an article", 409)
    return _enqueue_keyed(
        coordinator,
        plan_item.project_id,
        JobType.GENERATE,
        plan_item_id,
        {"plan_item_id": plan_item_id},
    )


def enqueue_publish(
    coordinator: JobCoordinator, article_id: str, integration_id: str
) -> EnqueueResult:
    conn = coordinator.conn
    article = get_article(conn, article_id)
    if not article:
        raise EnqueueError("article_not_found", f"article {article_id} not found", 404)
    if article.status == "published":
        raise EnqueueError("already_published", f"article {article_id} already published", 409)
    integration = get_integration(conn, integration_id)
    if not integration or integration.project_id != article.project_id:
        raise EnqueueError(
            "integration_not_found", f"integration {integration_id} not found", 404
        )
    if integration.status != "connected":
        raise EnqueueError(
            "integration_not_connected",
            f"integration {integration_id} is {integration.status}",
            409,
        )
    return _enqueue_keyed(
        coordinator,
        article.project_id,
        JobType.PUBLISH,
        article_id,
        {"article_id": article_id, "integration_id": integration_id},
    )


def enqueue_stage(
    coordinator: JobCoordinator,
    project_id: str,
    job_type: str | JobType,
    payload: dict[str, object] | None = None,
) -> EnqueueResult:
    """Enqueue a project-wide stage unless one of that type is already active."""
    kind = parse_job_type(job_type)
    existing = find_active_job(coordinator.conn, project_id, kind.value)
    if existing:
        return _reused(existing.id, project_id, existing.status, kind)
    job_id = coordinator.enqueue(project_id, kind.value, payload)
    return EnqueueResult(job_id=job_id, project_id=project_id, status="queued", reused=False)


def _enqueue_keyed(
    coordinator: JobCoordinator,
    project_id: str,
    kind: JobType,
    target_id: str,
    payload: dict[str, object],
) -> EnqueueResult:
    conn = coordinator.conn
    existing = find_active_job(conn, project_id, kind.value, target_id)
    if existing:
        return _reused(existing.id, project_id, existing.status, kind, target_id)
    try:
        job_id = coordinator.enqueue(project_id, kind.value, payload)
    except Exception as exc:
        if not is_integrity_error(exc):
            raise
        existing = find_active_job(conn, project_id, kind.value, target_id)
        if not existing:
            raise
        return _reused(existing.id, project_id, existing.status, kind, target_id)
    return EnqueueResult(job_id=job_id, project_id=project_id, status="queued", reused=False)


def _reused(
    job_id: str,
    project_id: str,
    status: str,
    kind: JobType,
    target_id: str | None = None,
) -> EnqueueResult:
    log_event(
        logger,
        logging.INFO,
        "job_reused",
        job_id=job_id,
        job_type=kind.value,
        project_id=project_id,
        target_id=target_id,
    )
    return EnqueueResult(job_id=job_id, project_id=project_id, status=status, reused=True)
