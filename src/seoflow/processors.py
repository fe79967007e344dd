from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from .models import Article, Integration, Job, JobType, PlanItem
from .storage import (
    get_article,
    get_article_for_plan_item,
    get_integration,
    get_plan_item,
    get_project,
    insert_article,
    insert_plan_item,
    list_plan_item_titles,
    list_planned_dates,
    mark_article_published,
    set_plan_item_status,
)
from .utils import log_event, parse_day, utc_today
from .webhook import WebhookError, deliver_webhook

DEFAULT_PLAN_DAYS = 30


class PermanentStageError(RuntimeError):
    """Processor failure that retrying cannot fix."""


@dataclass
class StageContext:
    conn: Any
    job: Job
    coordinator: Any
    logger: logging.Logger

    def log(self, message: str, level: str = "info") -> None:
        self.coordinator.append_log(self.job.id, message, level)

    def progress(self, progress_pct: int) -> None:
        self.coordinator.update_progress(self.job.id, progress_pct)


Processor = Callable[[StageContext, dict[str, Any]], "dict[str, Any] | None"]
Drafter = Callable[[PlanItem], "tuple[str, str]"]
Publisher = Callable[[Article, Integration], "str | None"]


class ProcessorRegistry:
    def __init__(self) -> None:
        self._processors: dict[JobType, Processor] = {}

    def register(self, job_type: str | JobType, processor: Processor) -> None:
        self._processors[JobType(job_type)] = processor

    def get(self, job_type: str | JobType) -> Processor | None:
        try:
            kind = JobType(job_type)
        except ValueError:
            return None
        return self._processors.get(kind)

    def registered(self) -> list[str]:
        return sorted(kind.value for kind in self._processors)


def default_registry(
    drafter: Drafter | None = None,
    publishers: dict[str, Publisher] | None = None,
) -> ProcessorRegistry:
    registry = ProcessorRegistry()
    registry.register(JobType.PLAN, process_plan)
    registry.register(JobType.GENERATE, make_generate_processor(drafter or placeholder_draft))
    registry.register(
        JobType.PUBLISH,
        make_publish_processor(publishers if publishers is not None else default_publishers()),
    )
    return registry


def default_publishers() -> dict[str, Publisher]:
    return {"webhook": publish_webhook}


def process_plan(ctx: StageContext, payload: dict[str, Any]) -> dict[str, Any]:
    project_id = str(payload["project_id"])
    if not get_project(ctx.conn, project_id):
        raise PermanentStageError(f"project {project_id} not found")
    days = int(payload.get("days") or DEFAULT_PLAN_DAYS)
    start = parse_day(payload["start_date"]) if payload.get("start_date") else utc_today()
    keyword_ids = list(payload.get("keyword_ids") or [])
    taken_titles = list_plan_item_titles(ctx.conn, project_id)
    taken_dates = list_planned_dates(ctx.conn, project_id)

    plan_item_ids: list[str] = []
    cursor = start
    for idx, keyword in enumerate(payload.get("keywords") or []):
        if len(plan_item_ids) >= days:
            break
        title = str(keyword).strip()
        if not title or title.lower() in taken_titles:
            continue
        while cursor.isoformat() in taken_dates:
            cursor += timedelta(days=1)
        plan_item_id = insert_plan_item(
            ctx.conn,
            project_id,
            cursor.isoformat(),
            title,
            keyword_id=keyword_ids[idx] if idx < len(keyword_ids) else None,
        )
        taken_titles.add(title.lower())
        taken_dates.add(cursor.isoformat())
        plan_item_ids.append(plan_item_id)
    ctx.log(f"planned {len(plan_item_ids)} items")
    return {"plan_item_ids": plan_item_ids, "created": len(plan_item_ids)}


def placeholder_draft(plan_item: PlanItem) -> tuple[str, str]:
    title = plan_item.title or "Draft article"
    sections = [f"<h1>{html.escape(title)}</h1>"]
    for section in plan_item.outline:
        heading = section.get("heading") if isinstance(section, dict) else section
        if heading:
            sections.append(f"<h2>{html.escape(str(heading))}</h2>")
    return title, "<article>" + "".join(sections) + "</article>"


def make_generate_processor(drafter: Drafter) -> Processor:
    def process_generate(ctx: StageContext, payload: dict[str, Any]) -> dict[str, Any]:
        plan_item_id = str(payload["plan_item_id"])
        plan_item = get_plan_item(ctx.conn, plan_item_id)
        if not plan_item:
            raise PermanentStageError(f"plan item {plan_item_id} not found")
        existing = get_article_for_plan_item(ctx.conn, plan_item_id)
        if existing:
            ctx.log("article already exists for plan item")
            return {"article_id": existing.id, "skipped": True}
        title, body_html = drafter(plan_item)
        ctx.progress(50)
        article_id = insert_article(
            ctx.conn,
            plan_item.project_id,
            title,
            plan_item_id=plan_item.id,
            body_html=body_html,
        )
        set_plan_item_status(ctx.conn, plan_item.id, "consumed")
        log_event(
            ctx.logger,
            logging.INFO,
            "article_drafted",
            article_id=article_id,
            plan_item_id=plan_item.id,
            project_id=plan_item.project_id,
        )
        return {"article_id": article_id}

    return process_generate


def make_publish_processor(publishers: dict[str, Publisher]) -> Processor:
    def process_publish(ctx: StageContext, payload: dict[str, Any]) -> dict[str, Any]:
        article_id = str(payload["article_id"])
        article = get_article(ctx.conn, article_id)
        if not article:
            raise PermanentStageError(f"article {article_id} not found")
        if article.status == "published":
            ctx.log("article already published")
            return {"article_id": article.id, "url": article.url, "skipped": True}
        integration = get_integration(ctx.conn, str(payload["integration_id"]))
        if not integration or integration.status != "connected":
            raise PermanentStageError("integration_not_connected")
        publisher = publishers.get(integration.type)
        if publisher is None:
            raise PermanentStageError(f"no publisher for integration type {integration.type}")
        url = publisher(article, integration)
        mark_article_published(ctx.conn, article.id, url)
        return {"article_id": article.id, "integration_id": integration.id, "url": url}

    return process_publish


def publish_webhook(article: Article, integration: Integration) -> str | None:
    try:
        return deliver_webhook(article, integration)
    except WebhookError as exc:
        if exc.permanent:
            raise PermanentStageError(str(exc)) from exc
        raise
