from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, ValidationError

from .models import JobType


class PayloadError(ValueError):
    pass


class ProjectPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    project_id: str = Field(min_length=1)


class CrawlBudget(BaseModel):
    max_pages: int = Field(default=200, gt=0)
    respect_robots: bool = True
    include_sitemaps: bool = True


class CrawlPayload(ProjectPayload):
    site_url: AnyHttpUrl
    crawl_budget: CrawlBudget = Field(default_factory=CrawlBudget)


class DiscoveryPayload(ProjectPayload):
    page_ids: list[str] = Field(default_factory=list)
    locale: str = Field(default="en", min_length=2)
    location: str | None = Field(default=None, min_length=2)
    max_keywords: int = Field(default=500, gt=0, le=2000)
    include_gads: bool = False


class PlanPayload(ProjectPayload):
    keywords: list[str] = Field(default_factory=list)
    locale: str = Field(default="en", min_length=2)
    keyword_ids: list[str] | None = None
    start_date: date | None = None
    days: int | None = Field(default=None, gt=0, le=90)


class GeneratePayload(ProjectPayload):
    plan_item_id: str = Field(min_length=1)


class PublishPayload(ProjectPayload):
    article_id: str = Field(min_length=1)
    integration_id: str = Field(min_length=1)


class ArticlePayload(ProjectPayload):
    article_id: str = Field(min_length=1)


PAYLOAD_MODELS: dict[JobType, type[ProjectPayload]] = {
    JobType.CRAWL: CrawlPayload,
    JobType.DISCOVERY: DiscoveryPayload,
    JobType.PLAN: PlanPayload,
    JobType.GENERATE: GeneratePayload,
    JobType.PUBLISH: PublishPayload,
    JobType.REOPTIMIZE: ArticlePayload,
}

# Payload field copied into jobs.target_id for per-target deduplication.
TARGET_KEYS: dict[JobType, str] = {
    JobType.GENERATE: "plan_item_id",
    JobType.PUBLISH: "article_id",
}


def parse_job_type(value: str | JobType) -> JobType:
    try:
        return JobType(value)
    except ValueError as exc:
        raise PayloadError(f"unknown job type {value}") from exc


def validate_payload(job_type: str | JobType, payload: dict[str, Any] | None) -> dict[str, Any]:
    kind = parse_job_type(job_type)
    model = PAYLOAD_MODELS.get(kind, ProjectPayload)
    try:
        parsed = model.model_validate(payload or {})
    except ValidationError as exc:
        raise PayloadError(f"invalid {kind.value} payload: {exc}") from exc
    return parsed.model_dump(mode="json", exclude_none=True)


def target_id_for(job_type: str | JobType, payload: dict[str, Any]) -> str | None:
    key = TARGET_KEYS.get(parse_job_type(job_type))
    if not key:
        return None
    value = payload.get(key)
    return str(value) if value else None
