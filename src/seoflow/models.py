from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class JobType(str, Enum):
    CRAWL = "crawl"
    DISCOVERY = "discovery"
    PLAN = "plan"
    GENERATE = "generate"
    PUBLISH = "publish"
    LINKING = "linking"
    REOPTIMIZE = "reoptimize"
    SCORE = "score"
    METRICS = "metrics"
    SERP = "serp"
    COMPETITORS = "competitors"
    ENRICH = "enrich"
    FEEDBACK = "feedback"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)

PUBLISH_MODES = ("buffered", "immediate", "manual")
DEFAULT_PUBLISH_MODE = "buffered"
DEFAULT_BUFFER_DAYS = 3


@dataclass(frozen=True)
class JobLogEntry:
    message: str
    level: str
    timestamp: str


@dataclass(frozen=True)
class Job:
    id: str
    project_id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    target_id: str | None
    retries: int
    progress_pct: int
    priority: int
    run_at: str | None
    created_at: str
    updated_at: str
    started_at: str | None
    finished_at: str | None
    error: str | None
    delivery_failed_at: str | None
    logs: list[JobLogEntry] = field(default_factory=list)


@dataclass(frozen=True)
class QueueMessage:
    job_id: str
    job_type: str
    payload: dict[str, object]
    retries: int = 0
    priority: int = 0
    run_at: str | None = None

    @property
    def project_id(self) -> str:
        return str(self.payload.get("project_id") or "")


@dataclass(frozen=True)
class Org:
    id: str
    name: str
    entitlements: dict[str, object]


@dataclass(frozen=True)
class Project:
    id: str
    org_id: str | None
    name: str
    site_url: str | None
    auto_publish_policy: str | None
    buffer_days: int | None


@dataclass(frozen=True)
class PlanItem:
    id: str
    project_id: str
    keyword_id: str | None
    planned_date: str
    title: str
    outline: list[object]
    status: str


@dataclass(frozen=True)
class Article:
    id: str
    project_id: str
    plan_item_id: str | None
    title: str
    body_html: str | None
    status: str
    url: str | None
    published_at: str | None


@dataclass(frozen=True)
class Integration:
    id: str
    project_id: str
    type: str
    status: str
    config: dict[str, object]
    created_at: str


@dataclass(frozen=True)
class SchedulePolicy:
    mode: str
    buffer_days: int


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    project_id: str
    status: str
    reused: bool


@dataclass(frozen=True)
class ScheduleRunResult:
    generated_drafts: int
    enqueued_jobs: int
    published_articles: int
