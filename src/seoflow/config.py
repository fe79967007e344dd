from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .models import JobType
from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int
    project_concurrency: int
    max_retries: int
    base_delay_ms: int
    release_delay_ms: int
    poll_interval_seconds: float


@dataclass(frozen=True)
class QueueConfig:
    backend: str
    lock_timeout_seconds: int


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    interval_minutes: int
    lease_ttl_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    list_limit: int
    stuck_after_seconds: int


@dataclass(frozen=True)
class PipelineConfig:
    successors: dict[str, list[str]]
    plan_days: int
    draft_lookahead_days: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    worker: WorkerConfig
    queue: QueueConfig
    scheduler: SchedulerConfig
    jobs: JobsConfig
    pipeline: PipelineConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "seoflow",
        "timezone": "UTC",
    },
    "worker": {
        "concurrency": 4,
        "project_concurrency": 1,
        "max_retries": 2,
        "base_delay_ms": 1000,
        "release_delay_ms": 300,
        "poll_interval_seconds": 1.0,
    },
    "queue": {
        "backend": "sql",
        "lock_timeout_seconds": 600,
    },
    "scheduler": {
        "enabled": True,
        "interval_minutes": 1440,
        "lease_ttl_seconds": 300,
    },
    "jobs": {
        "list_limit": 50,
        "stuck_after_seconds": 900,
    },
    "pipeline": {
        "successors": {
            "crawl": ["discovery"],
            "discovery": ["plan"],
            "plan": ["generate"],
        },
        "plan_days": 30,
        "draft_lookahead_days": 0,
    },
}

CONFIG_KEY = "config.runtime"
DEFAULT_CONFIG_PATH = "/config/config.yml"
QUEUE_BACKENDS = ("sql", "memory")

# Objects whose keys are data rather than schema.
_FREEFORM_PATHS = {"config.runtime.pipeline.successors"}


def get_config_path() -> str:
    return os.environ.get("SF_CONFIG_PATH", DEFAULT_CONFIG_PATH)


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")
    cfg = _merge(_deep_copy(DEFAULT_CONFIG), raw)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError(f"Invalid config in {path}: " + "; ".join(errors))
    return cfg


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        path = get_config_path()
        seed = load_config_file(path) if os.path.exists(path) else _deep_copy(DEFAULT_CONFIG)
        set_setting(conn, CONFIG_KEY, seed)
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    _validate_ranges(cfg, errors)
    _validate_successors(cfg["pipeline"]["successors"], errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        if path in _FREEFORM_PATHS:
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int) and not isinstance(default, bool):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    worker = cfg["worker"]
    for key in ("concurrency", "project_concurrency"):
        if worker[key] < 1:
            errors.append(f"config.runtime.worker.{key} must be >= 1")
    for key in ("max_retries", "base_delay_ms", "release_delay_ms"):
        if worker[key] < 0:
            errors.append(f"config.runtime.worker.{key} must be >= 0")
    if worker["poll_interval_seconds"] <= 0:
        errors.append("config.runtime.worker.poll_interval_seconds must be > 0")
    if cfg["queue"]["backend"] not in QUEUE_BACKENDS:
        errors.append(
            "config.runtime.queue.backend must be one of " + ", ".join(QUEUE_BACKENDS)
        )
    if cfg["scheduler"]["interval_minutes"] < 1:
        errors.append("config.runtime.scheduler.interval_minutes must be >= 1")
    if not 1 <= cfg["jobs"]["list_limit"] <= 500:
        errors.append("config.runtime.jobs.list_limit must be between 1 and 500")
    if not 1 <= cfg["pipeline"]["plan_days"] <= 90:
        errors.append("config.runtime.pipeline.plan_days must be between 1 and 90")
    if cfg["pipeline"]["draft_lookahead_days"] < 0:
        errors.append("config.runtime.pipeline.draft_lookahead_days must be >= 0")


def _validate_successors(successors: dict[str, Any], errors: list[str]) -> None:
    known = {kind.value for kind in JobType}
    for stage, nexts in successors.items():
        if stage not in known:
            errors.append(f"unknown job type config.runtime.pipeline.successors.{stage}")
        if not isinstance(nexts, list) or not all(isinstance(item, str) for item in nexts):
            errors.append(f"config.runtime.pipeline.successors.{stage} must be a list of strings")
            continue
        for item in nexts:
            if item not in known:
                errors.append(f"unknown job type {item} in config.runtime.pipeline.successors.{stage}")


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    worker_cfg = cfg.get("worker") or {}
    queue_cfg = cfg.get("queue") or {}
    scheduler_cfg = cfg.get("scheduler") or {}
    jobs_cfg = cfg.get("jobs") or {}
    pipeline_cfg = cfg.get("pipeline") or {}

    return Config(
        app=AppConfig(
            name=str(app_cfg.get("name")),
            timezone=str(app_cfg.get("timezone")),
        ),
        worker=WorkerConfig(
            concurrency=int(worker_cfg.get("concurrency")),
            project_concurrency=int(worker_cfg.get("project_concurrency")),
            max_retries=int(worker_cfg.get("max_retries")),
            base_delay_ms=int(worker_cfg.get("base_delay_ms")),
            release_delay_ms=int(worker_cfg.get("release_delay_ms")),
            poll_interval_seconds=float(worker_cfg.get("poll_interval_seconds")),
        ),
        queue=QueueConfig(
            backend=str(queue_cfg.get("backend")),
            lock_timeout_seconds=int(queue_cfg.get("lock_timeout_seconds")),
        ),
        scheduler=SchedulerConfig(
            enabled=bool(scheduler_cfg.get("enabled")),
            interval_minutes=int(scheduler_cfg.get("interval_minutes")),
            lease_ttl_seconds=int(scheduler_cfg.get("lease_ttl_seconds")),
        ),
        jobs=JobsConfig(
            list_limit=int(jobs_cfg.get("list_limit")),
            stuck_after_seconds=int(jobs_cfg.get("stuck_after_seconds")),
        ),
        pipeline=PipelineConfig(
            successors={
                str(stage): [str(item) for item in nexts]
                for stage, nexts in (pipeline_cfg.get("successors") or {}).items()
            },
            plan_days=int(pipeline_cfg.get("plan_days")),
            draft_lookahead_days=int(pipeline_cfg.get("draft_lookahead_days")),
        ),
    )


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict) and key != "successors":
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
