from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("seoflow.migrations")
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS orgs (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            entitlements_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            org_id TEXT NULL REFERENCES orgs(id),
            name TEXT NOT NULL,
            site_url TEXT NULL,
            auto_publish_policy TEXT NULL,
            buffer_days INTEGER NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS plan_items (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id),
            keyword_id TEXT NULL,
            planned_date TEXT NOT NULL,
            title TEXT NOT NULL,
            outline_json TEXT NULL,
            status TEXT NOT NULL DEFAULT 'planned',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id),
            plan_item_id TEXT NULL REFERENCES plan_items(id),
            title TEXT NOT NULL,
            body_html TEXT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            url TEXT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS integrations (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id),
            type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'connected',
            config_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_plan_items_due ON plan_items(status, planned_date)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_plan_item ON articles(plan_item_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_project_status ON articles(project_id, status)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_integrations_project ON integrations(project_id, status, created_at)"
    )


def _migration_jobs_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            target_id TEXT NULL,
            retries INTEGER NOT NULL DEFAULT 0,
            progress_pct INTEGER NOT NULL DEFAULT 0,
            priority INTEGER NOT NULL DEFAULT 0,
            run_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            error TEXT NULL,
            delivery_failed_at TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_project_created ON jobs(project_id, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_target ON jobs(project_id, job_type, target_id, status)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, updated_at)")


def _migration_job_logs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL REFERENCES jobs(id),
            level TEXT NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id, id)")


def _migration_queue_messages(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            job_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            retries INTEGER NOT NULL DEFAULT 0,
            priority INTEGER NOT NULL DEFAULT 0,
            available_at TEXT NOT NULL,
            claimed_by TEXT NULL,
            claimed_at TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_messages_ready ON queue_messages(claimed_by, available_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_queue_messages_job ON queue_messages(job_id)")


def _migration_leases(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            lease_name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )


def _migration_jobs_active_target(conn: sqlite3.Connection) -> None:
    # At most one queued/running job per (project, type, target).
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_active_target
        ON jobs(project_id, job_type, target_id)
        WHERE status IN ('queued', 'running') AND target_id IS NOT NULL
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_jobs_table", _migration_jobs_table),
        ("003_job_logs", _migration_job_logs),
        ("004_queue_messages", _migration_queue_messages),
        ("005_leases", _migration_leases),
        ("006_jobs_active_target", _migration_jobs_active_target),
    ]
