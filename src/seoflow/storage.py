from __future__ import annotations

import hashlib
import json
import struct
import uuid
from typing import Any, Iterable

from .db import connect_db
from .models import (
    Article,
    Integration,
    Job,
    JobLogEntry,
    Org,
    PlanItem,
    Project,
)
from .utils import json_dumps, json_loads, utc_now_iso, utc_now_iso_offset

JOB_COLUMNS = """
    id, project_id, job_type, status, payload_json, result_json, target_id, retries,
    progress_pct, priority, run_at, created_at, updated_at, started_at, finished_at,
    error, delivery_failed_at
"""

ARTICLE_COLUMNS = "id, project_id, plan_item_id, title, body_html, status, url, published_at"

PLAN_ITEM_COLUMNS = "id, project_id, keyword_id, planned_date, title, outline_json, status"

INTEGRATION_COLUMNS = "id, project_id, type, status, config_json, created_at"


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Jobs


def insert_job(
    conn: Any,
    project_id: str,
    job_type: str,
    payload: dict[str, object],
    job_id: str | None = None,
    target_id: str | None = None,
    priority: int = 0,
    run_at: str | None = None,
) -> str:
    job_id = job_id or _new_id("job")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, project_id, job_type, status, payload_json, result_json, target_id, retries,
             progress_pct, priority, run_at, created_at, updated_at, started_at, finished_at,
             error, delivery_failed_at)
        VALUES (?, ?, ?, 'queued', ?, NULL, ?, 0, 0, ?, ?, ?, ?, NULL, NULL, NULL, NULL)
        """,
        (
            job_id,
            project_id,
            job_type,
            json_dumps(payload),
            target_id,
            priority,
            run_at,
            now,
            now,
        ),
    )
    conn.commit()
    return job_id


def mark_job_started(conn: Any, job_id: str, retries: int | None = None) -> bool:
    # A message carrying an older attempt than the row is a stale copy.
    now = utc_now_iso()
    if retries is None:
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, finished_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'queued'
            """,
            (now, now, job_id),
        )
    else:
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running',
                started_at = ?,
                finished_at = NULL,
                retries = ?,
                updated_at = ?
            WHERE id = ? AND status = 'queued' AND retries <= ?
            """,
            (now, retries, now, job_id, retries),
        )
    conn.commit()
    return cursor.rowcount == 1


def mark_job_succeeded(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded',
            finished_at = ?,
            progress_pct = 100,
            result_json = ?,
            error = NULL,
            updated_at = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, json_dumps(result) if result is not None else None, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_job_failed(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?, updated_at = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, error, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_job(
    conn: Any,
    job_id: str,
    retries: int | None = None,
    run_at: str | None = None,
    error: str | None = None,
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued',
            started_at = NULL,
            retries = COALESCE(?, retries),
            run_at = COALESCE(?, run_at),
            error = COALESCE(?, error),
            updated_at = ?
        WHERE id = ? AND status IN ('queued', 'running')
        """,
        (retries, run_at, error, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_job(conn: Any, job_id: str, reason: str = "canceled_by_admin") -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'canceled', finished_at = ?, error = ?, updated_at = ?
        WHERE id = ? AND status IN ('queued', 'running')
        """,
        (now, reason, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_job_progress(conn: Any, job_id: str, progress_pct: int) -> bool:
    pct = max(0, min(100, int(progress_pct)))
    cursor = conn.execute(
        """
        UPDATE jobs
        SET progress_pct = ?, updated_at = ?
        WHERE id = ? AND status = 'running'
        """,
        (pct, utc_now_iso(), job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_delivery_failed(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET delivery_failed_at = ?, error = ?, updated_at = ?
        WHERE id = ? AND status IN ('queued', 'running')
        """,
        (now, error, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def clear_delivery_failed(conn: Any, job_id: str) -> None:
    conn.execute(
        "UPDATE jobs SET delivery_failed_at = NULL, updated_at = ? WHERE id = ?",
        (utc_now_iso(), job_id),
    )
    conn.commit()


def append_job_log(conn: Any, job_id: str, message: str, level: str = "info") -> None:
    conn.execute(
        "INSERT INTO job_logs (job_id, level, message, created_at) VALUES (?, ?, ?, ?)",
        (job_id, level, message, utc_now_iso()),
    )
    conn.commit()


def list_job_logs(conn: Any, job_id: str) -> list[JobLogEntry]:
    rows = conn.execute(
        "SELECT message, level, created_at FROM job_logs WHERE job_id = ? ORDER BY id ASC",
        (job_id,),
    ).fetchall()
    return [JobLogEntry(message=row[0], level=row[1], timestamp=row[2]) for row in rows]


def get_job(conn: Any, job_id: str, include_logs: bool = True) -> Job | None:
    row = conn.execute(
        f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()
    if not row:
        return None
    logs = list_job_logs(conn, job_id) if include_logs else []
    return _row_to_job(row, logs)


def get_job_status(conn: Any, job_id: str) -> str | None:
    row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return row[0] if row else None


def list_project_jobs(
    conn: Any,
    project_id: str,
    job_type: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[Job]:
    clauses = ["project_id = ?"]
    params: list[object] = [project_id]
    if job_type:
        clauses.append("job_type = ?")
        params.append(job_type)
    if status:
        clauses.append("status = ?")
        params.append(status)
    params.append(max(1, int(limit)))
    rows = conn.execute(
        f"""
        SELECT {JOB_COLUMNS}
        FROM jobs
        WHERE {' AND '.join(clauses)}
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_job(row) for row in rows]


def find_active_job(
    conn: Any,
    project_id: str,
    job_type: str,
    target_id: str | None = None,
) -> Job | None:
    params: list[object] = [project_id, job_type]
    target_clause = ""
    if target_id is not None:
        target_clause = " AND target_id = ?"
        params.append(target_id)
    row = conn.execute(
        f"""
        SELECT {JOB_COLUMNS}
        FROM jobs
        WHERE project_id = ? AND job_type = ? AND status IN ('queued', 'running'){target_clause}
        ORDER BY created_at DESC
        LIMIT 1
        """,
        tuple(params),
    ).fetchone()
    return _row_to_job(row) if row else None


def list_stuck_jobs(
    conn: Any,
    older_than_seconds: int,
    check_queue: bool = False,
    limit: int = 100,
) -> list[Job]:
    cutoff = utc_now_iso_offset(seconds=-older_than_seconds)
    queue_clause = ""
    if check_queue:
        queue_clause = """
            OR (
                updated_at < ?
                AND NOT EXISTS (SELECT 1 FROM queue_messages q WHERE q.job_id = jobs.id)
            )
        """
    params: list[object] = [cutoff]
    if check_queue:
        params.append(cutoff)
    params.extend([cutoff, limit])
    rows = conn.execute(
        f"""
        SELECT {JOB_COLUMNS}
        FROM jobs
        WHERE (
            status = 'queued'
            AND (
              (delivery_failed_at IS NOT NULL AND delivery_failed_at < ?)
              {queue_clause}
            )
          )
          OR (status = 'running' AND started_at < ?)
        ORDER BY created_at ASC
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_job(row) for row in rows]


# Orgs and projects


def upsert_org(
    conn: Any, org_id: str, name: str, entitlements: dict[str, object] | None = None
) -> None:
    conn.execute(
        """
        INSERT INTO orgs (id, name, entitlements_json, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            entitlements_json = excluded.entitlements_json
        """,
        (org_id, name, json_dumps(entitlements) if entitlements else None, utc_now_iso()),
    )
    conn.commit()


def get_org(conn: Any, org_id: str) -> Org | None:
    row = conn.execute(
        "SELECT id, name, entitlements_json FROM orgs WHERE id = ?", (org_id,)
    ).fetchone()
    if not row:
        return None
    entitlements = json_loads(row[2], {})
    if not isinstance(entitlements, dict):
        entitlements = {}
    return Org(id=row[0], name=row[1], entitlements=entitlements)


def upsert_project(
    conn: Any,
    project_id: str,
    name: str,
    org_id: str | None = None,
    site_url: str | None = None,
    auto_publish_policy: str | None = None,
    buffer_days: int | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO projects
            (id, org_id, name, site_url, auto_publish_policy, buffer_days, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            org_id = excluded.org_id,
            name = excluded.name,
            site_url = excluded.site_url,
            auto_publish_policy = excluded.auto_publish_policy,
            buffer_days = excluded.buffer_days
        """,
        (
            project_id,
            org_id,
            name,
            site_url,
            auto_publish_policy,
            buffer_days,
            utc_now_iso(),
        ),
    )
    conn.commit()


def get_project(conn: Any, project_id: str) -> Project | None:
    row = conn.execute(
        """
        SELECT id, org_id, name, site_url, auto_publish_policy, buffer_days
        FROM projects
        WHERE id = ?
        """,
        (project_id,),
    ).fetchone()
    if not row:
        return None
    return Project(
        id=row[0],
        org_id=row[1],
        name=row[2],
        site_url=row[3],
        auto_publish_policy=row[4],
        buffer_days=int(row[5]) if row[5] is not None else None,
    )


# Plan items


def insert_plan_item(
    conn: Any,
    project_id: str,
    planned_date: str,
    title: str,
    keyword_id: str | None = None,
    outline: list[object] | None = None,
    status: str = "planned",
    plan_item_id: str | None = None,
) -> str:
    plan_item_id = plan_item_id or _new_id("plan")
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO plan_items ({PLAN_ITEM_COLUMNS}, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            plan_item_id,
            project_id,
            keyword_id,
            planned_date,
            title,
            json_dumps(outline) if outline else None,
            status,
            now,
            now,
        ),
    )
    conn.commit()
    return plan_item_id


def get_plan_item(conn: Any, plan_item_id: str) -> PlanItem | None:
    row = conn.execute(
        f"SELECT {PLAN_ITEM_COLUMNS} FROM plan_items WHERE id = ?",
        (plan_item_id,),
    ).fetchone()
    return _row_to_plan_item(row) if row else None


def set_plan_item_status(conn: Any, plan_item_id: str, status: str) -> bool:
    cursor = conn.execute(
        "UPDATE plan_items SET status = ?, updated_at = ? WHERE id = ?",
        (status, utc_now_iso(), plan_item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_due_plan_items(
    conn: Any, today: str, project_id: str | None = None
) -> list[PlanItem]:
    params: list[object] = [today]
    project_clause = ""
    if project_id:
        project_clause = " AND project_id = ?"
        params.append(project_id)
    rows = conn.execute(
        f"""
        SELECT {PLAN_ITEM_COLUMNS}
        FROM plan_items
        WHERE status = 'planned' AND planned_date <= ?{project_clause}
        ORDER BY planned_date ASC, id ASC
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_plan_item(row) for row in rows]


def list_plan_item_titles(conn: Any, project_id: str) -> set[str]:
    rows = conn.execute(
        "SELECT title FROM plan_items WHERE project_id = ?", (project_id,)
    ).fetchall()
    return {str(row[0]).strip().lower() for row in rows}


def list_planned_dates(conn: Any, project_id: str) -> set[str]:
    rows = conn.execute(
        "SELECT planned_date FROM plan_items WHERE project_id = ? AND status != 'skipped'",
        (project_id,),
    ).fetchall()
    return {str(row[0]) for row in rows}


# Articles


def insert_article(
    conn: Any,
    project_id: str,
    title: str,
    plan_item_id: str | None = None,
    body_html: str | None = None,
    status: str = "draft",
    article_id: str | None = None,
) -> str:
    article_id = article_id or _new_id("art")
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO articles ({ARTICLE_COLUMNS}, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?)
        """,
        (article_id, project_id, plan_item_id, title, body_html, status, now, now),
    )
    conn.commit()
    return article_id


def get_article(conn: Any, article_id: str) -> Article | None:
    row = conn.execute(
        f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE id = ?",
        (article_id,),
    ).fetchone()
    return _row_to_article(row) if row else None


def get_article_for_plan_item(conn: Any, plan_item_id: str) -> Article | None:
    row = conn.execute(
        f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE plan_item_id = ? LIMIT 1",
        (plan_item_id,),
    ).fetchone()
    return _row_to_article(row) if row else None


def list_plan_item_ids_with_articles(conn: Any, plan_item_ids: Iterable[str]) -> set[str]:
    ids = list(plan_item_ids)
    if not ids:
        return set()
    found: set[str] = set()
    for offset in range(0, len(ids), 500):
        chunk = ids[offset : offset + 500]
        placeholders = ",".join(["?"] * len(chunk))
        rows = conn.execute(
            f"SELECT plan_item_id FROM articles WHERE plan_item_id IN ({placeholders})",
            tuple(chunk),
        ).fetchall()
        found.update(str(row[0]) for row in rows)
    return found


def list_draft_articles(
    conn: Any, project_id: str | None = None
) -> list[tuple[Article, str | None]]:
    params: list[object] = []
    project_clause = ""
    if project_id:
        project_clause = " AND a.project_id = ?"
        params.append(project_id)
    rows = conn.execute(
        f"""
        SELECT a.id, a.project_id, a.plan_item_id, a.title, a.body_html, a.status, a.url,
               a.published_at, p.planned_date
        FROM articles a
        LEFT JOIN plan_items p ON p.id = a.plan_item_id
        WHERE a.status = 'draft'{project_clause}
        ORDER BY a.created_at ASC, a.id ASC
        """,
        tuple(params),
    ).fetchall()
    return [(_row_to_article(row[:8]), row[8]) for row in rows]


def mark_article_published(conn: Any, article_id: str, url: str | None = None) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE articles
        SET status = 'published', url = COALESCE(?, url), published_at = ?, updated_at = ?
        WHERE id = ? AND status != 'published'
        """,
        (url, now, now, article_id),
    )
    conn.commit()
    return cursor.rowcount == 1


# Integrations


def upsert_integration(
    conn: Any,
    integration_id: str,
    project_id: str,
    integration_type: str,
    status: str = "connected",
    config: dict[str, object] | None = None,
    created_at: str | None = None,
) -> None:
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO integrations ({INTEGRATION_COLUMNS}, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            type = excluded.type,
            status = excluded.status,
            config_json = excluded.config_json,
            updated_at = excluded.updated_at
        """,
        (
            integration_id,
            project_id,
            integration_type,
            status,
            json_dumps(config) if config else None,
            created_at or now,
            now,
        ),
    )
    conn.commit()


def get_integration(conn: Any, integration_id: str) -> Integration | None:
    row = conn.execute(
        f"SELECT {INTEGRATION_COLUMNS} FROM integrations WHERE id = ?",
        (integration_id,),
    ).fetchone()
    return _row_to_integration(row) if row else None


def get_latest_connected_integration(conn: Any, project_id: str) -> Integration | None:
    row = conn.execute(
        f"""
        SELECT {INTEGRATION_COLUMNS}
        FROM integrations
        WHERE project_id = ? AND status = 'connected'
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (project_id,),
    ).fetchone()
    return _row_to_integration(row) if row else None


# Leases


def try_acquire_lease(
    conn: Any,
    lease_name: str,
    holder: str,
    ttl_seconds: int,
) -> bool:
    if conn.backend == "postgres":
        key = _lease_key(lease_name)
        cursor = conn.execute("SELECT pg_try_advisory_lock(?)", (key,))
        row = cursor.fetchone()
        return bool(row and row[0])
    now = utc_now_iso()
    expires_at = utc_now_iso_offset(seconds=ttl_seconds)
    conn.execute(
        """
        INSERT INTO leases (lease_name, holder, acquired_at, expires_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(lease_name) DO UPDATE SET
            holder = excluded.holder,
            acquired_at = excluded.acquired_at,
            expires_at = excluded.expires_at
        WHERE leases.expires_at < excluded.acquired_at OR leases.holder = excluded.holder
        """,
        (lease_name, holder, now, expires_at),
    )
    conn.commit()
    row = conn.execute(
        "SELECT holder FROM leases WHERE lease_name = ?", (lease_name,)
    ).fetchone()
    return bool(row and row[0] == holder)


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    if conn.backend == "postgres":
        key = _lease_key(lease_name)
        cursor = conn.execute("SELECT pg_advisory_unlock(?)", (key,))
        row = cursor.fetchone()
        return bool(row and row[0])
    cursor = conn.execute(
        "DELETE FROM leases WHERE lease_name = ? AND holder = ?",
        (lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def _lease_key(lease_name: str) -> int:
    digest = hashlib.sha256(lease_name.encode("utf-8")).digest()
    return struct.unpack(">q", digest[:8])[0]


def _row_to_job(row: tuple, logs: list[JobLogEntry] | None = None) -> Job:
    (
        job_id,
        project_id,
        job_type,
        status,
        payload_json,
        result_json,
        target_id,
        retries,
        progress_pct,
        priority,
        run_at,
        created_at,
        updated_at,
        started_at,
        finished_at,
        error,
        delivery_failed_at,
    ) = row
    return Job(
        id=job_id,
        project_id=project_id,
        job_type=job_type,
        status=status,
        payload=json_loads(payload_json, {}),
        result=json_loads(result_json, None),
        target_id=target_id,
        retries=int(retries or 0),
        progress_pct=int(progress_pct or 0),
        priority=int(priority or 0),
        run_at=run_at,
        created_at=created_at,
        updated_at=updated_at,
        started_at=started_at,
        finished_at=finished_at,
        error=error,
        delivery_failed_at=delivery_failed_at,
        logs=logs or [],
    )


def _row_to_plan_item(row: tuple) -> PlanItem:
    plan_item_id, project_id, keyword_id, planned_date, title, outline_json, status = row
    outline = json_loads(outline_json, [])
    return PlanItem(
        id=plan_item_id,
        project_id=project_id,
        keyword_id=keyword_id,
        planned_date=str(planned_date),
        title=title,
        outline=outline if isinstance(outline, list) else [],
        status=status,
    )


def _row_to_article(row: tuple) -> Article:
    article_id, project_id, plan_item_id, title, body_html, status, url, published_at = row
    return Article(
        id=article_id,
        project_id=project_id,
        plan_item_id=plan_item_id,
        title=title,
        body_html=body_html,
        status=status,
        url=url,
        published_at=published_at,
    )


def _row_to_integration(row: tuple) -> Integration:
    integration_id, project_id, integration_type, status, config_json, created_at = row
    config = json_loads(config_json, {})
    return Integration(
        id=integration_id,
        project_id=project_id,
        type=integration_type,
        status=status,
        config=config if isinstance(config, dict) else {},
        created_at=created_at,
    )


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"
