import sqlite3
import threading
from dataclasses import replace
from datetime import timedelta

from seoflow.config import default_config
from seoflow.coordinator import JobCoordinator
from seoflow.limiter import ConcurrencyLimiter
from seoflow.models import JobType
from seoflow.processors import PermanentStageError, ProcessorRegistry, default_registry
from seoflow.queue import InMemoryQueue, SqlQueue
from seoflow.storage import (
    get_article_for_plan_item,
    get_plan_item,
    init_db,
    insert_plan_item,
    upsert_project,
)
from seoflow.timers import ManualScheduler
from seoflow.utils import utc_today
from seoflow.worker import Worker, backoff_delay_ms


def _worker(db_path, queue, registry=None, config=None, limiter=None, scheduler=None):
    return Worker(
        lambda: init_db(db_path),
        queue,
        config=config or default_config(),
        registry=registry or ProcessorRegistry(),
        limiter=limiter,
        scheduler=scheduler or ManualScheduler(),
    )


def _registry(job_type, processor):
    registry = ProcessorRegistry()
    registry.register(job_type, processor)
    return registry


def test_backoff_doubles_per_attempt():
    assert backoff_delay_ms(1000, 0) == 1000
    assert backoff_delay_ms(1000, 1) == 2000
    assert backoff_delay_ms(1000, 3) == 8000


def test_retry_bound_and_backoff(conn, db_path):
    queue = InMemoryQueue()
    scheduler = ManualScheduler()
    attempts = []

    def _always_fails(ctx, payload):
        attempts.append(ctx.job.retries)
        raise RuntimeError("upstream timeout")

    worker = _worker(db_path, queue, _registry("linking", _always_fails), scheduler=scheduler)
    job_id = JobCoordinator(conn, queue).enqueue("p1", "linking")

    queue.drain(worker.handle_message)
    job = worker._coordinator(conn).get_job(job_id)
    assert job.status == "queued"
    assert job.retries == 1
    assert scheduler.delays == [1000]

    scheduler.advance(1000)
    queue.drain(worker.handle_message)
    assert scheduler.delays == [1000, 2000]

    scheduler.advance(2000)
    queue.drain(worker.handle_message)

    assert attempts == [0, 1, 2]
    assert scheduler.pending() == 0
    job = worker._coordinator(conn).get_job(job_id)
    assert job.status == "failed"
    assert job.error == "upstream timeout"
    assert job.finished_at is not None
    assert [entry.level for entry in job.logs].count("warn") == 2
    assert job.logs[-1].level == "error"


def test_success_after_retry(conn, db_path):
    queue = InMemoryQueue()
    scheduler = ManualScheduler()
    attempts = []

    def _flaky(ctx, payload):
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("flaky")
        return {"ok": True}

    worker = _worker(db_path, queue, _registry("linking", _flaky), scheduler=scheduler)
    job_id = JobCoordinator(conn, queue).enqueue("p1", "linking")

    queue.drain(worker.handle_message)
    scheduler.run_all()
    queue.drain(worker.handle_message)

    job = worker._coordinator(conn).get_job(job_id)
    assert job.status == "succeeded"
    assert job.retries == 1
    assert job.result == {"ok": True}


def test_permanent_failure_is_not_retried(conn, db_path):
    queue = InMemoryQueue()
    scheduler = ManualScheduler()

    def _bad_input(ctx, payload):
        raise PermanentStageError("integration_not_connected")

    worker = _worker(db_path, queue, _registry("linking", _bad_input), scheduler=scheduler)
    job_id = JobCoordinator(conn, queue).enqueue("p1", "linking")

    queue.drain(worker.handle_message)

    job = worker._coordinator(conn).get_job(job_id)
    assert job.status == "failed"
    assert job.retries == 0
    assert scheduler.delays == []


def test_unregistered_type_succeeds_as_noop(conn, db_path):
    queue = InMemoryQueue()
    worker = _worker(db_path, queue, default_registry())
    job_id = JobCoordinator(conn, queue).enqueue("p1", "serp", {"query": "trail shoes"})

    queue.drain(worker.handle_message)

    job = worker._coordinator(conn).get_job(job_id)
    assert job.status == "succeeded"
    assert job.result == {"skipped": True, "reason": "no_processor"}


def test_duplicate_delivery_runs_once(conn, db_path):
    queue = InMemoryQueue()
    calls = []
    worker = _worker(db_path, queue, _registry("linking", lambda ctx, payload: calls.append(1)))
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue("p1", "linking")
    message = queue.receive()
    queue.publish(message)
    queue.publish(message)

    queue.drain(worker.handle_message)

    assert len(calls) == 1
    assert coordinator.get_job(job_id).status == "succeeded"


def test_canceled_job_message_is_dropped(conn, db_path):
    queue = InMemoryQueue()
    calls = []
    worker = _worker(db_path, queue, _registry("linking", lambda ctx, payload: calls.append(1)))
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue("p1", "linking")
    coordinator.cancel(job_id)

    queue.drain(worker.handle_message)

    assert calls == []
    assert coordinator.get_job(job_id).status == "canceled"


def test_saturated_project_is_requeued_after_release_delay(conn, db_path):
    queue = InMemoryQueue()
    scheduler = ManualScheduler()
    limiter = ConcurrencyLimiter(1)
    calls = []
    worker = _worker(
        db_path,
        queue,
        _registry("linking", lambda ctx, payload: calls.append(1)),
        limiter=limiter,
        scheduler=scheduler,
    )
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue("p1", "linking")
    assert limiter.try_acquire("p1")

    queue.drain(worker.handle_message)

    assert calls == []
    assert scheduler.delays == [300]
    job = coordinator.get_job(job_id)
    assert job.status == "queued"
    assert job.retries == 0
    assert job.logs == []

    limiter.release("p1")
    scheduler.advance(300)
    queue.drain(worker.handle_message)

    assert calls == [1]
    assert coordinator.get_job(job_id).status == "succeeded"
    assert limiter.running("p1") == 0


def test_project_concurrency_ceiling_across_threads(conn, db_path):
    queue = InMemoryQueue()
    scheduler = ManualScheduler()
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def _blocking(ctx, payload):
        calls.append(ctx.job.id)
        entered.set()
        release.wait(5)
        return {}

    worker = _worker(db_path, queue, _registry("linking", _blocking), scheduler=scheduler)
    coordinator = JobCoordinator(conn, queue)
    coordinator.enqueue("p1", "linking")
    coordinator.enqueue("p1", "linking")
    first = queue.receive()
    second = queue.receive()

    thread = threading.Thread(target=worker.handle_message, args=(first,))
    thread.start()
    assert entered.wait(5)

    worker.handle_message(second)
    assert calls == [first.job_id]
    assert scheduler.delays == [300]
    assert worker.limiter.running("p1") == 1

    release.set()
    thread.join(5)
    assert worker.limiter.running("p1") == 0

    scheduler.advance(300)
    queue.drain(worker.handle_message)
    assert calls == [first.job_id, second.job_id]


def test_plan_chains_generate_for_due_items(conn, db_path):
    upsert_project(conn, "p1", "Project One")
    queue = InMemoryQueue()
    worker = _worker(db_path, queue, default_registry())
    coordinator = JobCoordinator(conn, queue)
    today = utc_today()
    coordinator.enqueue(
        "p1",
        "plan",
        {"keywords": ["trail shoes", "running socks", "hydration vest"], "start_date": today.isoformat()},
    )

    queue.drain(worker.handle_message)

    plan_job = coordinator.list_project_jobs("p1", job_type="plan")[0]
    assert plan_job.status == "succeeded"
    plan_item_ids = plan_job.result["plan_item_ids"]
    assert len(plan_item_ids) == 3

    due = get_plan_item(conn, plan_item_ids[0])
    assert due.planned_date == today.isoformat()
    assert due.status == "consumed"
    assert get_article_for_plan_item(conn, due.id) is not None

    later = get_plan_item(conn, plan_item_ids[2])
    assert later.planned_date == (today + timedelta(days=2)).isoformat()
    assert later.status == "planned"
    assert get_article_for_plan_item(conn, later.id) is None

    generate_jobs = coordinator.list_project_jobs("p1", job_type="generate")
    assert [job.status for job in generate_jobs] == ["succeeded"]


def test_plan_skips_taken_titles_and_dates(conn, db_path):
    upsert_project(conn, "p1", "Project One")
    today = utc_today()
    insert_plan_item(conn, "p1", today.isoformat(), "Trail Shoes")
    queue = InMemoryQueue()
    config = default_config()
    config = replace(config, pipeline=replace(config.pipeline, successors={}))
    worker = _worker(db_path, queue, default_registry(), config=config)
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue(
        "p1",
        "plan",
        {"keywords": ["trail shoes", "running socks"], "start_date": today.isoformat()},
    )

    queue.drain(worker.handle_message)

    result = coordinator.get_job(job_id).result
    assert result["created"] == 1
    item = get_plan_item(conn, result["plan_item_ids"][0])
    assert item.title == "running socks"
    assert item.planned_date == (today + timedelta(days=1)).isoformat()


def test_stage_success_chains_successor_with_payload(conn, db_path):
    upsert_project(conn, "p1", "Project One")
    queue = InMemoryQueue()
    registry = default_registry()
    registry.register(JobType.DISCOVERY, lambda ctx, payload: {"keywords": ["trail shoes"]})
    config = default_config()
    config = replace(
        config,
        pipeline=replace(config.pipeline, successors={"discovery": ["plan"]}, plan_days=7),
    )
    worker = _worker(db_path, queue, registry, config=config)
    coordinator = JobCoordinator(conn, queue)
    coordinator.enqueue("p1", "discovery", {"locale": "de"})

    queue.drain(worker.handle_message)

    plan_jobs = coordinator.list_project_jobs("p1", job_type="plan")
    assert len(plan_jobs) == 1
    assert plan_jobs[0].status == "succeeded"
    assert plan_jobs[0].payload["keywords"] == ["trail shoes"]
    assert plan_jobs[0].payload["days"] == 7
    assert plan_jobs[0].payload["locale"] == "de"


def test_failed_stage_does_not_chain(conn, db_path):
    queue = InMemoryQueue()

    def _fails(ctx, payload):
        raise PermanentStageError("no pages")

    worker = _worker(db_path, queue, _registry("discovery", _fails))
    coordinator = JobCoordinator(conn, queue)
    coordinator.enqueue("p1", "discovery")

    queue.drain(worker.handle_message)

    assert coordinator.list_project_jobs("p1", job_type="plan") == []


def test_run_once_with_sql_queue(conn, db_path):
    queue = SqlQueue(lambda: init_db(db_path), worker_id="w1")
    calls = []
    worker = _worker(db_path, queue, _registry("linking", lambda ctx, payload: calls.append(1)))
    job_id = JobCoordinator(conn, queue).enqueue("p1", "linking")

    handled = worker.run_once()

    assert handled == 1
    assert calls == [1]
    assert queue.pending() == 0
    assert JobCoordinator(conn, queue).get_job(job_id).status == "succeeded"
    queue.close()


class _FlakyQueue(InMemoryQueue):
    def __init__(self):
        super().__init__()
        self.down = False

    def publish(self, message):
        if self.down:
            raise ConnectionError("broker unavailable")
        super().publish(message)


def test_failed_retry_publish_is_recorded(conn, db_path):
    queue = _FlakyQueue()
    scheduler = ManualScheduler()

    def _fails(ctx, payload):
        raise RuntimeError("upstream timeout")

    worker = _worker(db_path, queue, _registry("linking", _fails), scheduler=scheduler)
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue("p1", "linking")

    queue.drain(worker.handle_message)
    queue.down = True
    scheduler.advance(1000)

    job = coordinator.get_job(job_id)
    assert job.status == "queued"
    assert job.delivery_failed_at is not None
    assert queue.pending() == 0


def test_stale_copy_of_first_message_does_not_reset_retries(conn, db_path):
    queue = InMemoryQueue()
    scheduler = ManualScheduler()
    attempts = []

    def _always_fails(ctx, payload):
        attempts.append(ctx.job.retries)
        raise RuntimeError("upstream timeout")

    worker = _worker(db_path, queue, _registry("linking", _always_fails), scheduler=scheduler)
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue("p1", "linking")
    first = queue.receive()

    worker.handle_message(first)
    worker.handle_message(first)

    assert attempts == [0]
    assert coordinator.get_job(job_id).retries == 1

    scheduler.run_all()
    queue.drain(worker.handle_message)
    scheduler.run_all()
    queue.drain(worker.handle_message)

    assert attempts == [0, 1, 2]
    job = coordinator.get_job(job_id)
    assert job.status == "failed"
    assert job.retries == 2


def test_store_error_after_start_fails_the_job(conn, db_path, monkeypatch):
    queue = InMemoryQueue()
    scheduler = ManualScheduler()

    def _fails(ctx, payload):
        raise RuntimeError("upstream timeout")

    def _locked(self, *args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(JobCoordinator, "on_released", _locked)
    worker = _worker(db_path, queue, _registry("linking", _fails), scheduler=scheduler)
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue("p1", "linking")

    queue.drain(worker.handle_message)

    job = coordinator.get_job(job_id)
    assert job.status == "failed"
    assert "database is locked" in job.error
    assert scheduler.delays == []
    assert worker.limiter.running("p1") == 0
