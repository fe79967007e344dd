import pytest

from seoflow.coordinator import JobCoordinator
from seoflow.models import QueueMessage
from seoflow.payloads import PayloadError
from seoflow.queue import InMemoryQueue, QueuePublishError
from seoflow.storage import get_job, list_stuck_jobs
from seoflow.utils import utc_now_iso_offset


class _BrokenQueue:
    def publish(self, message):
        raise ConnectionError("broker unavailable")


def test_enqueue_creates_queued_job_and_publishes(conn):
    queue = InMemoryQueue()
    coordinator = JobCoordinator(conn, queue)

    job_id = coordinator.enqueue("p1", "generate", {"plan_item_id": "plan-1"})

    job = get_job(conn, job_id)
    assert job.status == "queued"
    assert job.project_id == "p1"
    assert job.payload["project_id"] == "p1"
    assert job.target_id == "plan-1"
    assert job.retries == 0

    message = queue.receive()
    assert message.job_id == job_id
    assert message.job_type == "generate"
    assert message.project_id == "p1"
    assert message.retries == 0


def test_enqueue_rejects_invalid_payload(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())

    with pytest.raises(PayloadError):
        coordinator.enqueue("p1", "crawl", {"site_url": "not a url"})
    with pytest.raises(PayloadError):
        coordinator.enqueue("p1", "no-such-type", {})

    assert coordinator.list_project_jobs("p1") == []


def test_lifecycle_callbacks_are_idempotent(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())
    job_id = coordinator.enqueue("p1", "linking")

    assert coordinator.on_started(job_id) is True
    assert coordinator.on_started(job_id) is False
    assert coordinator.on_succeeded(job_id, {"links": 3}) is True
    assert coordinator.on_succeeded(job_id, {"links": 9}) is False
    assert coordinator.on_failed(job_id, "late failure") is False

    job = get_job(conn, job_id)
    assert job.status == "succeeded"
    assert job.result == {"links": 3}
    assert job.progress_pct == 100
    assert job.error is None


def test_late_success_after_cancel_is_ignored(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())
    job_id = coordinator.enqueue("p1", "linking")
    coordinator.on_started(job_id)

    assert coordinator.cancel(job_id, "operator") is True
    assert coordinator.on_succeeded(job_id, {"done": True}) is False
    assert coordinator.cancel(job_id) is False

    job = coordinator.get_job(job_id)
    assert job.status == "canceled"
    assert job.error == "operator"
    assert any("canceled" in entry.message for entry in job.logs)


def test_release_returns_running_job_to_queue(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())
    job_id = coordinator.enqueue("p1", "linking")
    coordinator.on_started(job_id)

    run_at = utc_now_iso_offset(seconds=2)
    assert coordinator.on_released(job_id, retries=1, run_at=run_at, error="boom") is True

    job = coordinator.get_job(job_id)
    assert job.status == "queued"
    assert job.retries == 1
    assert job.run_at == run_at
    assert job.started_at is None
    assert job.error == "boom"


def test_progress_only_updates_running_jobs(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())
    job_id = coordinator.enqueue("p1", "linking")

    assert coordinator.update_progress(job_id, 40) is False
    coordinator.on_started(job_id)
    assert coordinator.update_progress(job_id, 140) is True
    assert coordinator.get_job(job_id).progress_pct == 100


def test_publish_failure_marks_delivery_failed(conn):
    coordinator = JobCoordinator(conn, _BrokenQueue())

    with pytest.raises(QueuePublishError):
        coordinator.enqueue("p1", "linking")

    jobs = coordinator.list_project_jobs("p1")
    assert len(jobs) == 1
    job = jobs[0]
    assert job.status == "queued"
    assert job.delivery_failed_at is not None
    assert "queue_publish_failed" in (job.error or "")

    conn.execute(
        "UPDATE jobs SET delivery_failed_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), job.id),
    )
    conn.commit()
    stuck = list_stuck_jobs(conn, 600)
    assert [item.id for item in stuck] == [job.id]


def test_redeliver_clears_delivery_failure(conn):
    failing = JobCoordinator(conn, _BrokenQueue())
    with pytest.raises(QueuePublishError):
        failing.enqueue("p1", "linking")
    job_id = failing.list_project_jobs("p1")[0].id

    queue = InMemoryQueue()
    coordinator = JobCoordinator(conn, queue)
    assert coordinator.redeliver(job_id) is True

    job = coordinator.get_job(job_id)
    assert job.delivery_failed_at is None
    assert queue.pending() == 1
    assert queue.receive().job_id == job_id


def test_redeliver_skips_terminal_jobs(conn):
    queue = InMemoryQueue()
    coordinator = JobCoordinator(conn, queue)
    job_id = coordinator.enqueue("p1", "linking")
    queue.receive()
    coordinator.cancel(job_id)

    assert coordinator.redeliver(job_id) is False
    assert queue.pending() == 0


def test_republish_failure_returns_false(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())
    job_id = coordinator.enqueue("p1", "linking")

    broken = JobCoordinator(conn, _BrokenQueue())
    message = QueueMessage(job_id=job_id, job_type="linking", payload={"project_id": "p1"})
    assert broken.publish(message) is False
    assert broken.get_job(job_id).delivery_failed_at is not None


def test_list_project_jobs_newest_first_with_filters(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue(), list_limit=2)
    first = coordinator.enqueue("p1", "linking")
    second = coordinator.enqueue("p1", "score")
    third = coordinator.enqueue("p1", "linking")
    coordinator.enqueue("p2", "linking")

    jobs = coordinator.list_project_jobs("p1", limit=10)
    assert [job.id for job in jobs] == [third, second]

    linking = coordinator.list_project_jobs("p1", job_type="linking")
    assert [job.id for job in linking] == [third, first]

    coordinator.on_started(first)
    running = coordinator.list_project_jobs("p1", status="running")
    assert [job.id for job in running] == [first]


def test_long_running_job_is_reported_stuck(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())
    job_id = coordinator.enqueue("p1", "linking")
    coordinator.on_started(job_id)
    assert coordinator.list_stuck_jobs(600) == []

    conn.execute(
        "UPDATE jobs SET started_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), job_id),
    )
    conn.commit()

    assert [job.id for job in coordinator.list_stuck_jobs(600)] == [job_id]


def test_start_refuses_message_older_than_row(conn):
    coordinator = JobCoordinator(conn, InMemoryQueue())
    job_id = coordinator.enqueue("p1", "linking")
    coordinator.on_started(job_id, retries=0)
    coordinator.on_released(job_id, retries=1)

    assert coordinator.on_started(job_id, retries=0) is False
    assert coordinator.get_job(job_id).retries == 1
    assert coordinator.on_started(job_id, retries=1) is True
