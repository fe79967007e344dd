import threading

from seoflow.models import QueueMessage
from seoflow.queue import InMemoryQueue, SqlQueue, get_queue
from seoflow.storage import init_db
from seoflow.utils import utc_now_iso_offset


def _message(job_id, priority=0, run_at=None):
    return QueueMessage(
        job_id=job_id,
        job_type="linking",
        payload={"project_id": "p1"},
        priority=priority,
        run_at=run_at,
    )


def test_sql_queue_claim_and_ack(db_path):
    queue = SqlQueue(lambda: init_db(db_path), worker_id="w1")
    other = SqlQueue(lambda: init_db(db_path), worker_id="w2")
    queue.publish(_message("job-1"))

    claimed = queue.claim()
    assert claimed is not None
    message_id, message = claimed
    assert message.job_id == "job-1"
    assert message.project_id == "p1"

    assert other.claim() is None

    queue.ack(message_id)
    assert queue.pending() == 0
    queue.close()
    other.close()


def test_sql_queue_orders_by_priority_then_age(db_path):
    queue = SqlQueue(lambda: init_db(db_path))
    queue.publish(_message("low"))
    queue.publish(_message("high", priority=5))

    order = []
    while queue.consume_one(lambda message: order.append(message.job_id)):
        pass
    assert order == ["high", "low"]
    queue.close()


def test_sql_queue_holds_future_messages(db_path):
    queue = SqlQueue(lambda: init_db(db_path))
    queue.publish(_message("later", run_at=utc_now_iso_offset(seconds=3600)))

    assert queue.claim() is None
    assert queue.pending() == 1
    queue.close()


def test_sql_queue_reclaims_stale_claims(db_path):
    conn = init_db(db_path)
    first = SqlQueue(lambda: init_db(db_path), worker_id="w1", lock_timeout_seconds=60)
    second = SqlQueue(lambda: init_db(db_path), worker_id="w2", lock_timeout_seconds=60)
    first.publish(_message("job-1"))
    assert first.claim() is not None

    conn.execute(
        "UPDATE queue_messages SET claimed_at = ?",
        (utc_now_iso_offset(seconds=-3600),),
    )
    conn.commit()

    reclaimed = second.claim()
    assert reclaimed is not None
    assert reclaimed[1].job_id == "job-1"
    first.close()
    second.close()
    conn.close()


def test_sql_queue_handler_error_releases_message(db_path):
    queue = SqlQueue(lambda: init_db(db_path))
    queue.publish(_message("job-1"))

    def _boom(message):
        raise RuntimeError("handler crashed")

    assert queue.consume_one(_boom) is True
    assert queue.pending() == 1
    claimed = queue.claim()
    assert claimed is not None
    assert claimed[1].job_id == "job-1"
    queue.close()


def test_in_memory_queue_is_fifo():
    queue = InMemoryQueue()
    for job_id in ("a", "b", "c"):
        queue.publish(_message(job_id))

    seen = []
    assert queue.drain(lambda message: seen.append(message.job_id), limit=2) == 2
    assert seen == ["a", "b"]
    assert queue.pending() == 1


def test_in_memory_consume_stops_on_event():
    queue = InMemoryQueue()
    stop = threading.Event()
    seen = []

    def _handler(message):
        seen.append(message.job_id)
        stop.set()

    queue.publish(_message("a"))
    thread = threading.Thread(target=queue.consume, args=(_handler, stop, 0.05))
    thread.start()
    thread.join(5)

    assert not thread.is_alive()
    assert seen == ["a"]


def test_get_queue_selects_backend(db_path):
    assert isinstance(get_queue("memory", lambda: init_db(db_path), "w1", 60), InMemoryQueue)
    assert isinstance(get_queue("sql", lambda: init_db(db_path), "w1", 60), SqlQueue)
