import logging
import os
import sys
from datetime import date, datetime, timezone

from seoflow.models import JobLogEntry, JobType
from seoflow.utils import configure_logging, json_dumps, log_event, parse_day, parse_iso


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "seoflow.log"
    monkeypatch.setenv("SF_LOG_LEVEL", "INFO")
    monkeypatch.setenv("SF_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("seoflow.worker")
        configure_logging("seoflow.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(str(log_file))
    finally:
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_log_levels_override(monkeypatch):
    monkeypatch.setenv("SF_LOG_LEVELS", "seoflow.queue=DEBUG,broken")
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    try:
        configure_logging("seoflow")
        assert logging.getLogger("seoflow.queue").level == logging.DEBUG
    finally:
        logging.getLogger("seoflow.queue").setLevel(logging.NOTSET)
        root.handlers = original_handlers


def test_log_event_formats_fields(caplog):
    logger = logging.getLogger("seoflow.test")
    with caplog.at_level(logging.INFO, logger="seoflow.test"):
        log_event(logger, logging.INFO, "job_enqueued", job_id="job_1", project_id="p1")
    assert "event=job_enqueued job_id=job_1 project_id=p1" in caplog.text


def test_json_dumps_handles_dataclasses_and_enums():
    entry = JobLogEntry(message="running", level="info", timestamp="t")
    payload = json_dumps({"entry": entry, "type": JobType.PLAN, "day": date(2024, 6, 10)})
    assert '"type": "plan"' in payload
    assert '"day": "2024-06-10"' in payload
    assert '"message": "running"' in payload


def test_parse_helpers():
    assert parse_iso("2024-06-10T12:00:00Z") == datetime(2024, 6, 10, 12, tzinfo=timezone.utc)
    assert parse_iso("2024-06-10T12:00:00").tzinfo is timezone.utc
    assert parse_day("2024-06-10T23:59:00+00:00") == date(2024, 6, 10)
    assert parse_day(date(2024, 6, 10)) == date(2024, 6, 10)
