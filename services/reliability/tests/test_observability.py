import csv
import io
import json
import logging

import pytest

from reliability.breaker import BreakerConfig, CircuitBreaker
from reliability.config import Settings
from reliability.event_log import EventLogger
from reliability.logging_config import JsonFormatter, configure_logging
from reliability.models import Job, JobState, Priority, ScheduledJobDefinition
from reliability.queue import JobQueue
from reliability.worker_pool import WorkerPool


@pytest.mark.asyncio
async def test_job_transitions_are_written_as_json_lines(tmp_path, store, clock):
    path = tmp_path / "events.jsonl"
    q = JobQueue(store, clock, event_log=EventLogger(str(path)))
    q.register_handler("ping", lambda payload: "pong")
    job_id = await q.enqueue("ping", {})
    await WorkerPool(q, clock=clock).run_once("w-1")

    events = [json.loads(line) for line in path.read_text().splitlines()]
    assert [e["event"] for e in events] == ["job_enqueued", "job_claimed", "job_transition"]
    assert events[-1]["job_id"] == job_id
    assert events[-1]["from_state"] == "PROCESSING"
    assert events[-1]["state"] == "COMPLETED"
    assert events[-1]["worker_id"] == "w-1"


@pytest.mark.asyncio
async def test_breaker_transitions_are_written_as_csv(tmp_path, clock):
    path = tmp_path / "events.csv"
    breaker = CircuitBreaker("storage", BreakerConfig(failure_threshold=1), clock, event_log=EventLogger(str(path), fmt="csv"))

    async def fail():
        raise OSError("bucket unavailable")

    with pytest.raises(OSError):
        await breaker.call(fail)

    rows = list(csv.DictReader(path.open()))
    assert len(rows) == 1
    assert rows[0]["breaker"] == "storage"
    assert rows[0]["from_state"] == "CLOSED"
    assert rows[0]["state"] == "OPEN"


def test_event_logger_never_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    EventLogger(str(blocker / "nested" / "events.jsonl")).emit("job_enqueued", {"job_id": "x"})


def test_disabled_event_logger_writes_nothing(tmp_path):
    settings = Settings(event_log_path=str(tmp_path / "e.jsonl"), event_log_enabled=False)
    EventLogger.from_settings(settings).emit("job_enqueued", {"job_id": "x"})
    assert not (tmp_path / "e.jsonl").exists()


def test_json_formatter_lifts_known_extras():
    record = logging.LogRecord("job-queue", logging.WARNING, __file__, 1, "job failed", None, None)
    record.job_id = "j-1"
    record.breaker = "slack"
    record.unrelated = "dropped"
    out = json.loads(JsonFormatter().format(record))
    assert out["level"] == "WARNING"
    assert out["msg"] == "job failed"
    assert out["job_id"] == "j-1"
    assert out["breaker"] == "slack"
    assert "unrelated" not in out


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "REDIS")
    monkeypatch.setenv("WORKER_CONCURRENCY", "8")
    monkeypatch.setenv("JOB_TIMEOUT_S", "off")
    monkeypatch.setenv("STRICT_JOB_TYPES", "0")
    s = Settings.from_env()
    assert s.store_backend == "redis"
    assert s.worker_concurrency == 8
    assert s.job_timeout_s is None
    assert s.strict_job_types is False
    assert s.retry_jitter == 0.2


def test_job_record_round_trip_keeps_types():
    job = Job(
        id="j-1",
        type="generate-export",
        payload={"ids": [1, 2], "format": "pdf"},
        priority=Priority.HIGH,
        state=JobState.RETRYING,
        attempts=1,
        next_run_at=12.5,
        last_error="boom",
        claimed_by="w-2",
    )
    back = Job.from_record(job.to_record())
    assert back == job
    assert back.claimed_at is None


def test_definition_record_round_trip():
    d = ScheduledJobDefinition(id="nightly", type="cleanup", interval_s=86400, payload_template={"days_old": 90})
    d.last_materialized_bucket = 19700
    back = ScheduledJobDefinition.from_record(d.to_record())
    assert back == d


def test_configure_logging_json_to_stream(monkeypatch):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    monkeypatch.setenv("LOG_FORMAT", "json")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    out = io.StringIO()
    try:
        configure_logging(stream=out)
        logging.getLogger("worker-pool").debug("idle", extra={"worker_id": "worker-0"})
        logging.getLogger("httpx").info("HTTP Request: POST https://hooks.example/T1")
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    [line] = out.getvalue().splitlines()
    rec = json.loads(line)
    assert rec["logger"] == "worker-pool"
    assert rec["level"] == "DEBUG"
    assert rec["worker_id"] == "worker-0"
