"""Tests for the metrics registry and the in-process job scheduler."""

import asyncio

import pytest

from ai_translate.services.jobs import InProcessJobScheduler, Job, JobStatus
from ai_translate.services.metrics import (
    MetricEvent,
    MetricsRegistry,
    metric_name,
    metric_tags,
    with_result,
)
from ai_translate.storage.blob import InMemoryBlobStorage, Namespace

from conftest import no_sleep


# --- MetricsRegistry ---


def test_metric_tags_sanitized() -> None:
    """Missing or blank tag values become "unknown"."""
    tags = metric_tags("no_batch", None, " ", "fr-FR", "false")
    assert tags == {
        "mode": "no_batch",
        "repository": "unknown",
        "model": "unknown",
        "locale": "fr-FR",
        "hasScreenshot": "false",
    }
    assert with_result(tags, "imported")["result"] == "imported"
    assert "result" not in tags


def test_metrics_count_sums_matching_series() -> None:
    """count() sums every series whose tags include the filter."""
    metrics = MetricsRegistry()
    metrics.increment("textUnits", {"locale": "fr-FR", "result": "imported"}, 3)
    metrics.increment("textUnits", {"locale": "de-DE", "result": "imported"}, 2)
    metrics.increment("textUnits", {"locale": "de-DE", "result": "failed"})

    assert metrics.count("textUnits") == 6
    assert metrics.count("textUnits", result="imported") == 5
    assert metrics.count("textUnits", locale="de-DE", result="failed") == 1
    assert metrics.count("other") == 0


def test_metrics_ignores_non_positive_amounts() -> None:
    metrics = MetricsRegistry()
    received = []
    metrics.subscribe(received.append)
    metrics.increment("textUnits", {}, 0)
    assert metrics.count("textUnits") == 0
    assert received == []


def test_metrics_subscribers_notified() -> None:
    """Subscribers receive counters and timers with the prefixed name."""
    metrics = MetricsRegistry()
    received: list[MetricEvent] = []
    sub_id = metrics.subscribe(received.append)

    metrics.increment("jobs", {"result": "started"})
    metrics.record("localeDuration", {"locale": "fr-FR"}, 1.5)
    metrics.unsubscribe(sub_id)
    metrics.increment("jobs", {"result": "completed"})

    assert [(e.kind, e.name) for e in received] == [
        ("counter", metric_name("jobs")),
        ("timer", metric_name("localeDuration")),
    ]
    assert received[1].to_dict()["value"] == 1.5
    assert metrics.durations("localeDuration", locale="fr-FR") == [1.5]


def test_metrics_bad_subscriber_does_not_fail() -> None:
    metrics = MetricsRegistry()

    def failing(event: MetricEvent) -> None:
        raise RuntimeError("exporter down")

    metrics.subscribe(failing)
    metrics.increment("jobs", {"result": "started"})
    assert metrics.count("jobs") == 1


# --- InProcessJobScheduler ---


@pytest.fixture
def blob_storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.mark.asyncio
async def test_schedule_runs_handler(blob_storage: InMemoryBlobStorage) -> None:
    """The handler result is stored on the job."""
    scheduler = InProcessJobScheduler(blob_storage)

    async def handler(job: Job) -> str:
        return job.input_json.upper()

    scheduler.register("echo", handler)
    job = scheduler.schedule("echo", '{"a": 1}', parent_id="run-1")
    await scheduler.join()

    assert job.status == JobStatus.COMPLETED
    assert job.result == '{"A": 1}'
    assert job.parent_id == "run-1"
    assert scheduler.children("run-1") == [job]
    assert scheduler.get_job(job.id) is job


@pytest.mark.asyncio
async def test_schedule_persists_input(blob_storage: InMemoryBlobStorage) -> None:
    """The input can be read back by another scheduler on the same storage."""
    scheduler = InProcessJobScheduler(blob_storage)

    async def handler(job: Job) -> None:
        return None

    scheduler.register("noop", handler)
    job = scheduler.schedule("noop", '{"batch": "b-1"}')
    await scheduler.join()

    other = InProcessJobScheduler(blob_storage)
    assert other.get_input(job.id) == '{"batch": "b-1"}'
    assert blob_storage.get(Namespace.JOB_INPUT, f"{job.id}/input") == '{"batch": "b-1"}'


@pytest.mark.asyncio
async def test_delay_uses_injected_sleep(blob_storage: InMemoryBlobStorage) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    scheduler = InProcessJobScheduler(blob_storage, sleep=fake_sleep)

    async def handler(job: Job) -> int:
        return 1

    scheduler.register("later", handler)
    scheduler.schedule("later", "{}", delay_seconds=20)
    scheduler.schedule("later", "{}")
    await scheduler.join()

    assert delays == [20]


@pytest.mark.asyncio
async def test_failed_job_recorded(blob_storage: InMemoryBlobStorage) -> None:
    scheduler = InProcessJobScheduler(blob_storage, sleep=no_sleep)

    async def handler(job: Job) -> None:
        raise RuntimeError("boom")

    scheduler.register("failing", handler)
    job = scheduler.schedule("failing", "{}")
    await scheduler.join()

    assert job.status == JobStatus.FAILED
    assert job.error == "boom"
    assert job.to_dict()["status"] == JobStatus.FAILED


@pytest.mark.asyncio
async def test_join_waits_for_rescheduled_jobs(blob_storage: InMemoryBlobStorage) -> None:
    """Jobs scheduled by a running job are awaited too."""
    scheduler = InProcessJobScheduler(blob_storage, sleep=no_sleep)

    async def handler(job: Job) -> int:
        remaining = int(job.input_json)
        if remaining > 0:
            scheduler.schedule("countdown", str(remaining - 1), parent_id=job.id)
        return remaining

    scheduler.register("countdown", handler)
    scheduler.schedule("countdown", "2")
    await scheduler.join()

    jobs = scheduler.list_jobs()
    assert len(jobs) == 3
    assert all(j.status == JobStatus.COMPLETED for j in jobs)


@pytest.mark.asyncio
async def test_cancel(blob_storage: InMemoryBlobStorage) -> None:
    scheduler = InProcessJobScheduler(blob_storage)
    started = asyncio.Event()

    async def handler(job: Job) -> None:
        started.set()
        await asyncio.sleep(10)

    scheduler.register("slow", handler)
    job = scheduler.schedule("slow", "{}")
    await started.wait()
    await scheduler.cancel(job.id)
    await scheduler.join()

    assert job.status == JobStatus.CANCELLED


def test_get_input_unknown_job(blob_storage: InMemoryBlobStorage) -> None:
    with pytest.raises(KeyError):
        InProcessJobScheduler(blob_storage).get_input("missing")


def test_schedule_unregistered_type(blob_storage: InMemoryBlobStorage) -> None:
    with pytest.raises(ValueError, match="No handler registered"):
        InProcessJobScheduler(blob_storage).schedule("unknown", "{}")
