"""Tests for running handlers through StageWorker, JobContext and WorkerPool"""

import sqlite3
import time

from freezegun import freeze_time

from dossier.base_types import JobStatus, QueueState
from dossier.exception import NonRetryableExternalError, TransientExternalError
from dossier.rate_limiter import COMPANIES_HOUSE, RateLimiter
from dossier.worker.pool import WorkerPool
from dossier.worker.stage_worker import StageWorker


def _worker(pipeline, queue, handler) -> StageWorker:
    return StageWorker(
        stage=pipeline.stages.get(queue),
        handler=handler,
        backend=pipeline.backend,
        store=pipeline.store,
        dispatcher=pipeline.dispatcher,
        aggregator=pipeline.aggregator,
        settings=pipeline.settings,
    )


def test_run_once_with_empty_queue(pipeline):
    assert _worker(pipeline, "company-discovery", lambda job: None).run_once() is False


def test_successful_handler_completes_job(pipeline):
    def discover(job):
        job.log("info", "found 3 candidates", count=3)
        return {"status": "ok", "companyNumber": job.payload["companyNumber"]}

    job_id = pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "123"})
    assert _worker(pipeline, "company-discovery", discover).run_once() is True

    job = pipeline.store.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.data == {"status": "ok", "companyNumber": "123"}
    assert pipeline.backend.get(job_id).state == QueueState.COMPLETED

    [event] = pipeline.store.get_events(job_id)
    assert event.code == "company-discovery.found_3_candidates"
    assert event.data["count"] == 3


def test_handler_sees_job_details(pipeline):
    seen = {}

    def handler(job):
        seen.update(job_id=job.job_id, queue=job.queue, name=job.name, attempt=job.attempt, root=job.root_job_id)

    pipeline.dispatcher.submit("company-discovery", "discover", {"companyNumber": "1"})
    _worker(pipeline, "company-discovery", handler).run_once()

    assert seen == {"job_id": "co:1", "queue": "company-discovery", "name": "discover", "attempt": 1, "root": "co:1"}


def test_transient_failure_is_retried(pipeline):
    def flaky(job):
        raise TransientExternalError("Transient HTTP 503", status_code=503)

    job_id = pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "123"})
    _worker(pipeline, "company-discovery", flaky).run_once()

    job = pipeline.store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.data["errorType"] == "TransientExternalError"
    assert [event.message for event in pipeline.store.get_events(job_id)] == ["job failed"]

    queued = pipeline.backend.get(job_id)
    assert queued.state == QueueState.WAITING
    assert queued.attempts_made == 1


def test_non_retryable_failure_fails_immediately(pipeline):
    def not_found(job):
        raise NonRetryableExternalError("HTTP 404: no such company", status_code=404)

    job_id = pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "123"})
    _worker(pipeline, "company-discovery", not_found).run_once()

    assert pipeline.store.get_job(job_id).status == JobStatus.FAILED
    assert pipeline.backend.get(job_id).state == QueueState.FAILED


def test_non_mapping_results_are_wrapped(pipeline):
    job_id = pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "123"})
    _worker(pipeline, "company-discovery", lambda job: ["a", "b"]).run_once()

    assert pipeline.store.get_job(job_id).data == {"result": ["a", "b"]}


def test_spawned_children_join_the_workflow(pipeline):
    def discover(job):
        for host in ("acme.example", "acme.test"):
            job.spawn(
                "site-fetch",
                None,
                {"host": host, "companyNumber": "123", "companyName": "Acme"},
                pending=True,
            )
        return {"hosts": 2}

    root_id = pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "123"})
    _worker(pipeline, "company-discovery", discover).run_once()

    workflow = pipeline.aggregator.get_workflow(root_id)
    assert [job.job_id for job in workflow.stages["site-fetch"]] == ["site:123:acme.example", "site:123:acme.test"]
    assert workflow.counts["site-fetch"].pending == 2
    assert pipeline.aggregator.outstanding(root_id, ["site-fetch"]) == 2

    child = pipeline.backend.get("site:123:acme.example")
    assert child.payload["rootJobId"] == root_id


def test_children_log_to_root_and_cancel_siblings(pipeline):
    def discover(job):
        for host in ("a.example", "b.example"):
            job.spawn("site-fetch", None, {"host": host, "companyNumber": "1", "companyName": "Acme"}, pending=True)

    def fetch(job):
        assert job.root_job_id == "co:1"
        job.log_root("info", "site verified", host=job.payload["host"])
        assert job.cancel("site:1:b.example", "sibling verified", winner=job.job_id) is True
        assert job.outstanding(["site-fetch"]) == 1
        return {"verified": True}

    pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "1"})
    _worker(pipeline, "company-discovery", discover).run_once()
    _worker(pipeline, "site-fetch", fetch).run_once()

    cancelled = pipeline.store.get_job("site:1:b.example")
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.data["winner"] == "site:1:a.example"
    assert pipeline.backend.get("site:1:b.example") is None

    [root_event] = pipeline.store.get_events("co:1")
    assert root_event.message == "site verified"
    assert root_event.data["childJobId"] == "site:1:a.example"
    assert root_event.category == "company-discovery"

    assert pipeline.aggregator.outstanding("co:1") == 0


def test_log_root_is_a_noop_for_roots(pipeline):
    pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "1"})
    _worker(pipeline, "company-discovery", lambda job: {"mirrored": job.log_root("info", "x")}).run_once()

    assert pipeline.store.get_job("co:1").data == {"mirrored": None}
    assert pipeline.store.get_events("co:1") == []


def test_context_limiter_is_shared(pipeline):
    limiters = []

    def handler(job):
        limiters.append(job.limiter())
        limiters.append(job.limiter("land-registry", factory=lambda: RateLimiter(1.0, 5)))

    pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "1"})
    pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "2"})
    worker = _worker(pipeline, "company-discovery", handler)
    worker.run_once()
    worker.run_once()

    assert limiters[0] is limiters[2]
    assert limiters[1] is limiters[3]
    assert limiters[0] is not limiters[1]

    from dossier.rate_limiter import shared_limiter

    assert shared_limiter(COMPANIES_HOUSE) is limiters[0]


def test_worker_pool_runs_jobs_until_stopped(pipeline):
    done = []

    def discover(job):
        done.append(job.job_id)
        return {"ok": True}

    for number in ("1", "2", "3"):
        pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": number})

    with WorkerPool(pipeline, {"company-discovery": discover}):
        deadline = time.monotonic() + 10
        while len(done) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)

        deadline = time.monotonic() + 10
        while pipeline.backend.counts()["completed"] < 3 and time.monotonic() < deadline:
            time.sleep(0.01)

    assert sorted(done) == ["co:1", "co:2", "co:3"]
    assert {job.status for job in pipeline.store.list_jobs()} == {JobStatus.COMPLETED}


def test_worker_pool_recovers_stalled_jobs_on_start(pipeline):
    from dataclasses import replace

    pipeline.settings = replace(pipeline.settings, stall_seconds=0)
    pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "1"})
    pipeline.backend.claim("company-discovery", "crashed-worker")
    time.sleep(0.01)

    pool = WorkerPool(pipeline, {})
    pool.start()
    pool.stop()

    assert pipeline.backend.get("co:1").state == QueueState.WAITING


def test_claim_is_released_when_start_fails(pipeline, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    with freeze_time("2025-01-01 12:00:00") as frozen:
        job_id = pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "1"})
        worker = _worker(pipeline, "company-discovery", lambda job: {"ok": True})

        monkeypatch.setattr(pipeline.store, "start_job", locked)
        assert worker.run_once() is True

        queued = pipeline.backend.get(job_id)
        assert queued.state == QueueState.WAITING
        assert queued.claimed_by is None
        assert queued.last_error == "database is locked"

        monkeypatch.undo()
        frozen.tick(2)
        assert worker.run_once() is True

    assert pipeline.store.get_job(job_id).status == JobStatus.COMPLETED


def test_stalled_job_out_of_attempts_fails_everywhere(pipeline):
    """A stalled job with no attempts left is failed in the queue and in the progress store."""

    with freeze_time("2025-01-01 12:00:00") as frozen:
        pipeline.store.start_job("co:1", "company-discovery", "discover", None)
        payload = {"host": "a.example", "companyNumber": "1", "companyName": "Acme", "rootJobId": "co:1"}
        pipeline.backend.add("site:1:a.example", "site-fetch", "fetch", payload, max_attempts=1)

        job = pipeline.backend.claim("site-fetch", "crashed-worker")
        pipeline.store.start_job(job.job_id, job.queue, job.name, job.payload)
        assert pipeline.aggregator.outstanding("co:1") == 1

        frozen.tick(pipeline.settings.stall_seconds + 1)
        stalled = WorkerPool(pipeline, {}).recover_stalled()

    assert stalled.failed == ["site:1:a.example"]
    assert pipeline.backend.get("site:1:a.example").state == QueueState.FAILED

    progress = pipeline.store.get_job("site:1:a.example")
    assert progress.status == JobStatus.FAILED
    assert progress.data == {"error": "job stalled"}
    assert pipeline.aggregator.outstanding("co:1") == 0


def test_worker_pool_keeps_recovering_stalled_jobs(pipeline):
    from dataclasses import replace

    pipeline.settings = replace(pipeline.settings, stall_seconds=0)
    pipeline.dispatcher.submit("company-discovery", None, {"companyNumber": "1"})

    with WorkerPool(pipeline, {}):
        pipeline.backend.claim("company-discovery", "crashed-worker")

        deadline = time.monotonic() + 10
        while pipeline.backend.get("co:1").state != QueueState.WAITING and time.monotonic() < deadline:
            time.sleep(0.05)

    assert pipeline.backend.get("co:1").state == QueueState.WAITING
