"""Tests for reconstructing workflows across stages"""

import random

from freezegun import freeze_time
import pytest

from dossier.base_types import JobStatus
from dossier.exception import InvalidFilterError, WorkflowNotFoundError

ALL_STAGES = ["ch-appointments", "company-discovery", "site-fetch", "person-linkedin", "owner-discovery"]


def test_end_to_end_single_job_workflow(store, aggregator):
    store.start_job("co:123", "company-discovery", "discover", {"companyNumber": "123"})
    store.log_event("co:123", "info", "found 3 candidates")
    store.complete_job("co:123", {"status": "ok"})

    workflow = aggregator.get_workflow("co:123")
    assert workflow.root.status == JobStatus.COMPLETED
    assert workflow.root.data == {"status": "ok"}
    assert workflow.children == []
    assert workflow.counts["company-discovery"].to_dict() == {
        "total": 1,
        "pending": 0,
        "running": 0,
        "completed": 1,
        "failed": 0,
        "cancelled": 0,
    }
    assert len(aggregator.get_timeline("co:123")) == 1

    store.start_job("site:123:acme.example", "site-fetch", "fetch", {"host": "acme.example", "rootJobId": "co:123"})

    workflow = aggregator.get_workflow("co:123")
    assert [job.job_id for job in workflow.stages["site-fetch"]] == ["site:123:acme.example"]
    assert workflow.counts["site-fetch"].running == 1


def test_child_counts_match_generated_rows(store, aggregator):
    """Every row tagged with the root appears under its stage, and nothing else does."""

    rng = random.Random(7)
    store.start_job("ch:1", "ch-appointments", "fetch", {"companyNumber": "1"})
    store.start_job("ch:other", "ch-appointments", "fetch", {"companyNumber": "2"})

    expected: dict[str, int] = {}
    for idx in range(40):
        stage = rng.choice(["company-discovery", "site-fetch", "person-linkedin"])
        root = rng.choice(["ch:1", "ch:other"])
        store.start_job(f"{stage}:{idx}", stage, "task", {"rootJobId": root})
        if rng.random() < 0.5:
            store.complete_job(f"{stage}:{idx}", None)
        if root == "ch:1":
            expected[stage] = expected.get(stage, 0) + 1

    workflow = aggregator.get_workflow("ch:1")

    assert len(workflow.children) == sum(expected.values())
    for stage, count in expected.items():
        assert len(workflow.stages[stage]) == count
        assert workflow.counts[stage].total == count
    assert workflow.counts["ch-appointments"].total == 1
    assert list(workflow.stages)[: len(ALL_STAGES)] == ALL_STAGES


def test_workflow_jobs_ordered_by_creation(store, aggregator):
    with freeze_time("2025-01-01 12:00:00") as frozen:
        store.start_job("co:1", "company-discovery", "discover", None)
        for host in ("c", "a", "b"):
            frozen.tick(1)
            store.start_job(f"site:1:{host}", "site-fetch", "fetch", {"rootJobId": "co:1"})

    workflow = aggregator.get_workflow("co:1")
    assert [job.job_id for job in workflow.stages["site-fetch"]] == ["site:1:c", "site:1:a", "site:1:b"]


def test_get_workflow_missing_root(store, aggregator):
    store.start_job("site:1:a", "site-fetch", "fetch", {"rootJobId": "co:gone"})

    with pytest.raises(WorkflowNotFoundError):
        aggregator.get_workflow("co:gone")


def test_get_workflow_rejects_child_ids(store, aggregator):
    store.start_job("co:1", "company-discovery", "discover", None)
    store.start_job("site:1:a", "site-fetch", "fetch", {"rootJobId": "co:1"})

    with pytest.raises(WorkflowNotFoundError, match="co:1"):
        aggregator.get_workflow("site:1:a")


def test_timeline_merges_root_and_children(store, aggregator):
    with freeze_time("2025-01-01 12:00:00") as frozen:
        store.start_job("co:1", "company-discovery", "discover", None)
        store.log_event("co:1", "info", "started")
        frozen.tick(1)
        store.start_job("site:1:a", "site-fetch", "fetch", {"rootJobId": "co:1"})
        store.log_event("site:1:a", "info", "fetching")
        store.log_event("co:1", "info", "child spawned")
        frozen.tick(1)
        store.log_event("site:1:a", "info", "verified")
        store.log_event("unrelated", "info", "noise")

    timeline = aggregator.get_timeline("co:1")

    assert [event.message for event in timeline] == ["started", "fetching", "child spawned", "verified"]
    assert [(e.ts, e.id) for e in timeline] == sorted((e.ts, e.id) for e in timeline)


def test_timeline_for_unknown_root_is_empty(aggregator):
    assert aggregator.get_timeline("nothing") == []


def test_list_workflows_returns_roots_with_zero_filled_counts(store, aggregator):
    with freeze_time("2025-01-01 12:00:00") as frozen:
        store.start_job("co:1", "company-discovery", "discover", None)
        frozen.tick(1)
        store.start_job("owner:AB12CD:abc", "owner-discovery", "discover", None)
        frozen.tick(1)
        store.mark_pending("site:1:a", "site-fetch", "fetch", {"rootJobId": "co:1"})
        store.start_job("site:orphan:b", "site-fetch", "fetch", None)
        store.start_job("person:7", "person-linkedin", "discover", {"rootJobId": "co:1"})
        store.fail_job("person:7", RuntimeError("nope"))
        frozen.tick(1)
        store.complete_job("co:1", None)

    summaries = aggregator.list_workflows()

    assert [summary.root.job_id for summary in summaries] == ["co:1", "owner:AB12CD:abc"]

    counts = summaries[0].counts
    assert list(counts) == ALL_STAGES
    assert counts["company-discovery"].completed == 1
    assert counts["site-fetch"].pending == 1
    assert counts["person-linkedin"].failed == 1
    assert counts["ch-appointments"].total == 0
    assert counts["owner-discovery"].total == 0

    assert summaries[1].counts["owner-discovery"].running == 1
    assert summaries[1].counts["company-discovery"].total == 0


def test_list_workflows_limit(store, aggregator):
    for idx in range(3):
        store.start_job(f"co:{idx}", "company-discovery", "discover", None)

    assert len(aggregator.list_workflows(limit=2)) == 2

    with pytest.raises(InvalidFilterError):
        aggregator.list_workflows(limit=0)


def test_list_workflows_empty(aggregator):
    assert aggregator.list_workflows() == []


def test_outstanding_counts_pending_and_running_children(store, aggregator):
    store.start_job("co:1", "company-discovery", "discover", None)
    store.mark_pending("site:1:a", "site-fetch", "fetch", {"rootJobId": "co:1"})
    store.start_job("site:1:b", "site-fetch", "fetch", {"rootJobId": "co:1"})
    store.start_job("person:1", "person-linkedin", "discover", {"rootJobId": "co:1"})
    store.start_job("site:1:c", "site-fetch", "fetch", {"rootJobId": "co:1"})
    store.complete_job("site:1:c", None)

    assert aggregator.outstanding("co:1") == 3
    assert aggregator.outstanding("co:1", queues=["site-fetch"]) == 2
    assert aggregator.outstanding("co:1", queues=[]) == 0

    store.cancel_job("site:1:a", "not needed")
    store.complete_job("site:1:b", None)
    assert aggregator.outstanding("co:1", queues=["site-fetch"]) == 0
