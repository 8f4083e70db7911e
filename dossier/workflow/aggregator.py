"""Cross-queue views of a workflow: a root job plus everything it spawned.

Nothing here is stored; every view is recomputed from progress rows on each call.
"""

from collections.abc import Iterable

from dossier.base_types import (
    OUTSTANDING_STATUSES,
    EventRecord,
    JobRecord,
    StageCounts,
    Workflow,
    WorkflowSummary,
)
from dossier.exception import WorkflowNotFoundError
from dossier.progress.store import EVENT_COLUMNS, JOB_COLUMNS, ProgressStore, parse_limit, row_to_event, row_to_job
from dossier.stages import StageRegistry
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)


def _placeholders(values: Iterable[object]) -> str:
    return ",".join("?" for _ in values)


class WorkflowAggregator:
    """Reconstruct workflows from the progress store, with per-stage counts for every registered stage."""

    def __init__(self, store: ProgressStore, stages: StageRegistry) -> None:
        self.store = store
        self.stages = stages

    def _empty_counts(self) -> dict[str, StageCounts]:
        return {name: StageCounts() for name in self.stages.names()}

    def list_workflows(self, limit: int | str | None = None) -> list[WorkflowSummary]:
        """The most recently updated root jobs, each with counts of its jobs per stage.

        @param limit: Page size; default 50, at most 200
        @return: Workflow summaries, most recently updated first
        """

        page_size = parse_limit(limit)
        root_stages = self.stages.root_stages()
        if not root_stages:
            return []

        with self.store.database.reader() as conn:
            root_rows = conn.execute(
                f"""
            select {JOB_COLUMNS} from job_progress
            where root_job_id is null and queue in ({_placeholders(root_stages)})
            order by updated_at desc, job_id asc
            limit ?
            """,  # noqa: S608
                (*root_stages, page_size),
            ).fetchall()

            roots = [row_to_job(row) for row in root_rows]
            if not roots:
                return []

            root_ids = [root.job_id for root in roots]
            count_rows = conn.execute(
                f"""
            select coalesce(root_job_id, job_id) as workflow_id, queue, status, count(*) as total
            from job_progress
            where job_id in ({_placeholders(root_ids)}) or root_job_id in ({_placeholders(root_ids)})
            group by workflow_id, queue, status
            """,  # noqa: S608
                (*root_ids, *root_ids),
            ).fetchall()

        counts: dict[str, dict[str, StageCounts]] = {root_id: self._empty_counts() for root_id in root_ids}
        for row in count_rows:
            per_stage = counts[row["workflow_id"]]
            per_stage.setdefault(row["queue"], StageCounts()).add(row["status"], row["total"])

        return [WorkflowSummary(root=root, counts=counts[root.job_id]) for root in roots]

    def get_workflow(self, root_job_id: str) -> Workflow:
        """The root job and every job tagged with its ID, grouped by stage.

        A child job ID is not a workflow: it raises WorkflowNotFoundError naming the real root.

        @param root_job_id: The workflow's root job ID
        @return: The workflow, with jobs in each stage ordered by creation
        """

        with self.store.database.reader() as conn:
            rows = conn.execute(
                f"""
            select {JOB_COLUMNS} from job_progress
            where job_id = ? or root_job_id = ?
            order by created_at asc, job_id asc
            """,  # noqa: S608
                (root_job_id, root_job_id),
            ).fetchall()

        jobs = [row_to_job(row) for row in rows]
        root = next((job for job in jobs if job.job_id == root_job_id), None)
        if root is None:
            raise WorkflowNotFoundError(f"Workflow with root {root_job_id} not found.")
        if root.root_job_id is not None:
            raise WorkflowNotFoundError(f"{root_job_id} is a child of workflow {root.root_job_id}, not a root.")

        stages: dict[str, list[JobRecord]] = {name: [] for name in self.stages.names()}
        counts = self._empty_counts()
        for job in jobs:
            stages.setdefault(job.queue, []).append(job)
            counts.setdefault(job.queue, StageCounts()).add(job.status)

        log.debug(f"Workflow {root_job_id} has {len(jobs) - 1} child job(s)")
        return Workflow(root=root, stages=stages, counts=counts)

    def get_timeline(self, root_job_id: str) -> list[EventRecord]:
        """Every event of the root job and its descendants, in (ts, id) order. Empty if nothing matches."""

        with self.store.database.reader() as conn:
            rows = conn.execute(
                f"""
            select {EVENT_COLUMNS} from job_events
            where job_id = ? or job_id in (select job_id from job_progress where root_job_id = ?)
            order by ts asc, id asc
            """,  # noqa: S608
                (root_job_id, root_job_id),
            ).fetchall()

        return [row_to_event(row) for row in rows]

    def outstanding(self, root_job_id: str, queues: Iterable[str] | None = None) -> int:
        """How many of the workflow's child jobs are still pending or running.

        Handlers use this to fan in: continue once nothing under the root is outstanding.

        @param root_job_id: The workflow's root job ID
        @param queues: Only count jobs on these stages
        @return: The number of outstanding child jobs
        """

        statuses = [status.value for status in OUTSTANDING_STATUSES]
        query = f"select count(*) as total from job_progress where root_job_id = ? and status in ({_placeholders(statuses)})"  # noqa: S608
        params: list[object] = [root_job_id, *statuses]

        if queues is not None:
            queue_names = list(queues)
            if not queue_names:
                return 0
            query += f" and queue in ({_placeholders(queue_names)})"
            params.extend(queue_names)

        with self.store.database.reader() as conn:
            row = conn.execute(query, params).fetchone()

        return row["total"]
