"""Deleting a workflow's full footprint: business records, queued jobs, events and job rows.

Queued jobs go too, so no waiting child runs after its workflow is gone and the
same job IDs can be submitted again.
"""

from dataclasses import dataclass, field
import sqlite3

from dossier.database import Database
from dossier.exception import CleanupError
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)

# Every job ID in the workflow, root included
_WORKFLOW_JOBS = "select job_id from job_progress where job_id = :root or root_job_id = :root"

_OWNED_BY_WORKFLOW = f"(job_id in ({_WORKFLOW_JOBS}) or job_id = :root or root_job_id = :root)"

_WORKFLOW_PROPERTIES = f"select id from owner_properties where {_OWNED_BY_WORKFLOW}"

_WORKFLOW_PEOPLE = f"select id from ch_people where {_OWNED_BY_WORKFLOW}"

# Children before parents, so foreign keys hold at every step
DELETE_STATEMENTS: list[tuple[str, str]] = [
    (
        "owner_signals",
        "delete from owner_signals where candidate_id in "
        f"(select id from owner_candidates where property_id in ({_WORKFLOW_PROPERTIES}))",
    ),
    ("ch_appointments", f"delete from ch_appointments where person_id in ({_WORKFLOW_PEOPLE})"),
    ("owner_candidates", f"delete from owner_candidates where property_id in ({_WORKFLOW_PROPERTIES})"),
    ("ch_people", f"delete from ch_people where {_OWNED_BY_WORKFLOW}"),
    ("owner_properties", f"delete from owner_properties where {_OWNED_BY_WORKFLOW}"),
    (
        "queued_jobs",
        f"delete from queued_jobs where job_id in ({_WORKFLOW_JOBS}) or job_id = :root "
        "or json_extract(payload, '$.rootJobId') = :root",
    ),
    ("job_events", f"delete from job_events where job_id in ({_WORKFLOW_JOBS}) or job_id = :root"),
    ("job_progress", "delete from job_progress where job_id = :root or root_job_id = :root"),
]


@dataclass
class CleanupResult:
    root_job_id: str
    # table name -> rows deleted
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        """Whether anything belonging to the workflow existed."""

        return any(self.counts.values())

    @property
    def deleted(self) -> int:
        return sum(self.counts.values())


class WorkflowCleanup:
    def __init__(self, database: Database) -> None:
        self.database = database

    def delete(self, root_job_id: str) -> CleanupResult:
        """Delete a workflow and everything it wrote, in one transaction.

        Deleting an unknown or already-deleted workflow succeeds with every count zero.

        @param root_job_id: The workflow's root job ID
        @return: Rows deleted per table
        """

        log.debug(f"Deleting workflow {root_job_id}")

        result = CleanupResult(root_job_id=root_job_id)
        params = {"root": root_job_id}

        try:
            with self.database.transaction() as conn:
                for table, statement in DELETE_STATEMENTS:
                    result.counts[table] = conn.execute(statement, params).rowcount
        except sqlite3.Error as err:
            log.error(f"Deleting workflow {root_job_id} failed and was rolled back: {err!r}")
            raise CleanupError(f"Failed to delete workflow {root_job_id}: {err}") from err

        log.info(f"Deleted workflow {root_job_id}: {result.counts}")
        return result
