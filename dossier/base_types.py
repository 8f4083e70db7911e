"""Core type definitions used throughout dossier."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++ Job progress ++++++++++++++++++++++++++++++
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


class JobStatus(StrEnum):
    """The lifecycle status recorded for a job in the progress store."""

    # Spawned by a parent but not yet picked up by a worker
    PENDING = "pending"

    # A worker has started the handler
    RUNNING = "running"

    # Handler returned normally
    COMPLETED = "completed"

    # Handler raised
    FAILED = "failed"

    # Removed from its queue before pickup
    CANCELLED = "cancelled"


# Jobs that still count towards a workflow being in flight
OUTSTANDING_STATUSES = {JobStatus.PENDING, JobStatus.RUNNING}


class EventLevel(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventScope(StrEnum):
    """How prominently an event should be shown on a dashboard."""

    TRACE = "trace"
    DETAIL = "detail"
    SUMMARY = "summary"


DEFAULT_SCOPE_FOR_LEVEL = {
    EventLevel.DEBUG: EventScope.TRACE,
    EventLevel.INFO: EventScope.DETAIL,
    EventLevel.WARN: EventScope.SUMMARY,
    EventLevel.ERROR: EventScope.SUMMARY,
}


def utc_timestamp(moment: datetime | None = None) -> str:
    """Fixed-width UTC timestamp, so lexical order in the database is chronological order."""

    moment = moment or datetime.now(tz=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


@dataclass
class JobRecord:
    """One row of the job_progress table."""

    job_id: str
    # The stage (queue) the job ran on
    queue: str
    # The task kind within the stage
    name: str
    status: JobStatus
    data: Mapping[str, Any] | None
    # The workflow this job belongs to, if it was spawned by another job
    root_job_id: str | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue": self.queue,
            "name": self.name,
            "status": self.status.value,
            "data": self.data,
            "root_job_id": self.root_job_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class EventRecord:
    """One row of the job_events table. Never mutated once written."""

    id: int
    job_id: str
    ts: str
    level: EventLevel
    message: str
    data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def scope(self) -> str | None:
        return self.data.get("scope")

    @property
    def category(self) -> str | None:
        return self.data.get("category")

    @property
    def code(self) -> str | None:
        return self.data.get("code")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "ts": self.ts,
            "level": self.level.value,
            "message": self.message,
            "data": dict(self.data),
        }


@dataclass
class JobWithEvents:
    """A job row together with its full event trail."""

    job: JobRecord
    events: list[EventRecord]


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++ Queued jobs +++++++++++++++++++++++++++++++
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


class QueueState(StrEnum):
    """Where a job is in the queue backend. Distinct from its progress status."""

    # Eligible to be claimed once run_after has passed
    WAITING = "waiting"

    # Claimed by a worker
    ACTIVE = "active"

    COMPLETED = "completed"

    # Attempts exhausted, or failed with a non-retryable error
    FAILED = "failed"


@dataclass
class QueuedJob:
    """One row of the queued_jobs table."""

    job_id: str
    queue: str
    name: str
    payload: Mapping[str, Any]
    state: QueueState
    # lower runs first; zero is the default
    priority: int
    # attempts started so far, including the current one while active
    attempts_made: int
    max_attempts: int
    backoff_seconds: float
    # not claimable before this timestamp
    run_after: str
    claimed_by: str | None
    claimed_at: str | None
    last_error: str | None
    created_at: str
    updated_at: str

    def retry_delay(self) -> float:
        """Exponential backoff before the next attempt: base * 2^(attempts_made - 1)."""

        return self.backoff_seconds * 2 ** max(0, self.attempts_made - 1)

    def exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++ Workflows +++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


@dataclass
class StageCounts:
    """How many of a workflow's jobs on one stage are in each status."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    def add(self, status: JobStatus | str, count: int = 1) -> None:
        key = JobStatus(status).value
        setattr(self, key, getattr(self, key) + count)
        self.total += count

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }


@dataclass
class WorkflowSummary:
    """A root job and per-stage counts for everything it spawned."""

    root: JobRecord
    counts: dict[str, StageCounts]

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root.to_dict(),
            "counts": {stage: counts.to_dict() for stage, counts in self.counts.items()},
        }


@dataclass
class Workflow:
    """A root job plus every job tagged with its ID, grouped by stage."""

    root: JobRecord
    # stage name -> jobs, ordered by creation
    stages: dict[str, list[JobRecord]]
    counts: dict[str, StageCounts]

    @property
    def jobs(self) -> list[JobRecord]:
        return [job for jobs in self.stages.values() for job in jobs]

    @property
    def children(self) -> list[JobRecord]:
        return [job for job in self.jobs if job.job_id != self.root.job_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root.to_dict(),
            "stages": {stage: [job.to_dict() for job in jobs] for stage, jobs in self.stages.items()},
            "counts": {stage: counts.to_dict() for stage, counts in self.counts.items()},
        }
