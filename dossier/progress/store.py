"""The progress store: job lifecycle rows plus an append-only event trail.

Job rows are single-row upserts; the dispatcher's idempotent job IDs mean at most
one worker writes a given row at a time, so no locking beyond SQLite's own is needed.
Events are pure appends and are always read back in (ts, id) order.
"""

from collections.abc import Mapping
import sqlite3
from typing import Any

from dossier.base_types import (
    DEFAULT_SCOPE_FOR_LEVEL,
    EventLevel,
    EventRecord,
    JobRecord,
    JobStatus,
    JobWithEvents,
    utc_timestamp,
)
from dossier.constants import DEFAULT_PAGE_SIZE, GENERIC_CATEGORY, MAX_PAGE_SIZE, QUEUE_CACHE_SIZE
from dossier.database import Database, json_dumps, json_loads
from dossier.exception import InvalidFilterError, JobNotFoundError, describe_exception
from dossier.progress.cache import QueueCache
from dossier.progress.tables import BUSINESS_SCHEMA, PROGRESS_SCHEMA
from dossier.utils.hash import slugify
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)

JOB_COLUMNS = "job_id, queue, name, status, data, root_job_id, created_at, updated_at"
EVENT_COLUMNS = "id, job_id, ts, level, message, data"


def parse_limit(limit: int | str | None) -> int:
    """Validate a page size: default 50, clamped to 200, must be a positive integer."""

    if limit is None or limit == "":
        return DEFAULT_PAGE_SIZE

    if isinstance(limit, bool):
        raise InvalidFilterError(f"limit must be an integer, got {limit!r}")

    if isinstance(limit, str):
        try:
            limit = int(limit.strip())
        except ValueError as err:
            raise InvalidFilterError(f"limit must be an integer, got {limit!r}") from err

    if not isinstance(limit, int):
        raise InvalidFilterError(f"limit must be an integer, got {limit!r}")

    if limit <= 0:
        raise InvalidFilterError(f"limit must be positive, got {limit}")

    return min(limit, MAX_PAGE_SIZE)


def parse_status(status: str | None) -> JobStatus | None:
    if status is None or status == "":
        return None

    try:
        return JobStatus(status)
    except ValueError as err:
        allowed = ", ".join(s.value for s in JobStatus)
        raise InvalidFilterError(f"Unknown status {status!r}; expected one of {allowed}") from err


def extract_root_job_id(job_id: str, payload: Any) -> str | None:
    """Read the workflow root from a payload. A job naming itself as root is a root, not a child."""

    if not isinstance(payload, Mapping):
        return None

    root = payload.get("rootJobId")
    if not isinstance(root, str) or not root or root == job_id:
        return None
    return root


def row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=row["job_id"],
        queue=row["queue"],
        name=row["name"],
        status=JobStatus(row["status"]),
        data=json_loads(row["data"]),
        root_job_id=row["root_job_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        id=row["id"],
        job_id=row["job_id"],
        ts=row["ts"],
        level=EventLevel(row["level"]),
        message=row["message"],
        data=json_loads(row["data"]) or {},
    )


class ProgressStore:
    """Single source of truth for job status and the event trail dashboards read."""

    def __init__(self, database: Database, cache_size: int = QUEUE_CACHE_SIZE) -> None:
        self.database = database
        self._queue_cache = QueueCache(cache_size)

    def init(self) -> None:
        """Create the progress and business tables if they don't exist."""

        self.database.apply_schema([*PROGRESS_SCHEMA, *BUSINESS_SCHEMA])

    # ++++++++++++++++++++++ Lifecycle ++++++++++++++++++++++

    def start_job(self, job_id: str, queue: str, name: str, payload: Mapping[str, Any] | None = None) -> None:
        """Mark a job as running, creating the row or resetting it on a retry."""

        log.debug(f"Starting job {job_id} on {queue}")

        now = utc_timestamp()
        with self.database.transaction() as conn:
            conn.execute(
                """
            insert into job_progress (job_id, queue, name, status, data, root_job_id, created_at, updated_at)
            values (?, ?, ?, ?, ?, ?, ?, ?)
            on conflict(job_id) do update set
                status = excluded.status,
                data = excluded.data,
                root_job_id = coalesce(excluded.root_job_id, job_progress.root_job_id),
                updated_at = excluded.updated_at;
            """,
                (
                    job_id,
                    queue,
                    name,
                    JobStatus.RUNNING.value,
                    json_dumps(payload),
                    extract_root_job_id(job_id, payload),
                    now,
                    now,
                ),
            )

        self._queue_cache.set(job_id, queue)

    def complete_job(self, job_id: str, data: Mapping[str, Any] | None = None) -> None:
        """Mark a job as completed and store its final payload. Appends no event."""

        log.debug(f"Completing job {job_id}")

        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
            update job_progress
            set status = ?, data = ?, root_job_id = coalesce(?, root_job_id), updated_at = ?
            where job_id = ?
            """,
                (JobStatus.COMPLETED.value, json_dumps(data), extract_root_job_id(job_id, data), utc_timestamp(), job_id),
            )

        if cursor.rowcount == 0:
            log.warning(f"complete_job called for unknown job {job_id}")

    def fail_job(self, job_id: str, error: BaseException | str) -> None:
        """Mark a job as failed, store the serialised error and append an error event.

        Never raises: a failure to record the failure is logged so it cannot mask the
        original error or crash the worker.
        """

        try:
            details = describe_exception(error)
            with self.database.transaction() as conn:
                conn.execute(
                    "update job_progress set status = ?, data = ?, updated_at = ? where job_id = ?",
                    (JobStatus.FAILED.value, json_dumps(details), utc_timestamp(), job_id),
                )

            event_data = {key: value for key, value in details.items() if key != "traceback"}
            self.log_event(job_id, EventLevel.ERROR, "job failed", event_data)
        except Exception as err:
            log.error(f"Failed to record failure of job {job_id}: {err!r} (original error: {error!s})")

    def mark_pending(self, job_id: str, queue: str, name: str, payload: Mapping[str, Any] | None = None) -> bool:
        """Record a spawned job as pending before a worker picks it up.

        Jobs that are already running or finished are left alone.

        @return: True if a row was created or moved to pending
        """

        log.debug(f"Marking job {job_id} on {queue} as pending")

        now = utc_timestamp()
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
            insert into job_progress (job_id, queue, name, status, data, root_job_id, created_at, updated_at)
            values (?, ?, ?, ?, ?, ?, ?, ?)
            on conflict(job_id) do update set
                status = excluded.status,
                data = excluded.data,
                root_job_id = coalesce(excluded.root_job_id, job_progress.root_job_id),
                updated_at = excluded.updated_at
            where job_progress.status in (?, ?);
            """,
                (
                    job_id,
                    queue,
                    name,
                    JobStatus.PENDING.value,
                    json_dumps(payload),
                    extract_root_job_id(job_id, payload),
                    now,
                    now,
                    JobStatus.PENDING.value,
                    JobStatus.CANCELLED.value,
                ),
            )

        self._queue_cache.set(job_id, queue)
        return cursor.rowcount > 0

    def cancel_job(self, job_id: str, reason: str, **details: Any) -> bool:
        """Move a pending job to cancelled, noting why in its data.

        @return: True if the job was pending and is now cancelled
        """

        log.debug(f"Cancelling job {job_id}: {reason}")

        with self.database.transaction() as conn:
            row = conn.execute(
                "select data from job_progress where job_id = ? and status = ?",
                (job_id, JobStatus.PENDING.value),
            ).fetchone()

            if row is None:
                return False

            data = json_loads(row["data"])
            merged = {**(data if isinstance(data, Mapping) else {}), "cancelled": True, "reason": reason, **details}
            conn.execute(
                "update job_progress set status = ?, data = ?, updated_at = ? where job_id = ?",
                (JobStatus.CANCELLED.value, json_dumps(merged), utc_timestamp(), job_id),
            )

        return True

    # ++++++++++++++++++++++ Events ++++++++++++++++++++++

    def _resolve_category(self, job_id: str) -> str:
        """Find the job's queue: cache first, then the store, else the generic category."""

        queue = self._queue_cache.get(job_id)
        if queue is not None:
            return queue

        try:
            queue = self.get_queue(job_id)
        except sqlite3.Error as err:
            log.warning(f"Could not look up queue for job {job_id}: {err!r}; using {GENERIC_CATEGORY}")
            return GENERIC_CATEGORY

        if queue is None:
            # not cached, so a job started later is still categorised correctly
            return GENERIC_CATEGORY

        self._queue_cache.set(job_id, queue)
        return queue

    def log_event(
        self,
        job_id: str,
        level: EventLevel | str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> EventRecord:
        """Append one event to a job's trail.

        Missing scope, category and code are derived so call sites need not repeat them:
        scope from the level, category from the job's queue, code as "<category>.<slug(message)>".

        @param job_id: The job the event belongs to (need not exist yet)
        @param level: debug, info, warn or error
        @param message: Human-readable message
        @param data: Optional structured detail
        @return: The stored event
        """

        event_level = EventLevel(level)

        if data is None:
            enriched: dict[str, Any] = {}
        elif isinstance(data, Mapping):
            enriched = dict(data)
        else:
            enriched = {"value": data}

        if "scope" not in enriched:
            enriched["scope"] = DEFAULT_SCOPE_FOR_LEVEL[event_level].value
        if not enriched.get("category"):
            enriched["category"] = self._resolve_category(job_id)
        if not enriched.get("code"):
            enriched["code"] = f"{enriched['category']}.{slugify(message)}"

        ts = utc_timestamp()
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "insert into job_events (job_id, ts, level, message, data) values (?, ?, ?, ?, ?)",
                (job_id, ts, event_level.value, message, json_dumps(enriched)),
            )
            event_id = cursor.lastrowid

        log.debug(f"[{job_id}] {event_level.value}: {message}")

        return EventRecord(id=event_id or 0, job_id=job_id, ts=ts, level=event_level, message=message, data=enriched)

    # ++++++++++++++++++++++ Reads ++++++++++++++++++++++

    def get_queue(self, job_id: str) -> str | None:
        with self.database.reader() as conn:
            row = conn.execute("select queue from job_progress where job_id = ? limit 1", (job_id,)).fetchone()

        return row["queue"] if row is not None else None

    def find_job(self, job_id: str) -> JobRecord | None:
        with self.database.reader() as conn:
            row = conn.execute(
                f"select {JOB_COLUMNS} from job_progress where job_id = ?",  # noqa: S608
                (job_id,),
            ).fetchone()

        return row_to_job(row) if row is not None else None

    def get_job(self, job_id: str) -> JobRecord:
        """Get a job row. Error if the job is not found."""

        job = self.find_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job with ID {job_id} not found.")
        return job

    def get_events(self, job_id: str) -> list[EventRecord]:
        with self.database.reader() as conn:
            rows = conn.execute(
                f"select {EVENT_COLUMNS} from job_events where job_id = ? order by ts asc, id asc",  # noqa: S608
                (job_id,),
            ).fetchall()

        return [row_to_event(row) for row in rows]

    def get_job_with_events(self, job_id: str) -> JobWithEvents:
        return JobWithEvents(job=self.get_job(job_id), events=self.get_events(job_id))

    def list_jobs(
        self,
        queue: str | None = None,
        status: str | None = None,
        limit: int | str | None = None,
    ) -> list[JobRecord]:
        """List jobs, most recently updated first.

        @param queue: Only jobs on this stage
        @param status: Only jobs with this status
        @param limit: Page size; default 50, at most 200
        @return: Matching job rows
        """

        page_size = parse_limit(limit)
        job_status = parse_status(status)

        clauses: list[str] = []
        params: list[Any] = []
        if queue:
            clauses.append("queue = ?")
            params.append(queue)
        if job_status is not None:
            clauses.append("status = ?")
            params.append(job_status.value)

        where = f"where {' and '.join(clauses)}" if clauses else ""
        params.append(page_size)

        with self.database.reader() as conn:
            rows = conn.execute(
                f"select {JOB_COLUMNS} from job_progress {where} order by updated_at desc, job_id asc limit ?",  # noqa: S608
                params,
            ).fetchall()

        return [row_to_job(row) for row in rows]
