from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import sqlite3
from typing import Any

from dossier.base_types import QueuedJob, QueueState, utc_timestamp
from dossier.constants import DEFAULT_ATTEMPTS
from dossier.database import Database, json_dumps, json_loads
from dossier.exception import exception_from_text_blob, exception_to_text_blob
from dossier.queues.tables import QUEUE_SCHEMA
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)

QUEUED_JOB_COLUMNS = (
    "job_id, queue, name, payload, state, priority, attempts_made, max_attempts, backoff_seconds, "
    "run_after, claimed_by, claimed_at, last_error, created_at, updated_at"
)


def _later(seconds: float) -> str:
    return utc_timestamp(datetime.now(tz=UTC) + timedelta(seconds=seconds))


def _row_to_queued_job(row: sqlite3.Row) -> QueuedJob:
    return QueuedJob(
        job_id=row["job_id"],
        queue=row["queue"],
        name=row["name"],
        payload=json_loads(row["payload"]) or {},
        state=QueueState(row["state"]),
        priority=row["priority"],
        attempts_made=row["attempts_made"],
        max_attempts=row["max_attempts"],
        backoff_seconds=row["backoff_seconds"],
        run_after=row["run_after"],
        claimed_by=row["claimed_by"],
        claimed_at=row["claimed_at"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@dataclass
class StalledJobs:
    """Jobs found claimed past the stall timeout."""

    # returned to waiting for another attempt
    requeued: list[str] = field(default_factory=list)

    # out of attempts, now failed
    failed: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.requeued) + len(self.failed)


class SQLiteQueueBackend:
    """Durable job queues in SQLite.

    A job ID is the primary key, so adding an ID that already exists (in any state)
    is a no-op: this is what makes submissions idempotent. Claims, completions and
    retries are single `begin immediate` transactions, so a job is active in at most
    one worker at a time.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def init(self) -> None:
        self.database.apply_schema(QUEUE_SCHEMA)

    def add(
        self,
        job_id: str,
        queue: str,
        name: str,
        payload: Any,
        *,
        priority: int = 0,
        max_attempts: int = DEFAULT_ATTEMPTS,
        backoff_seconds: float = 1.0,
        delay_seconds: float = 0,
    ) -> bool:
        """Add a job exactly once.

        @return: True if the job was created, False if the ID was already known
        """

        now = utc_timestamp()
        run_after = _later(delay_seconds) if delay_seconds > 0 else now

        with self.database.transaction() as conn:
            cursor = conn.execute(
                f"""
            insert into queued_jobs ({QUEUED_JOB_COLUMNS})
            values (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, null, null, null, ?, ?)
            on conflict(job_id) do nothing;
            """,  # noqa: S608
                (
                    job_id,
                    queue,
                    name,
                    json_dumps(payload),
                    QueueState.WAITING.value,
                    priority,
                    max_attempts,
                    backoff_seconds,
                    run_after,
                    now,
                    now,
                ),
            )

        created = cursor.rowcount > 0
        if created:
            log.debug(f"Queued job {job_id} on {queue} (priority={priority}, attempts={max_attempts})")
        else:
            log.debug(f"Job {job_id} already queued; ignoring duplicate")
        return created

    def claim(self, queue: str, worker_id: str) -> QueuedJob | None:
        """Atomically take the next runnable job on a queue, if any."""

        now = utc_timestamp()
        with self.database.transaction() as conn:
            row = conn.execute(
                """
            select job_id from queued_jobs
            where queue = ? and state = ? and run_after <= ?
            order by priority asc, run_after asc, created_at asc, rowid asc
            limit 1
            """,
                (queue, QueueState.WAITING.value, now),
            ).fetchone()

            if row is None:
                return None

            conn.execute(
                """
            update queued_jobs
            set state = ?, claimed_by = ?, claimed_at = ?, attempts_made = attempts_made + 1, updated_at = ?
            where job_id = ?
            """,
                (QueueState.ACTIVE.value, worker_id, now, now, row["job_id"]),
            )

            claimed = conn.execute(
                f"select {QUEUED_JOB_COLUMNS} from queued_jobs where job_id = ?",  # noqa: S608
                (row["job_id"],),
            ).fetchone()

        job = _row_to_queued_job(claimed)
        log.debug(f"Worker {worker_id} claimed {job.job_id} (attempt {job.attempts_made}/{job.max_attempts})")
        return job

    def complete(self, job_id: str, worker_id: str | None = None) -> bool:
        """Mark an active job completed. A worker that lost its claim (stall recovery) is ignored."""

        query = "update queued_jobs set state = ?, claimed_by = null, updated_at = ? where job_id = ? and state = ?"
        params: list[Any] = [QueueState.COMPLETED.value, utc_timestamp(), job_id, QueueState.ACTIVE.value]
        if worker_id is not None:
            query += " and claimed_by = ?"
            params.append(worker_id)

        with self.database.transaction() as conn:
            cursor = conn.execute(query, params)

        if cursor.rowcount == 0:
            log.warning(f"Could not complete job {job_id}: not active for worker {worker_id}")
            return False
        return True

    def fail(self, job_id: str, error: BaseException, *, retry: bool = True, worker_id: str | None = None) -> bool:
        """Record a failed attempt; schedule a retry with exponential backoff while attempts remain.

        @param retry: False fails the job terminally regardless of attempts left
        @return: True if another attempt was scheduled
        """

        try:
            error_blob: str | None = exception_to_text_blob(error)
        except Exception as err:
            log.warning(f"Could not serialise error for job {job_id}: {err!r}")
            error_blob = None

        with self.database.transaction() as conn:
            row = conn.execute(
                f"select {QUEUED_JOB_COLUMNS} from queued_jobs where job_id = ? and state = ?",  # noqa: S608
                (job_id, QueueState.ACTIVE.value),
            ).fetchone()

            if row is None or (worker_id is not None and row["claimed_by"] != worker_id):
                log.warning(f"Could not fail job {job_id}: not active for worker {worker_id}")
                return False

            job = _row_to_queued_job(row)
            will_retry = retry and not job.exhausted()
            now = utc_timestamp()

            if will_retry:
                delay = job.retry_delay()
                conn.execute(
                    """
                update queued_jobs
                set state = ?, run_after = ?, claimed_by = null, claimed_at = null,
                    last_error = ?, error_blob = ?, updated_at = ?
                where job_id = ?
                """,
                    (QueueState.WAITING.value, _later(delay), str(error), error_blob, now, job_id),
                )
            else:
                conn.execute(
                    """
                update queued_jobs
                set state = ?, claimed_by = null, last_error = ?, error_blob = ?, updated_at = ?
                where job_id = ?
                """,
                    (QueueState.FAILED.value, str(error), error_blob, now, job_id),
                )

        if will_retry:
            log.info(f"Job {job_id} failed attempt {job.attempts_made}/{job.max_attempts}; retrying in {delay:.1f}s")
        else:
            log.warning(f"Job {job_id} failed after {job.attempts_made} attempt(s): {error}")
        return will_retry

    def remove(self, job_id: str) -> bool:
        """Remove a job that has not been picked up yet. Active and finished jobs are kept."""

        with self.database.transaction() as conn:
            cursor = conn.execute(
                "delete from queued_jobs where job_id = ? and state = ?",
                (job_id, QueueState.WAITING.value),
            )

        removed = cursor.rowcount > 0
        log.debug(f"Remove {job_id}: {'removed' if removed else 'not waiting'}")
        return removed

    def recover_stalled(self, stall_seconds: float) -> StalledJobs:
        """Return jobs claimed longer than `stall_seconds` ago to waiting (or failed, if out of attempts).

        @return: The IDs requeued and the IDs failed
        """

        cutoff = _later(-stall_seconds)
        now = utc_timestamp()
        stalled = StalledJobs()

        with self.database.transaction() as conn:
            rows = conn.execute(
                """
            select job_id, attempts_made, max_attempts from queued_jobs
            where state = ? and claimed_at < ?
            order by claimed_at asc
            """,
                (QueueState.ACTIVE.value, cutoff),
            ).fetchall()

            for row in rows:
                if row["attempts_made"] >= row["max_attempts"]:
                    stalled.failed.append(row["job_id"])
                else:
                    stalled.requeued.append(row["job_id"])

            conn.executemany(
                """
            update queued_jobs
            set state = ?, claimed_by = null, last_error = coalesce(last_error, 'job stalled'), updated_at = ?
            where job_id = ?
            """,
                [(QueueState.FAILED.value, now, job_id) for job_id in stalled.failed],
            )

            conn.executemany(
                """
            update queued_jobs
            set state = ?, claimed_by = null, claimed_at = null, run_after = ?, updated_at = ?
            where job_id = ?
            """,
                [(QueueState.WAITING.value, now, now, job_id) for job_id in stalled.requeued],
            )

        if stalled:
            log.warning(f"Recovered stalled jobs: {len(stalled.requeued)} requeued, {len(stalled.failed)} failed")
        return stalled

    def get(self, job_id: str) -> QueuedJob | None:
        with self.database.reader() as conn:
            row = conn.execute(
                f"select {QUEUED_JOB_COLUMNS} from queued_jobs where job_id = ?",  # noqa: S608
                (job_id,),
            ).fetchone()

        return _row_to_queued_job(row) if row is not None else None

    def get_error(self, job_id: str) -> BaseException | None:
        """The last exception recorded for a job, with its traceback restored."""

        with self.database.reader() as conn:
            row = conn.execute("select error_blob from queued_jobs where job_id = ?", (job_id,)).fetchone()

        if row is None or row["error_blob"] is None:
            return None
        return exception_from_text_blob(row["error_blob"])

    def counts(self, queue: str | None = None) -> dict[str, int]:
        """Number of jobs per queue state, zero-filled."""

        query = "select state, count(*) as total from queued_jobs"
        params: list[Any] = []
        if queue is not None:
            query += " where queue = ?"
            params.append(queue)
        query += " group by state"

        with self.database.reader() as conn:
            rows = conn.execute(query, params).fetchall()

        counts = {state.value: 0 for state in QueueState}
        for row in rows:
            counts[row["state"]] = row["total"]
        return counts
