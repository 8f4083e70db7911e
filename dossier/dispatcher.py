"""Submitting work to the pipeline's stage queues."""

from collections.abc import Mapping
from typing import Any

from dossier.queues.sqlite import SQLiteQueueBackend
from dossier.stages import StageRegistry
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)


class QueueDispatcher:
    """Validate a payload, derive its idempotent job ID and enqueue it on its stage.

    Submitting the same logical request twice yields the same job ID and a single job;
    the backend's primary key resolves concurrent submissions.
    """

    def __init__(self, backend: SQLiteQueueBackend, stages: StageRegistry) -> None:
        self.backend = backend
        self.stages = stages

    def submit(
        self,
        queue: str,
        task: str | None,
        payload: Mapping[str, Any],
        *,
        job_id: str | None = None,
        priority: int = 0,
        delay_seconds: float = 0,
    ) -> str:
        """Submit one unit of work.

        @param queue: The stage name
        @param task: The task kind; defaults to the stage's task
        @param payload: The stage's payload
        @param job_id: An explicit ID, used by handlers naming follow-up jobs
        @param priority: Lower runs first
        @param delay_seconds: Do not run before this many seconds have passed
        @return: The job ID, whether or not a new job was created
        """

        stage = self.stages.get(queue)
        stage.validate(payload)

        resolved_id = job_id or stage.job_key(payload)
        created = self.backend.add(
            resolved_id,
            queue,
            task or stage.task,
            payload,
            priority=priority,
            max_attempts=stage.attempts,
            backoff_seconds=stage.backoff_seconds,
            delay_seconds=delay_seconds,
        )

        log.info(f"Submitted {resolved_id} to {queue}{'' if created else ' (already known)'}")
        return resolved_id

    def remove(self, job_id: str) -> bool:
        """Remove a job before it is picked up. Returns False if it was already claimed or finished."""

        return self.backend.remove(job_id)
