from collections.abc import Callable, Iterable, Mapping
from typing import Any

from dossier.base_types import EventLevel, EventRecord, QueuedJob
from dossier.config import Settings
from dossier.dispatcher import QueueDispatcher
from dossier.progress.store import ProgressStore
from dossier.rate_limiter import COMPANIES_HOUSE, RateLimiter, shared_limiter
from dossier.utils.logging_config import get_logger
from dossier.workflow.aggregator import WorkflowAggregator

log = get_logger(__name__)


class JobContext:
    """What a stage handler sees of the job it is running and the pipeline around it."""

    def __init__(
        self,
        job: QueuedJob,
        store: ProgressStore,
        dispatcher: QueueDispatcher,
        aggregator: WorkflowAggregator | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.job = job
        self.store = store
        self.dispatcher = dispatcher
        self.aggregator = aggregator
        self.settings = settings

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def queue(self) -> str:
        return self.job.queue

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def payload(self) -> Mapping[str, Any]:
        return self.job.payload

    @property
    def attempt(self) -> int:
        """1 on the first attempt, 2 on the first retry, and so on."""

        return self.job.attempts_made

    @property
    def root_job_id(self) -> str:
        """The workflow this job belongs to: the payload's rootJobId, or this job if it is a root."""

        root = self.payload.get("rootJobId")
        return root if isinstance(root, str) and root else self.job_id

    @property
    def is_root(self) -> bool:
        return self.root_job_id == self.job_id

    def log(self, level: EventLevel | str, message: str, **data: Any) -> EventRecord:
        """Append a progress event to this job's trail."""

        return self.store.log_event(self.job_id, level, message, data or None)

    def log_root(self, level: EventLevel | str, message: str, **data: Any) -> EventRecord | None:
        """Mirror a progress line into the root job's trail, so workflow dashboards see it.

        Does nothing for a root job, whose own trail already is the root trail.
        """

        if self.is_root:
            return None
        return self.store.log_event(self.root_job_id, level, message, {"childJobId": self.job_id, **data})

    def spawn(
        self,
        queue: str,
        task: str | None,
        payload: Mapping[str, Any],
        job_id: str | None = None,
        pending: bool = False,
        priority: int = 0,
    ) -> str:
        """Submit a follow-up job in this workflow.

        @param queue: The stage to submit to
        @param task: The task kind; defaults to the stage's task
        @param payload: The child's payload; rootJobId is added
        @param job_id: An explicit child job ID
        @param pending: Also record the child as pending, so fan-in counts see it before pickup
        @param priority: Lower runs first
        @return: The child's job ID
        """

        tagged = {**payload, "rootJobId": self.root_job_id}
        child_id = self.dispatcher.submit(queue, task, tagged, job_id=job_id, priority=priority)

        if pending:
            name = task or self.dispatcher.stages.get(queue).task
            self.store.mark_pending(child_id, queue, name, tagged)

        log.debug(f"{self.job_id} spawned {child_id} on {queue}")
        return child_id

    def cancel(self, job_id: str, reason: str, **details: Any) -> bool:
        """Withdraw a job that has not started: remove it from its queue and mark it cancelled.

        @return: False if the job had already been picked up
        """

        if not self.dispatcher.remove(job_id):
            return False

        self.store.cancel_job(job_id, reason, **details)
        return True

    def outstanding(self, queues: Iterable[str] | None = None) -> int:
        """Pending or running jobs under this job's root, optionally only on some stages."""

        if self.aggregator is None:
            raise RuntimeError("outstanding() needs a workflow aggregator")
        return self.aggregator.outstanding(self.root_job_id, queues)

    def limiter(self, name: str = COMPANIES_HOUSE, factory: Callable[[], RateLimiter] | None = None) -> RateLimiter:
        """The process-wide rate limiter for an external service."""

        return shared_limiter(name, settings=self.settings, factory=factory)
