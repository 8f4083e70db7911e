"""Run one stage's handler against the jobs queued for it.

Every attempt follows the same shape: start_job, run the handler, then complete_job
or fail_job. Retrying is left to the queue backend; the progress store only ever
records what happened.
"""

from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event
from typing import Any

from dossier.base_types import QueuedJob
from dossier.config import Settings
from dossier.dispatcher import QueueDispatcher
from dossier.exception import is_retryable
from dossier.progress.store import ProgressStore
from dossier.queues.sqlite import SQLiteQueueBackend
from dossier.stages import StageSpec
from dossier.utils.id_generator import generate_worker_id
from dossier.utils.logging_config import get_logger
from dossier.worker.context import JobContext
from dossier.workflow.aggregator import WorkflowAggregator

log = get_logger(__name__)

type Handler = Callable[[JobContext], Mapping[str, Any] | None]


class StageWorker:
    """Claim jobs for one stage and run up to `stage.concurrency` of them at once."""

    def __init__(
        self,
        stage: StageSpec,
        handler: Handler,
        backend: SQLiteQueueBackend,
        store: ProgressStore,
        dispatcher: QueueDispatcher,
        aggregator: WorkflowAggregator | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.stage = stage
        self.handler = handler
        self.backend = backend
        self.store = store
        self.dispatcher = dispatcher
        self.aggregator = aggregator
        self.settings = settings or Settings()
        self.worker_id = generate_worker_id(stage.name)

    def process(self, job: QueuedJob) -> bool:
        """Run one claimed job through its full lifecycle.

        @param job: A job claimed by this worker
        @return: True if the handler succeeded
        """

        try:
            self.store.start_job(job.job_id, job.queue, job.name, job.payload)
        except Exception as err:
            # release the claim so the job is retried rather than left active
            log.error(f"Could not start job {job.job_id}: {err!r}")
            self.backend.fail(job.job_id, err, worker_id=self.worker_id)
            return False

        context = JobContext(job, self.store, self.dispatcher, self.aggregator, self.settings)

        try:
            result = self.handler(context)
        except Exception as err:
            log.warning(f"Job {job.job_id} raised {type(err).__name__}: {err}")
            self.store.fail_job(job.job_id, err)
            self.backend.fail(job.job_id, err, retry=is_retryable(err), worker_id=self.worker_id)
            return False

        if result is not None and not isinstance(result, Mapping):
            result = {"result": result}

        self.store.complete_job(job.job_id, result)
        self.backend.complete(job.job_id, worker_id=self.worker_id)
        return True

    def run_once(self) -> bool:
        """Claim and run a single job in the calling thread.

        @return: False if nothing was waiting
        """

        job = self.backend.claim(self.stage.name, self.worker_id)
        if job is None:
            return False

        self.process(job)
        return True

    def _report(self, future: Future) -> None:
        err = future.exception()
        if err is not None:
            log.error(f"Worker {self.worker_id} could not record a job outcome: {err!r}")

    def run(self, stop: Event) -> None:
        """Poll for jobs until `stop` is set, then wait for in-flight jobs to finish."""

        log.info(f"Worker {self.worker_id} started (concurrency={self.stage.concurrency})")
        inflight: set[Future] = set()

        with ThreadPoolExecutor(max_workers=self.stage.concurrency, thread_name_prefix=self.stage.name) as pool:
            while not stop.is_set():
                inflight = {future for future in inflight if not future.done()}

                if len(inflight) < self.stage.concurrency:
                    job = self.backend.claim(self.stage.name, self.worker_id)
                    if job is not None:
                        future = pool.submit(self.process, job)
                        future.add_done_callback(self._report)
                        inflight.add(future)
                        continue

                stop.wait(self.settings.poll_seconds)

        log.info(f"Worker {self.worker_id} stopped")
