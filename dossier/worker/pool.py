from collections.abc import Mapping
from threading import Event, Thread
from types import TracebackType

from dossier.pipeline import Pipeline
from dossier.queues.sqlite import StalledJobs
from dossier.utils.logging_config import get_logger
from dossier.worker.stage_worker import Handler, StageWorker

log = get_logger(__name__)

# Never sweep for stalled jobs more often than this
MIN_HOUSEKEEPING_SECONDS = 1.0


class WorkerPool:
    """One StageWorker thread per handled stage, all sharing a pipeline, plus a
    housekeeping thread that keeps returning stalled jobs to their queues."""

    def __init__(self, pipeline: Pipeline, handlers: Mapping[str, Handler]) -> None:
        """
        @param pipeline: The pipeline whose queues are worked
        @param handlers: Stage name -> handler; every stage must be registered
        """

        self.pipeline = pipeline
        self.workers = [
            StageWorker(
                stage=pipeline.stages.get(queue),
                handler=handler,
                backend=pipeline.backend,
                store=pipeline.store,
                dispatcher=pipeline.dispatcher,
                aggregator=pipeline.aggregator,
                settings=pipeline.settings,
            )
            for queue, handler in handlers.items()
        ]
        self._stop = Event()
        self._threads: list[Thread] = []

    @property
    def housekeeping_seconds(self) -> float:
        return max(MIN_HOUSEKEEPING_SECONDS, self.pipeline.settings.stall_seconds / 4)

    def recover_stalled(self) -> StalledJobs:
        """Return stalled jobs to their queues, and record the ones out of attempts as failed."""

        stalled = self.pipeline.backend.recover_stalled(self.pipeline.settings.stall_seconds)
        for job_id in stalled.failed:
            self.pipeline.store.fail_job(job_id, "job stalled")

        if stalled:
            log.info(f"Recovered {len(stalled)} stalled job(s)")
        return stalled

    def _housekeeping(self) -> None:
        while not self._stop.wait(self.housekeeping_seconds):
            try:
                self.recover_stalled()
            except Exception as err:
                log.error(f"Stalled job recovery failed: {err!r}")

    def start(self) -> None:
        """Return stalled jobs to their queues, then start every stage worker."""

        self.recover_stalled()

        self._stop.clear()
        for worker in self.workers:
            thread = Thread(target=worker.run, args=(self._stop,), name=worker.worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)

        housekeeper = Thread(target=self._housekeeping, name="dossier-housekeeping", daemon=True)
        housekeeper.start()
        self._threads.append(housekeeper)

    def stop(self, timeout: float | None = None) -> None:
        """Ask workers to stop and wait for their in-flight jobs."""

        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            log.info("Interrupted; stopping workers")
        finally:
            self.stop()

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()
