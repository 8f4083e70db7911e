"""Running stage handlers against queued jobs."""

from dossier.worker.context import JobContext
from dossier.worker.pool import WorkerPool
from dossier.worker.stage_worker import Handler, StageWorker

__all__ = ["Handler", "JobContext", "StageWorker", "WorkerPool"]
