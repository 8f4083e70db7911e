from dossier.base_types import EventLevel, JobStatus
from dossier.dispatcher import QueueDispatcher
from dossier.pipeline import Pipeline
from dossier.progress.store import ProgressStore
from dossier.rate_limiter import RateLimiter, shared_limiter
from dossier.stages import StageRegistry, StageSpec, default_stages
from dossier.worker import JobContext, StageWorker, WorkerPool
from dossier.workflow import WorkflowAggregator, WorkflowCleanup

__version__ = "0.1.0"

__all__ = [
    "EventLevel",
    "JobContext",
    "JobStatus",
    "Pipeline",
    "ProgressStore",
    "QueueDispatcher",
    "RateLimiter",
    "StageRegistry",
    "StageSpec",
    "StageWorker",
    "WorkerPool",
    "WorkflowAggregator",
    "WorkflowCleanup",
    "default_stages",
    "shared_limiter",
]
