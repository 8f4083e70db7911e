from dataclasses import dataclass

from dossier.config import Settings
from dossier.database import Database
from dossier.dispatcher import QueueDispatcher
from dossier.progress.store import ProgressStore
from dossier.queues.sqlite import SQLiteQueueBackend
from dossier.stages import StageRegistry, default_stages
from dossier.utils.logging_config import get_logger
from dossier.workflow.aggregator import WorkflowAggregator
from dossier.workflow.cleanup import WorkflowCleanup

log = get_logger(__name__)


@dataclass
class Pipeline:
    """Everything that shares one database: the queues, the progress store and the workflow views."""

    settings: Settings
    database: Database
    stages: StageRegistry
    backend: SQLiteQueueBackend
    store: ProgressStore
    dispatcher: QueueDispatcher
    aggregator: WorkflowAggregator
    cleanup: WorkflowCleanup

    @classmethod
    def open(cls, settings: Settings | None = None, stages: StageRegistry | None = None) -> "Pipeline":
        """Wire up a pipeline and make sure its tables exist.

        @param settings: Defaults to settings read from the environment
        @param stages: Defaults to the five enrichment stages
        @return: A ready-to-use pipeline
        """

        settings = settings or Settings.from_env()
        stages = stages or default_stages(settings)

        database = Database(settings.db_path)
        backend = SQLiteQueueBackend(database)
        store = ProgressStore(database, cache_size=settings.queue_cache_size)

        backend.init()
        store.init()
        log.debug(f"Opened pipeline on {settings.db_path} with stages {', '.join(stages.names())}")

        return cls(
            settings=settings,
            database=database,
            stages=stages,
            backend=backend,
            store=store,
            dispatcher=QueueDispatcher(backend, stages),
            aggregator=WorkflowAggregator(store, stages),
            cleanup=WorkflowCleanup(database),
        )
