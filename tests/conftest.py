"""Pytest configuration and fixtures"""

import pathlib
import tempfile

import pytest

from dossier import rate_limiter
from dossier.config import Settings
from dossier.database import Database
from dossier.dispatcher import QueueDispatcher
from dossier.pipeline import Pipeline
from dossier.progress.store import ProgressStore
from dossier.queues.sqlite import SQLiteQueueBackend
from dossier.stages import default_stages
from dossier.workflow.aggregator import WorkflowAggregator


@pytest.fixture
def db_path():
    """A fresh SQLite file, removed (with its WAL files) after the test."""

    with tempfile.TemporaryDirectory() as tmp_dir:
        yield str(pathlib.Path(tmp_dir) / "dossier.db")


@pytest.fixture
def database(db_path):
    return Database(db_path)


@pytest.fixture
def settings(db_path):
    return Settings(db_path=db_path, poll_seconds=0.01)


@pytest.fixture
def stages(settings):
    return default_stages(settings)


@pytest.fixture
def store(database):
    progress_store = ProgressStore(database)
    progress_store.init()
    return progress_store


@pytest.fixture
def backend(database):
    queue_backend = SQLiteQueueBackend(database)
    queue_backend.init()
    return queue_backend


@pytest.fixture
def dispatcher(backend, stages):
    return QueueDispatcher(backend, stages)


@pytest.fixture
def aggregator(store, stages):
    return WorkflowAggregator(store, stages)


@pytest.fixture
def pipeline(settings):
    return Pipeline.open(settings)


@pytest.fixture(autouse=True)
def reset_shared_limiters():
    """Process-wide limiters must not leak between tests."""

    rate_limiter._shared_limiters.clear()
    yield
    rate_limiter._shared_limiters.clear()
