"""Job lifecycle and event history."""

from dossier.progress.cache import QueueCache
from dossier.progress.store import ProgressStore

__all__ = ["ProgressStore", "QueueCache"]
