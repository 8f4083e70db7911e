"""Durable job queues backing the dispatcher and workers."""

from dossier.queues.sqlite import SQLiteQueueBackend, StalledJobs

__all__ = ["SQLiteQueueBackend", "StalledJobs"]
