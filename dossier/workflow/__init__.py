"""Workflow views and cleanup across stage queues."""

from dossier.workflow.aggregator import WorkflowAggregator
from dossier.workflow.cleanup import CleanupResult, WorkflowCleanup

__all__ = ["CleanupResult", "WorkflowAggregator", "WorkflowCleanup"]
