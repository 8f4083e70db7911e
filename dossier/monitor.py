"""Console rendering of jobs, events and workflows."""

from collections.abc import Iterable
import json
import time
from types import TracebackType
from typing import Any

from rich.bar import Bar
from rich.console import Console
from rich.progress import Progress, ProgressColumn, SpinnerColumn, TaskID, TextColumn
from rich.table import Table

from dossier.base_types import EventRecord, JobRecord, StageCounts, Workflow, WorkflowSummary
from dossier.workflow.aggregator import WorkflowAggregator

STATUS_STYLES = {
    "pending": "grey50",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}

LEVEL_STYLES = {
    "debug": "grey50",
    "info": "white",
    "warn": "yellow",
    "error": "bold red",
}


def format_status(status: str) -> str:
    """Wrap a status in Rich markup."""
    return f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]"


def _compact(data: Any, width: int = 80) -> str:
    if not data:
        return ""
    text = json.dumps(data, ensure_ascii=False, default=str)
    return text if len(text) <= width else text[: width - 1] + "…"


def jobs_table(jobs: Iterable[JobRecord], title: str | None = "Jobs") -> Table:
    table = Table(title=title)
    table.add_column("job id", style="blue", overflow="fold")
    table.add_column("queue")
    table.add_column("name")
    table.add_column("status")
    table.add_column("root")
    table.add_column("updated")

    for job in jobs:
        table.add_row(job.job_id, job.queue, job.name, format_status(job.status), job.root_job_id or "", job.updated_at)
    return table


def events_table(events: Iterable[EventRecord], title: str | None = "Events", show_job: bool = False) -> Table:
    table = Table(title=title)
    table.add_column("ts")
    if show_job:
        table.add_column("job id", style="blue", overflow="fold")
    table.add_column("level")
    table.add_column("code")
    table.add_column("message", overflow="fold")

    for event in events:
        level = f"[{LEVEL_STYLES.get(event.level, 'white')}]{event.level}[/]"
        row = [event.ts]
        if show_job:
            row.append(event.job_id)
        row.extend([level, event.code or "", event.message])
        table.add_row(*row)
    return table


def _counts_cell(counts: StageCounts) -> str:
    if counts.total == 0:
        return "[grey37]-[/]"

    parts = [
        f"[{STATUS_STYLES[status]}]{getattr(counts, status)}[/]"
        for status in ("completed", "running", "pending", "failed", "cancelled")
        if getattr(counts, status)
    ]
    return f"{counts.total} (" + " ".join(parts) + ")"


def workflows_table(summaries: Iterable[WorkflowSummary], stages: list[str], title: str | None = "Workflows") -> Table:
    table = Table(title=title)
    table.add_column("root", style="blue", overflow="fold")
    table.add_column("status")
    table.add_column("updated")
    for stage in stages:
        table.add_column(stage)

    for summary in summaries:
        cells = [_counts_cell(summary.counts.get(stage, StageCounts())) for stage in stages]
        table.add_row(summary.root.job_id, format_status(summary.root.status), summary.root.updated_at, *cells)
    return table


def workflow_table(workflow: Workflow) -> Table:
    """Every job in a workflow, grouped by stage."""

    table = Table(title=f"Workflow {workflow.root.job_id}")
    table.add_column("stage")
    table.add_column("job id", style="blue", overflow="fold")
    table.add_column("status")
    table.add_column("created")
    table.add_column("data", overflow="fold")

    for stage, jobs in workflow.stages.items():
        if not jobs:
            table.add_row(stage, "[grey37]-[/]", "", "", "")
            continue
        for job in jobs:
            table.add_row(stage, job.job_id, format_status(job.status), job.created_at, _compact(job.data))
    return table


class StatusBarColumn(ProgressColumn):
    """Progress bar coloured by task.fields['status']: running, success or failed."""

    def __init__(self, width: int | None = 30) -> None:
        super().__init__()
        self.width = width

    def render(self, task) -> Bar:
        status = task.fields.get("status", "running")
        color = {"failed": "red", "success": "green"}.get(status, "cyan")

        return Bar(
            size=task.total or 1,
            begin=0,
            end=task.completed,
            width=self.width,
            color=color,
            bgcolor="grey37",
        )


class WorkflowProgressMonitor:
    """Live per-stage progress bars for one workflow, redrawn from the progress store on each refresh."""

    def __init__(self, aggregator: WorkflowAggregator, root_job_id: str, console: Console | None = None) -> None:
        self.aggregator = aggregator
        self.root_job_id = root_job_id
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            StatusBarColumn(width=30),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
        )
        self.task_ids: dict[str, TaskID] = {}

    def refresh(self) -> bool:
        """Redraw from the store.

        @return: True once nothing in the workflow is pending or running
        """

        workflow = self.aggregator.get_workflow(self.root_job_id)

        for stage, counts in workflow.counts.items():
            finished = counts.completed + counts.failed + counts.cancelled
            if counts.failed:
                status = "failed"
            elif counts.total and finished == counts.total:
                status = "success"
            else:
                status = "running"

            if stage not in self.task_ids:
                self.task_ids[stage] = self.progress.add_task(stage, total=counts.total)
            self.progress.update(self.task_ids[stage], total=counts.total, completed=finished, status=status)

        return all(counts.pending == 0 and counts.running == 0 for counts in workflow.counts.values())

    def watch(self, poll_seconds: float = 1.0) -> None:
        """Refresh until the workflow has nothing outstanding."""

        while not self.refresh():
            time.sleep(poll_seconds)

    def __enter__(self) -> "WorkflowProgressMonitor":
        self.progress.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.progress.stop()
