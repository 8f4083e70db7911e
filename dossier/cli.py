"""The `dossier` command: submit work, inspect progress, delete workflows and run workers."""

import argparse
from collections.abc import Mapping, Sequence
from dataclasses import replace
import importlib
import json
import sys
from typing import Any

from rich.console import Console

from dossier.config import Settings
from dossier.exception import (
    CleanupError,
    InvalidFilterError,
    JobNotFoundError,
    PayloadValidationError,
    UnknownStageError,
    WorkflowNotFoundError,
)
from dossier.monitor import WorkflowProgressMonitor, events_table, jobs_table, workflow_table, workflows_table
from dossier.pipeline import Pipeline
from dossier.utils.logging_config import configure_logging, get_logger
from dossier.worker.pool import WorkerPool

log = get_logger(__name__)

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_INVALID = 2


def load_handlers(spec: str) -> Mapping[str, Any]:
    """Import a handler mapping given as "package.module:attribute"."""

    module_name, _, attribute = spec.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Handlers must be given as module:attribute, got {spec!r}")

    handlers = getattr(importlib.import_module(module_name), attribute)
    if not isinstance(handlers, Mapping):
        raise TypeError(f"{spec} is not a mapping of stage name to handler")
    return handlers


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dossier", description="Enrichment pipeline orchestration")
    parser.add_argument("--db", help="SQLite database path (default: $DOSSIER_DB_PATH or dossier.db)")
    parser.add_argument("--log-level", help="Logging level (default: $DOSSIER_LOG_LEVEL or WARNING)")

    commands = parser.add_subparsers(dest="command", required=True)

    submit = commands.add_parser("submit", help="Submit a job to a stage")
    submit.add_argument("queue", help="Stage name, e.g. company-discovery")
    submit.add_argument("task", help="Task kind; '-' for the stage default")
    submit.add_argument("payload", help="JSON payload")
    submit.add_argument("--job-id", help="Explicit job ID")
    submit.add_argument("--priority", type=int, default=0, help="Lower runs first")
    submit.add_argument("--delay", type=float, default=0, help="Seconds before the job may run")

    jobs = commands.add_parser("jobs", help="List jobs, most recently updated first")
    jobs.add_argument("--queue", help="Only jobs on this stage")
    jobs.add_argument("--status", help="Only jobs with this status")
    jobs.add_argument("--limit", help="Page size (default 50, max 200)")
    jobs.add_argument("--json", action="store_true", help="Print JSON")

    job = commands.add_parser("job", help="Show a job and its events")
    job.add_argument("job_id")
    job.add_argument("--json", action="store_true", help="Print JSON")

    workflows = commands.add_parser("workflows", help="List workflows with per-stage counts")
    workflows.add_argument("--limit", help="Page size (default 50, max 200)")
    workflows.add_argument("--json", action="store_true", help="Print JSON")

    workflow = commands.add_parser("workflow", help="Show every job in a workflow")
    workflow.add_argument("root_job_id")
    workflow.add_argument("--json", action="store_true", help="Print JSON")

    timeline = commands.add_parser("timeline", help="Show every event in a workflow")
    timeline.add_argument("root_job_id")
    timeline.add_argument("--json", action="store_true", help="Print JSON")

    watch = commands.add_parser("watch", help="Follow a workflow until nothing is outstanding")
    watch.add_argument("root_job_id")
    watch.add_argument("--poll", type=float, default=1.0, help="Seconds between refreshes")

    delete = commands.add_parser("delete", help="Delete a workflow and everything it wrote")
    delete.add_argument("root_job_id")

    work = commands.add_parser("work", help="Run stage workers until interrupted")
    work.add_argument("--handlers", required=True, help="module:attribute naming a stage -> handler mapping")
    work.add_argument("--stage", action="append", help="Only run these stages (repeatable)")

    return parser


def _submit(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as err:
        console.print(f"Payload is not valid JSON: {err}", style="red", markup=False)
        return EXIT_INVALID

    task = None if args.task == "-" else args.task
    job_id = pipeline.dispatcher.submit(
        args.queue, task, payload, job_id=args.job_id, priority=args.priority, delay_seconds=args.delay
    )
    console.print(job_id, highlight=False, markup=False)
    return EXIT_OK


def _jobs(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    jobs = pipeline.store.list_jobs(queue=args.queue, status=args.status, limit=args.limit)
    if args.json:
        console.print_json(data=[job.to_dict() for job in jobs])
    else:
        console.print(jobs_table(jobs))
    return EXIT_OK


def _job(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    found = pipeline.store.get_job_with_events(args.job_id)
    if args.json:
        console.print_json(data={"job": found.job.to_dict(), "events": [event.to_dict() for event in found.events]})
    else:
        console.print(jobs_table([found.job], title=f"Job {found.job.job_id}"))
        console.print(events_table(found.events))
    return EXIT_OK


def _workflows(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    summaries = pipeline.aggregator.list_workflows(limit=args.limit)
    if args.json:
        console.print_json(data=[summary.to_dict() for summary in summaries])
    else:
        console.print(workflows_table(summaries, pipeline.stages.names()))
    return EXIT_OK


def _workflow(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    workflow = pipeline.aggregator.get_workflow(args.root_job_id)
    if args.json:
        console.print_json(data=workflow.to_dict())
    else:
        console.print(workflow_table(workflow))
    return EXIT_OK


def _timeline(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    events = pipeline.aggregator.get_timeline(args.root_job_id)
    if args.json:
        console.print_json(data=[event.to_dict() for event in events])
    else:
        console.print(events_table(events, title=f"Timeline {args.root_job_id}", show_job=True))
    return EXIT_OK


def _watch(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    with WorkflowProgressMonitor(pipeline.aggregator, args.root_job_id, console=console) as monitor:
        monitor.watch(poll_seconds=args.poll)
    return EXIT_OK


def _delete(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    try:
        result = pipeline.cleanup.delete(args.root_job_id)
    except CleanupError as err:
        console.print(str(err), style="red", markup=False)
        return EXIT_INVALID

    if not result.found:
        console.print(f"Workflow {args.root_job_id} not found")
        return EXIT_NOT_FOUND

    console.print(f"Deleted workflow {args.root_job_id}: {result.deleted} row(s)")
    for table, count in result.counts.items():
        if count:
            console.print(f"  {table}: {count}")
    return EXIT_OK


def _work(pipeline: Pipeline, args: argparse.Namespace, console: Console) -> int:
    handlers = load_handlers(args.handlers)
    if args.stage:
        handlers = {stage: handler for stage, handler in handlers.items() if stage in args.stage}

    console.print(f"Working {', '.join(handlers)} on {pipeline.settings.db_path}")
    WorkerPool(pipeline, handlers).run_forever()
    return EXIT_OK


COMMANDS = {
    "submit": _submit,
    "jobs": _jobs,
    "job": _job,
    "workflows": _workflows,
    "workflow": _workflow,
    "timeline": _timeline,
    "watch": _watch,
    "delete": _delete,
    "work": _work,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = Settings.from_env()
    if args.db:
        settings = replace(settings, db_path=args.db)
    configure_logging(args.log_level or settings.log_level)

    console = Console()
    pipeline = Pipeline.open(settings)

    try:
        return COMMANDS[args.command](pipeline, args, console)
    except (JobNotFoundError, WorkflowNotFoundError) as err:
        console.print(str(err), style="red", markup=False)
        return EXIT_NOT_FOUND
    except (InvalidFilterError, PayloadValidationError, UnknownStageError) as err:
        console.print(str(err), style="red", markup=False)
        return EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
