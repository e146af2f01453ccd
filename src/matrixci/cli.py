# cli.py
from __future__ import annotations

import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import click

from matrixci.cache import CacheStore
from matrixci.config import load_workflow
from matrixci.errors import ConfigurationError
from matrixci.git_facts.git import current_branch
from matrixci.model import EVENT_KINDS, Event, WorkflowDefinition
from matrixci.runner import EXIT_CONFIGURATION, EXIT_INFRASTRUCTURE, exit_code, plan_workflow, run_workflow
from matrixci.settings import EngineSettings
from matrixci.triggers import describe, matching_trigger
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILES = ("matrixci.yml", "matrixci.yaml", "matrixci_workflow.py")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = [current_dir / name for name in DEFAULT_WORKFLOW_FILES if (current_dir / name).exists()]

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in workflow_files:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow matrixci.yml",
            )
            sys.exit(EXIT_CONFIGURATION)
        return workflow_path

    # Otherwise, try to discover workflow
    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_WORKFLOW_FILES), "  *_workflow.py"],
            suggestion="Create a workflow file:\n  matrixci.yml\n\nOr specify a workflow explicitly:\n  matrixci run --workflow ci.yml",
        )
        sys.exit(EXIT_CONFIGURATION)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow matrixci.yml",
        )
        sys.exit(EXIT_CONFIGURATION)

    return workflow_files[0]


def _load(workflow_arg: str | None) -> WorkflowDefinition:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return load_workflow(workflow_path)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", f"{workflow_path}: {e}")
        sys.exit(EXIT_CONFIGURATION)


def _parse_timestamp(ctx, param, value):
    if value is None:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"expected an ISO-8601 timestamp, got {value!r}")
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _make_event(kind: str, branch: str | None, timestamp: datetime | None) -> Event:
    console = get_console()
    if branch is None and kind != "schedule":
        try:
            branch = current_branch()
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug("Could not determine the current git branch; pass --branch")
    return Event(kind=kind, branch=branch, timestamp=timestamp or datetime.now(timezone.utc))


def event_options(fn):
    fn = click.option(
        "--timestamp",
        default=None,
        callback=_parse_timestamp,
        help="Event time (ISO-8601, UTC if no offset); defaults to now",
    )(fn)
    fn = click.option("--branch", default=None, help="Event branch (defaults to the current git branch)")(fn)
    fn = click.option(
        "--event",
        "event_kind",
        type=click.Choice(EVENT_KINDS),
        default="push",
        show_default=True,
        help="Event that starts the run",
    )(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: matrix builds, caching and fuzz campaigns for CI workflows."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = EngineSettings.from_env()


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to matrixci.yml if present)",
)
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--artifacts-dir", default=None, help="Where fuzz findings and logs are kept")
@event_options
@click.option("--force", is_flag=True, default=False, help="Run even if no trigger matches the event")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop scheduling new jobs after first failure")
@click.option("--job", "only_jobs", multiple=True, help="Only run this job (repeatable); its needs run too")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, artifacts_dir, event_kind, branch, timestamp, force, fail_fast, only_jobs):
    """Run a workflow for an event."""
    console = get_console()
    definition = _load(workflow)
    settings = ctx.obj["settings"].override(workers=workers, cache_dir=cache_dir, artifacts_dir=artifacts_dir)

    try:
        event = _make_event(event_kind, branch, timestamp)
        result = run_workflow(
            definition,
            event,
            repo_root=".",
            settings=settings,
            force=force,
            fail_fast=fail_fast,
            only_jobs=list(only_jobs) or None,
            console=console,
        )
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIGURATION)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_INFRASTRUCTURE)

    sys.exit(exit_code(result))


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.option("--job", "only_jobs", multiple=True, help="Only show this job (repeatable)")
def plan(workflow, only_jobs):
    """Print the jobs a run would execute, after matrix expansion."""
    console = get_console()
    definition = _load(workflow)
    try:
        jobs = plan_workflow(definition, only_jobs=list(only_jobs) or None)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIGURATION)

    console.print_header(f"{definition.name}: {len(jobs)} job(s)")
    for trigger in definition.triggers:
        console.print_info(f"  on {describe(trigger)}")
    for j in jobs:
        detail = f"runs-on {j.runs_on}, {len(j.steps)} step(s)"
        if j.label != j.id:
            detail = f"id {j.id}, {detail}"
        if j.needs:
            detail += f", needs {', '.join(j.needs)}"
        if j.fuzz is not None:
            detail += f", fuzz {j.fuzz.target} for {j.fuzz.max_total_time:g}s"
        console.print_plan_job(j.label, detail)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@event_options
def trigger(workflow, event_kind, branch, timestamp):
    """Report whether an event starts a run (exit 0 if it does, 1 if not)."""
    console = get_console()
    definition = _load(workflow)
    event = _make_event(event_kind, branch, timestamp)
    matched = matching_trigger(event, definition.triggers)
    if matched is None:
        branch_text = f" on branch '{event.branch}'" if event.branch else ""
        console.print_trigger_skipped(event.kind, f"{event.timestamp.isoformat()}{branch_text}")
        sys.exit(1)
    console.print_info(f"RUN: {event.kind} event matches {describe(matched)}")


@cli.group()
def cache():
    """Inspect and prune the local cache."""


@cache.command("list")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--prefix", default="", help="Only keys starting with this prefix")
@click.pass_context
def cache_list(ctx, cache_dir, prefix):
    console = get_console()
    settings = ctx.obj["settings"].override(cache_dir=cache_dir)
    store = CacheStore(Path(settings.cache_dir).expanduser())
    entries = store.entries(prefix)
    if not entries:
        console.print_info(f"No cache entries in {store.root}")
        return
    for e in sorted(entries, key=lambda e: e.created_at, reverse=True):
        created = datetime.fromtimestamp(e.created_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        console.print_info(f"{e.key}  {e.size / 1024:.1f} KiB  {created}")


@cache.command("prune")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--prefix", default="", help="Only prune keys starting with this prefix")
@click.option("--keep", default=None, type=click.IntRange(min=0), help="Entries to keep (newest first)")
@click.pass_context
def cache_prune(ctx, cache_dir, prefix, keep):
    console = get_console()
    settings = ctx.obj["settings"].override(cache_dir=cache_dir, cache_keep=keep)
    store = CacheStore(Path(settings.cache_dir).expanduser())
    removed = store.prune(prefix, keep=settings.cache_keep)
    for key in removed:
        console.print_info(f"removed {key}")
    console.print_info(f"Pruned {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")


if __name__ == "__main__":
    cli()
