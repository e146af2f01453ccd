# runner.py
from __future__ import annotations

import tarfile
import threading
import time
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

from .cache import DEFAULT_CACHE_PATHS, DEFAULT_KEY_FILES, CacheStore, cache_scope, compute_cache_key
from .context import RunContext
from .dag import validate_dag
from .errors import ConfigurationError, FuzzFinding, InfrastructureError, StepFailure
from .fuzz import run_campaign
from .matrix import expand_workflow
from .model import (
    CampaignResult,
    CampaignState,
    Event,
    FailureKind,
    Job,
    JobResult,
    JobStatus,
    RunResult,
    Step,
    StepResult,
    StepStatus,
    WorkflowDefinition,
)
from .scheduler import Scheduler
from .settings import EngineSettings
from .steps import StepExecutor
from .triggers import matching_trigger
from .ui.console import Console, get_console

# local dev ---> push / PR / schedule ---> matrixci run

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2
EXIT_INFRASTRUCTURE = 3
EXIT_CANCELLED = 130


# ----------------------------------------------------------------------
# Cache step
# ----------------------------------------------------------------------

def _as_list(value: Any, default: Sequence[str]) -> List[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        # multi-line `path:` blocks, one entry per line
        return [line.strip() for line in value.splitlines() if line.strip()]
    return [str(v) for v in value]


class JobCache:
    """
    Handler for `uses: cache`. Restores when the step runs; save() is
    called by run_job once every step has succeeded.

    Inputs (`with:`): path, key-files, key-axes, tools, prefix, keep.
    Cache trouble is reported and treated as a miss, never a job failure.
    """

    def __init__(self) -> None:
        self.key: Optional[str] = None
        self.scope = ""
        self.paths: List[str] = []
        self.manifest: dict = {}
        self.keep = 3
        self.reason: Optional[str] = None

    def __call__(self, job: Job, step: Step, ctx: RunContext) -> StepResult:
        inputs = step.with_
        if ctx.cache is None:
            self.reason = "disabled"
            return StepResult(name=step.name, status=StepStatus.SUCCEEDED, exit_code=0, output="cache disabled")

        prefix = str(inputs.get("prefix", "v0-rust"))
        key_axes = inputs.get("key-axes")
        if key_axes is not None:
            key_axes = _as_list(key_axes, ())
        self.paths = _as_list(inputs.get("path"), DEFAULT_CACHE_PATHS)
        self.keep = int(inputs.get("keep", ctx.settings.cache_keep))

        try:
            self.key, self.manifest = compute_cache_key(
                job,
                repo_root=ctx.repo_root,
                key_files=_as_list(inputs.get("key-files"), DEFAULT_KEY_FILES),
                key_axes=key_axes,
                tools=_as_list(inputs.get("tools"), ()),
                prefix=prefix,
            )
            self.scope = cache_scope(job, key_axes=key_axes, prefix=prefix)
            hit = ctx.cache.restore_paths(self.key, self.paths, repo_root=ctx.repo_root)
        except (OSError, tarfile.TarError) as e:
            ctx.console.print_cache_warning(job.id, f"restore failed, continuing without cache: {e}")
            self.reason = "error"
            return StepResult(name=step.name, status=StepStatus.SUCCEEDED, exit_code=0, output=str(e))

        if hit:
            self.reason = "hit"
            ctx.console.print_cache_hit(job.id, self.key)
        else:
            self.reason = "miss"
            ctx.console.print_cache_miss(job.id, self.key)
        return StepResult(name=step.name, status=StepStatus.SUCCEEDED, exit_code=0, output=f"cache {self.reason}: {self.key}")

    def save(self, job: Job, ctx: RunContext) -> None:
        # an exact hit already holds this content
        if ctx.cache is None or self.key is None or self.reason != "miss":
            return
        try:
            ctx.cache.save_paths(self.key, self.paths, repo_root=ctx.repo_root, manifest=self.manifest)
            ctx.cache.prune(self.scope, keep=self.keep)
        except (OSError, tarfile.TarError) as e:
            ctx.console.print_cache_warning(job.id, f"save failed: {e}")
            return
        self.reason = "saved"
        ctx.console.print_cache_saved(job.id, self.key)


# ----------------------------------------------------------------------
# Job body
# ----------------------------------------------------------------------

def _apply_campaign(result: JobResult, job: Job, campaign: CampaignResult) -> None:
    result.campaign = campaign
    if campaign.state is CampaignState.STOPPED_BY_BUDGET:
        result.status = JobStatus.SUCCEEDED
    elif campaign.state is CampaignState.CANCELLED:
        result.status = JobStatus.CANCELLED
    elif campaign.state is CampaignState.STOPPED_BY_CRASH:
        summary = "; ".join(f"{f.kind}: {f.message}" for f in campaign.findings) or "finding"
        result.status = JobStatus.FAILED
        result.failure_kind = FailureKind.FUZZ_FINDING
        result.error = str(FuzzFinding(job.id, summary, artifacts=campaign.artifacts))
    else:
        result.status = JobStatus.FAILED
        result.failure_kind = FailureKind.INFRASTRUCTURE
        result.error = str(
            InfrastructureError(
                job.id,
                campaign.error or f"fuzz campaign ended in {campaign.state.value}",
                step=f"fuzz {campaign.target}",
                exit_code=campaign.exit_code,
            )
        )


def run_job(job: Job, ctx: RunContext) -> JobResult:
    """
    Run one job: its steps in order, then its fuzz campaign if it has one.

    Returns:
      JobResult. Step failures, findings and tool trouble are recorded on
      the result rather than raised.
    """
    started = time.monotonic()
    console = ctx.console
    console.print_job_start(job.id)

    cache = JobCache()
    executor = StepExecutor(actions={"cache": cache})
    result = JobResult(job_id=job.id, status=JobStatus.RUNNING)

    outcome = executor.run(job, ctx)
    result.steps = outcome.results

    if outcome.cancelled:
        result.status = JobStatus.CANCELLED
        result.error = "cancelled"
    elif isinstance(outcome.failure, StepFailure):
        result.status = JobStatus.FAILED
        result.failure_kind = FailureKind.STEP_FAILURE
        result.error = str(outcome.failure)
    elif outcome.failure is not None:
        result.status = JobStatus.FAILED
        result.failure_kind = FailureKind.INFRASTRUCTURE
        result.error = str(outcome.failure)
    elif job.fuzz is not None:
        _apply_campaign(result, job, run_campaign(job.fuzz, job, ctx))
    else:
        result.status = JobStatus.SUCCEEDED

    if result.status is JobStatus.FAILED:
        console.print_failure(job.id, result.error or "failed", is_job=True)
    if result.status is JobStatus.SUCCEEDED:
        cache.save(job, ctx)
    result.cache = cache.reason
    result.duration = time.monotonic() - started
    return result


# ----------------------------------------------------------------------
# Whole run
# ----------------------------------------------------------------------

def _with_prerequisites(jobs: List[Job], names: Iterable[str]) -> List[Job]:
    wanted = set(names)
    known = {j.spec_name for j in jobs} | {j.id for j in jobs}
    unknown = sorted(wanted - known)
    if unknown:
        raise ConfigurationError(f"Unknown job(s): {unknown}. Known jobs: {sorted({j.spec_name for j in jobs})}")

    selected = {j.id for j in jobs if j.spec_name in wanted or j.id in wanted}
    needs = {j.spec_name: set(j.needs) for j in jobs}
    required: set = set()
    stack = [need for j in jobs if j.id in selected for need in j.needs]
    while stack:
        name = stack.pop()
        if name not in required:
            required.add(name)
            stack.extend(needs.get(name, ()))
    return [j for j in jobs if j.id in selected or j.spec_name in required]


def plan_workflow(definition: WorkflowDefinition, *, only_jobs: Optional[Sequence[str]] = None) -> List[Job]:
    """
    Validate the dependency graph and expand every matrix.

    `only_jobs` selects job specs (or single matrix instances by id); the
    jobs they need are pulled in too.
    """
    validate_dag(definition.jobs)
    jobs = expand_workflow(definition)
    if only_jobs:
        jobs = _with_prerequisites(jobs, only_jobs)
    return jobs


def run_workflow(
    definition: WorkflowDefinition,
    event: Event,
    *,
    repo_root: str | Path = ".",
    settings: Optional[EngineSettings] = None,
    force: bool = False,
    fail_fast: bool = False,
    only_jobs: Optional[Sequence[str]] = None,
    cancel: Optional[threading.Event] = None,
    console: Optional[Console] = None,
) -> Optional[RunResult]:
    """
    Evaluate triggers, expand, schedule and run.

    Returns None when the event starts no run (not an error). Raises
    ConfigurationError for a malformed workflow before any job starts.
    """
    console = console or get_console()
    settings = settings or EngineSettings.from_env()

    if not force and matching_trigger(event, definition.triggers) is None:
        declared = ", ".join(sorted({t.kind for t in definition.triggers})) or "none"
        branch = f" on branch '{event.branch}'" if event.branch else ""
        console.print_trigger_skipped(event.kind, f"declared triggers: {declared}{branch}")
        return None

    jobs = plan_workflow(definition, only_jobs=only_jobs)

    root = Path(repo_root).resolve()
    cache_dir = Path(settings.cache_dir).expanduser()
    try:
        cache = CacheStore(cache_dir if cache_dir.is_absolute() else root / cache_dir)
    except OSError as e:
        console.print_cache_warning(definition.name, f"cache disabled: {e}")
        cache = None

    ctx = RunContext(
        repo_root=root,
        settings=settings,
        env=definition.env,
        cache=cache,
        cancel=cancel or threading.Event(),
        console=console,
    )
    scheduler = Scheduler(settings.max_workers, fail_fast=fail_fast, cancel=ctx.cancel, console=console)

    console.print_run_started(repository=root.name, workflow=definition.name, job_count=len(jobs))
    result = scheduler.run(jobs, lambda job: run_job(job, ctx), workflow=definition.name, specs=definition.jobs)
    console.print_results(result)
    return result


def exit_code(result: Optional[RunResult]) -> int:
    """
    0 succeeded (or nothing to run); 1 step failure or fuzz finding;
    3 infrastructure failure only; 130 cancelled.
    """
    if result is None or result.status is JobStatus.SUCCEEDED:
        return EXIT_OK
    if result.status is JobStatus.CANCELLED:
        return EXIT_CANCELLED
    kinds = {j.failure_kind for j in result.jobs.values() if j.status is JobStatus.FAILED}
    if kinds and kinds <= {FailureKind.INFRASTRUCTURE}:
        return EXIT_INFRASTRUCTURE
    return EXIT_FAILURE
