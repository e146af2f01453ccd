# steps.py
# Step Executor: runs one job's steps strictly in order, fail-fast.
from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .context import RunContext
from .errors import TOOL_HINTS, InfrastructureError, StepFailure
from .model import Job, Step, StepResult, StepStatus

# `uses:` handlers: (job, step, ctx) -> StepResult
Action = Callable[[Job, Step, RunContext], StepResult]

# shells report "command not found" as 127
EXIT_COMMAND_NOT_FOUND = 127
_POLL_SECONDS = 0.2
_TERMINATE_GRACE = 5.0


class StepCancelled(Exception):
    pass


@dataclass
class StepRun:
    """Outcome of running a job's steps."""
    results: List[StepResult] = field(default_factory=list)
    failure: Optional[Exception] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.cancelled


def step_env(job: Job, step: Step, ctx: RunContext) -> Dict[str, str]:
    """os.environ < workflow env < job env < step overlay."""
    env = os.environ.copy()
    env.update(ctx.env)
    env.update(job.env)
    env.update(step.env)
    env["CI"] = "true"
    env["MATRIXCI_JOB"] = job.id
    return env


def terminate(proc: subprocess.Popen, grace: float = _TERMINATE_GRACE) -> None:
    """Stop a process started with start_new_session=True, group and all."""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()
        proc.wait()


def _tail(text: str, limit: int) -> str:
    return text[-limit:] if limit > 0 else text


def _checkout(job: Job, step: Step, ctx: RunContext) -> StepResult:
    # Source delivery happens outside the engine; the workspace is repo_root.
    return StepResult(name=step.name, status=StepStatus.SUCCEEDED, exit_code=0, output=str(ctx.repo_root))


class StepExecutor:
    """
    Runs steps in declaration order. The first failing step (unless it is
    continue-on-error) stops the job; later steps are recorded as skipped
    and never started.
    """

    def __init__(self, actions: Optional[Dict[str, Action]] = None):
        self.actions: Dict[str, Action] = {"checkout": _checkout}
        self.actions.update(actions or {})

    def run(self, job: Job, ctx: RunContext, steps: Optional[Sequence[Step]] = None) -> StepRun:
        outcome = StepRun()
        pending = list(job.steps if steps is None else steps)

        while pending:
            step = pending.pop(0)
            if ctx.cancelled:
                outcome.cancelled = True
                outcome.results.append(StepResult(name=step.name, status=StepStatus.CANCELLED))
                break

            ctx.console.print_step(job.id, step.name)
            try:
                result = self.run_step(job, step, ctx)
            except StepCancelled:
                outcome.cancelled = True
                outcome.results.append(StepResult(name=step.name, status=StepStatus.CANCELLED))
                break
            except InfrastructureError as e:
                outcome.failure = e
                outcome.results.append(
                    StepResult(
                        name=step.name,
                        status=StepStatus.FAILED,
                        exit_code=e.details.get("exit_code"),
                        output=e.details.get("output", ""),
                    )
                )
                ctx.console.print_failure(f"{job.id} / {step.name}", str(e), hint=e.details.get("hint"))
                break

            outcome.results.append(result)
            if result.status is StepStatus.FAILED:
                ctx.console.print_failure(
                    f"{job.id} / {step.name}",
                    result.output or f"exit code {result.exit_code}",
                    exit_code=result.exit_code,
                )
                ctx.console.print_step_output(job.id, result.output)
                if step.continue_on_error:
                    continue
                outcome.failure = StepFailure(
                    job=job.id,
                    step=step.name,
                    cmd=step.display_cmd,
                    exit_code=result.exit_code if result.exit_code is not None else -1,
                    output=result.output,
                )
                break
            if ctx.console.debug and result.output:
                ctx.console.print_step_output(job.id, result.output)

        status = StepStatus.CANCELLED if outcome.cancelled else StepStatus.SKIPPED
        for step in pending:
            outcome.results.append(StepResult(name=step.name, status=status))
        return outcome

    def run_step(self, job: Job, step: Step, ctx: RunContext) -> StepResult:
        if step.uses is not None:
            action = self.actions.get(step.uses)
            if action is None:
                raise InfrastructureError(job.id, f"No handler for action '{step.uses}'", step=step.name)
            return action(job, step, ctx)

        cwd = (ctx.repo_root / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise InfrastructureError(job.id, f"step '{step.name}' cwd not found: {cwd}", step=step.name)

        if isinstance(step.run, tuple):
            argv = list(step.run)
        else:
            argv = [*ctx.settings.shell, step.run]
        if not argv:
            raise InfrastructureError(job.id, f"step '{step.name}' has nothing to run", step=step.name)

        started = time.monotonic()
        try:
            exit_code, output = self._execute(argv, cwd, step_env(job, step, ctx), ctx)
        except FileNotFoundError as e:
            tool = argv[0]
            raise InfrastructureError(
                job.id,
                f"{tool} is not available",
                step=step.name,
                hint=TOOL_HINTS.get(Path(tool).name, f"Install {tool} or fix PATH."),
            ) from e
        duration = time.monotonic() - started
        output = _tail(output, ctx.settings.output_tail)

        if exit_code != 0 and (step.kind == "toolchain" or exit_code == EXIT_COMMAND_NOT_FOUND):
            raise InfrastructureError(
                job.id,
                f"step '{step.name}' failed (exit={exit_code}): {step.display_cmd}",
                step=step.name,
                exit_code=exit_code,
                output=output,
            )

        status = StepStatus.SUCCEEDED if exit_code == 0 else StepStatus.FAILED
        return StepResult(name=step.name, status=status, exit_code=exit_code, output=output, duration=duration)

    def _execute(self, argv: List[str], cwd: Path, env: Dict[str, str], ctx: RunContext) -> tuple[int, str]:
        return run_process(argv, cwd=cwd, env=env, cancel=ctx.cancel)


def run_process(argv: Sequence[str], *, cwd: Path, env: Dict[str, str], cancel) -> tuple[int, str]:
    """
    Run argv to completion, returning (exit code, combined output).
    Polls `cancel` (a threading.Event) while waiting; raises StepCancelled
    after stopping the process group.
    """
    proc = subprocess.Popen(
        list(argv),
        cwd=str(cwd),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    # no implicit timeout: only an operator cancel interrupts
    while True:
        try:
            out, _ = proc.communicate(timeout=_POLL_SECONDS)
            return proc.returncode, out or ""
        except subprocess.TimeoutExpired:
            if cancel.is_set():
                terminate(proc)
                proc.communicate()
                raise StepCancelled()
