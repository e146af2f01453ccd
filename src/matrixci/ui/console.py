"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..model import CampaignResult, JobResult, JobStatus, RunResult


class Console:
    """
    Centralized console output formatting.

    Jobs run on worker threads, so every write goes through one lock and
    job-scoped lines carry a `[job id]` prefix.
    """

    def __init__(self, debug: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Output stream (defaults to sys.stdout at write time)
            err_stream: Error stream (defaults to sys.stderr at write time)
        """
        self.debug = debug
        self._stream = stream
        self._err_stream = err_stream
        self._lock = threading.Lock()

    def _write(self, text: str, *, err: bool = False) -> None:
        stream = (self._err_stream or sys.stderr) if err else (self._stream or sys.stdout)
        with self._lock:
            print(text, file=stream, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._write(f"\n{title}\n" + "-" * len(title))

    def print_run_started(self, repository: str, workflow: str, job_count: int) -> None:
        """Print run start information."""
        self._write(f"\nRUN STARTED\nRepository: {repository}\nWorkflow: {workflow}\nJobs: {job_count}\n")

    def print_trigger_skipped(self, event: str, reason: str) -> None:
        self._write(f"NO RUN: {event} event does not match any trigger ({reason})")

    def print_plan_job(self, job_id: str, detail: str) -> None:
        """Print one expanded job of the plan."""
        self._write(f"  {job_id} ({detail})")

    def print_job_start(self, job_id: str) -> None:
        """Print job start message."""
        self._write(f"[{job_id}] JOB STARTED")

    def print_step(self, job_id: str, name: str) -> None:
        """Print step start message."""
        self._write(f"[{job_id}] STEP: {name}")

    def print_step_output(self, job_id: str, output: str) -> None:
        for line in output.rstrip().splitlines():
            self._write(f"[{job_id}]   | {line}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job id, or "job id / step name" for step failures
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            if error_line:
                lines.append(f"Error: {error_line}")
        self._write("\n".join(lines))

    def print_cache_hit(self, job_id: str, key: str) -> None:
        self._write(f"[{job_id}] CACHE: hit ({_short(key)})")

    def print_cache_miss(self, job_id: str, key: str) -> None:
        self._write(f"[{job_id}] CACHE: miss ({_short(key)})")

    def print_cache_saved(self, job_id: str, key: str) -> None:
        self._write(f"[{job_id}] CACHE: saved ({_short(key)})")

    def print_cache_warning(self, job_id: str, message: str) -> None:
        self._write(f"[{job_id}] CACHE: {message}", err=True)

    def print_fuzz_state(self, job_id: str, target: str, state: str, detail: str = "") -> None:
        suffix = f" ({detail})" if detail else ""
        self._write(f"[{job_id}] FUZZ {target}: {state}{suffix}")

    def print_job_finished(self, result: JobResult) -> None:
        self._write(f"[{result.job_id}] STATUS: {result.status.value} ({result.duration:.1f}s)")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job_id, job in result.jobs.items():
            detail = ""
            if job.failure_kind is not None:
                detail = f" [{job.failure_kind.value}]"
            lines.append(f"  {job_id}: {job.status.value.upper()}{detail}")
            failed = job.failed_step
            if failed is not None and job.status is JobStatus.FAILED:
                lines.append(f"      step '{failed.name}' exit={failed.exit_code}")
            if job.campaign is not None:
                lines.extend(_campaign_lines(job.campaign))
            if job.error and failed is None:
                lines.append(f"      {job.error.splitlines()[0]}")
        lines.append(f"RUN: {result.status.value.upper()}")
        self._write("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._write("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            self._write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._write(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._write(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._write(f"[DEBUG] {message}", err=True)


def _short(key: str) -> str:
    # keep the readable scope, trim the digest
    return key[:-28] + "..." if len(key) > 60 else key


def _campaign_lines(campaign: CampaignResult) -> list[str]:
    lines = [f"      fuzz {campaign.target}: {campaign.state.value} after {campaign.elapsed:.1f}s"]
    for finding in campaign.findings:
        lines.append(f"      {finding.kind}: {finding.message}")
    for artifact in campaign.artifacts:
        lines.append(f"      artifact: {artifact}")
    if campaign.error:
        lines.append(f"      error: {campaign.error.splitlines()[0]}")
    return lines


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
