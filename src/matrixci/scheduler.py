# scheduler.py
# Job Scheduler: dispatches the expanded job arena over a bounded worker pool.
from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Mapping, Optional, Set

from .dag import job_prerequisites
from .model import FailureKind, Job, JobResult, JobSpec, JobStatus, RunResult
from .settings import default_workers
from .ui.console import Console, get_console

JobFn = Callable[[Job], JobResult]


class Scheduler:
    """
    One task per Job, at most `max_workers` at a time.

    A failed job never cancels its siblings unless fail-fast is on, either
    for the whole run (`fail_fast`) or for a job spec's own matrix
    (`JobSpec.fail_fast`). Jobs that need a failed or cancelled job are
    cancelled without running. There are no retries.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        *,
        fail_fast: bool = False,
        cancel: Optional[threading.Event] = None,
        console: Optional[Console] = None,
    ):
        self.max_workers = max(1, max_workers or default_workers())
        self.fail_fast = fail_fast
        self.cancel_event = cancel or threading.Event()
        self.console = console or get_console()

    def cancel(self) -> None:
        """Stop dispatching; running jobs see the event at their next cancellation point."""
        self.cancel_event.set()

    def run(
        self,
        jobs: List[Job],
        job_fn: JobFn,
        *,
        workflow: str = "",
        specs: Optional[Mapping[str, JobSpec]] = None,
    ) -> RunResult:
        specs = specs or {}
        by_id: Dict[str, Job] = {}
        for j in jobs:
            if j.id in by_id:
                raise ValueError(f"Duplicate job id: {j.id}")
            by_id[j.id] = j

        prereqs = job_prerequisites(jobs)
        dependents: Dict[str, Set[str]] = {jid: set() for jid in by_id}
        for jid, waits in prereqs.items():
            for w in waits:
                dependents[w].add(jid)

        result = RunResult(workflow=workflow, jobs={jid: JobResult(job_id=jid) for jid in by_id})
        remaining: Dict[str, Set[str]] = {jid: set(w) for jid, w in prereqs.items()}
        # declaration order, so output is stable across runs
        ready: List[str] = [jid for jid in by_id if not remaining[jid]]
        running_per_spec: Dict[str, int] = {}
        halted_specs: Set[str] = set()
        halted = False
        in_flight: Dict[Future, str] = {}

        def cancel_job(jid: str, reason: str) -> None:
            jr = result.jobs[jid]
            if jr.status is not JobStatus.PENDING:
                return
            jr.status = JobStatus.CANCELLED
            jr.error = reason
            if jid in ready:
                ready.remove(jid)
            for nxt in dependents[jid]:
                cancel_job(nxt, f"needs '{by_id[jid].spec_name}' which did not succeed")

        def can_start(jid: str) -> bool:
            spec = specs.get(by_id[jid].spec_name)
            limit = spec.max_parallel if spec is not None else None
            return not limit or running_per_spec.get(by_id[jid].spec_name, 0) < limit

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="matrixci-job") as pool:
            while ready or in_flight:
                if self.cancel_event.is_set():
                    for jid in list(result.jobs):
                        cancel_job(jid, "run cancelled")

                # schedule everything that is ready and within its limits
                for jid in list(ready):
                    if halted or len(in_flight) >= self.max_workers:
                        break
                    if not can_start(jid):
                        continue
                    ready.remove(jid)
                    job = by_id[jid]
                    running_per_spec[job.spec_name] = running_per_spec.get(job.spec_name, 0) + 1
                    result.jobs[jid].status = JobStatus.RUNNING
                    in_flight[pool.submit(self._run_one, job, job_fn)] = jid

                if halted:
                    for jid in list(ready):
                        cancel_job(jid, "fail-fast: an earlier job failed")

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), timeout=0.2, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    # first Ctrl-C: cancel and let running jobs stop at their next cancellation point
                    self.console.print_info("\nInterrupted: cancelling running jobs")
                    self.cancel()
                    continue
                for fut in done:
                    jid = in_flight.pop(fut)
                    job = by_id[jid]
                    running_per_spec[job.spec_name] -= 1
                    jr = fut.result()
                    result.jobs[jid] = jr
                    self.console.print_job_finished(jr)

                    if jr.status is JobStatus.SUCCEEDED:
                        for nxt in sorted(dependents[jid], key=list(by_id).index):
                            remaining[nxt].discard(jid)
                            if not remaining[nxt] and result.jobs[nxt].status is JobStatus.PENDING:
                                ready.append(nxt)
                        continue

                    for nxt in dependents[jid]:
                        cancel_job(nxt, f"needs '{job.spec_name}' which did not succeed")
                    if jr.status is JobStatus.FAILED:
                        if self.fail_fast:
                            halted = True
                        spec = specs.get(job.spec_name)
                        if spec is not None and spec.fail_fast and job.spec_name not in halted_specs:
                            halted_specs.add(job.spec_name)
                            for other in list(ready):
                                if by_id[other].spec_name == job.spec_name:
                                    cancel_job(other, f"fail-fast: {jid} failed")

        # anything still pending was never reachable (e.g. cancelled mid-run)
        for jid, jr in result.jobs.items():
            if jr.status is JobStatus.PENDING:
                jr.status = JobStatus.CANCELLED
                jr.error = jr.error or "not started"
        return result

    def _run_one(self, job: Job, job_fn: JobFn) -> JobResult:
        started = time.monotonic()
        try:
            jr = job_fn(job)
        except Exception as e:
            # job bodies report their own failures; anything else is the engine's
            self.console.print_exception(e)
            jr = JobResult(
                job_id=job.id,
                status=JobStatus.FAILED,
                failure_kind=FailureKind.INFRASTRUCTURE,
                error=f"{type(e).__name__}: {e}",
            )
        if not jr.duration:
            jr.duration = time.monotonic() - started
        return jr
