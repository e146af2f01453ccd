# fuzz.py
# Fuzz Campaign Runner: drives one fuzz target under a wall-clock budget,
# a worker count and a per-input timeout.
#
#   starting ──setup/build ok──▶ running ──budget──▶ stopped_by_budget
#      │                           │ └──crash/hang──▶ stopped_by_crash
#      └──setup/build failed───────┴──tool error───▶ stopped_by_error
from __future__ import annotations

import collections
import os
import queue
import re
import shlex
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set

from .context import RunContext
from .model import CampaignResult, CampaignState, FuzzCampaignSpec, Finding, Job, Step
from .steps import StepCancelled, run_process, step_env, terminate

# libFuzzer defaults: -timeout_exitcode=70, -error_exitcode=77
LIBFUZZER_TIMEOUT_EXITCODE = 70
LIBFUZZER_ERROR_EXITCODE = 77

_FINDING_PATTERNS = [
    ("crash", re.compile(r"ERROR: libFuzzer: deadly signal")),
    ("hang", re.compile(r"ERROR: libFuzzer: timeout after \d+ seconds")),
    ("hang", re.compile(r"ALARM: working on the last Unit for \d+ seconds")),
    ("oom", re.compile(r"ERROR: libFuzzer: out-of-memory")),
    ("crash", re.compile(r"==\d+==\s*ERROR: (Address|Undefined|Memory|Thread|Leak)Sanitizer")),
    ("crash", re.compile(r"thread '.*' panicked at")),
]
_ARTIFACT_LINE = re.compile(r"Test unit written to (\S+)")
_ARTIFACT_PREFIXES = {"crash-": "crash", "timeout-": "hang", "oom-": "oom", "leak-": "crash"}
_POLL_SECONDS = 0.2
_TAIL_LINES = 400
# after a crash report libFuzzer still writes the reproducer before exiting
_FINDING_GRACE_SECONDS = 5.0


def _artifact_kind(name: str) -> Optional[str]:
    for prefix, kind in _ARTIFACT_PREFIXES.items():
        if name.startswith(prefix):
            return kind
    # slow-unit-* is a performance signal, not a finding
    return None


class Watchdog:
    """
    Re-armable timer: fires `callback` once `seconds` pass without a
    kick(). Keeps watching after firing until cancelled.
    """

    def __init__(self, seconds: float, callback: Callable[[], None], clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self.callback = callback
        self.clock = clock
        self._last = clock()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="fuzz-hang-watchdog", daemon=True)

    def start(self) -> None:
        self.kick()
        self._thread.start()

    def kick(self) -> None:
        with self._lock:
            self._last = self.clock()

    def cancel(self) -> None:
        self._cancelled.set()

    def _loop(self) -> None:
        while not self._cancelled.is_set():
            with self._lock:
                remaining = self._last + self.seconds - self.clock()
            if remaining > 0:
                if self._cancelled.wait(remaining):
                    return
                continue
            self.callback()
            self.kick()


class FuzzCampaign:
    """
    One fuzz campaign. Two independent cancellation points while running:

      - budget timer: stops the whole campaign after `max_total_time`;
      - hang watchdog: flags the current input as hung after
        `timeout + hang_grace` seconds without output from the target.

    A finding (crash, hang, OOM) fails the job and its reproducing input
    is copied into the job's artifacts directory.
    """

    def __init__(self, spec: FuzzCampaignSpec, job: Job, ctx: RunContext, *, cwd: Path | None = None):
        self.spec = spec
        self.job = job
        self.ctx = ctx
        self.cwd = (cwd or ctx.repo_root).resolve()
        self.state = CampaignState.STARTING
        self.findings: List[Finding] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._stop_reason: Optional[str] = None
        self._tail: Deque[str] = collections.deque(maxlen=_TAIL_LINES)

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def run(self) -> CampaignResult:
        started = time.monotonic()
        self._set_state(CampaignState.STARTING)
        env = step_env(self.job, _campaign_step(self.spec), self.ctx)

        try:
            error = self._prepare(env)
        except StepCancelled:
            return self._result(CampaignState.CANCELLED, started)
        if error:
            return self._result(CampaignState.STOPPED_BY_ERROR, started, error=error)

        return self._fuzz(env)

    # -----------------------------------------------------------------
    # starting
    # -----------------------------------------------------------------

    def _setup_commands(self) -> List[Sequence[str]]:
        cmds: List[Sequence[str]] = list(self.spec.setup if self.spec.setup is not None else self.spec.default_setup())
        if self.spec.build is not None:
            cmds.append(self.spec.build)
        elif self.spec.launcher is None:
            # compile before the clock starts so the budget is spent fuzzing
            build = ["cargo", f"+{self.spec.toolchain}"]
            if self.spec.locked:
                build.append("--locked")
            build.extend(["fuzz", "build"])
            if self.spec.fuzz_dir:
                build.append(f"--fuzz-dir={self.spec.fuzz_dir}")
            build.append(self.spec.target)
            cmds.append(build)
        return cmds

    def _prepare(self, env: Dict[str, str]) -> Optional[str]:
        for cmd in self._setup_commands():
            if self.ctx.cancelled:
                raise StepCancelled()
            self.ctx.console.print_fuzz_state(self.job.id, self.spec.target, "starting", shlex.join(cmd))
            try:
                rc, out = run_process(cmd, cwd=self.cwd, env=env, cancel=self.ctx.cancel)
            except FileNotFoundError:
                return f"{cmd[0]} is not available (setup command: {shlex.join(cmd)})"
            if rc != 0:
                self._tail.extend(out.splitlines())
                return f"setup command failed (exit={rc}): {shlex.join(cmd)}"
        return None

    # -----------------------------------------------------------------
    # running
    # -----------------------------------------------------------------

    def _artifact_dir(self) -> Path:
        if self.spec.artifact_dir:
            p = Path(self.spec.artifact_dir)
        else:
            p = Path(self.spec.fuzz_dir or "fuzz") / "artifacts" / self.spec.target
        return p if p.is_absolute() else self.cwd / p

    def _snapshot_artifacts(self) -> Set[Path]:
        d = self._artifact_dir()
        if not d.is_dir():
            return set()
        return {p.resolve() for p in d.iterdir() if p.is_file()}

    def _fuzz(self, env: Dict[str, str]) -> CampaignResult:
        cmd = self.spec.command()
        before = self._snapshot_artifacts()
        self._set_state(CampaignState.RUNNING, shlex.join(cmd))

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            return self._result(CampaignState.STOPPED_BY_ERROR, started, error=f"could not launch {cmd[0]}: {e}")

        budget = threading.Timer(self.spec.max_total_time, self._request_stop, args=("budget",))
        budget.daemon = True
        watchdog = Watchdog(self.spec.watchdog_seconds, self._on_hang)
        lines: "queue.Queue[Optional[str]]" = queue.Queue()
        reader = threading.Thread(target=_pump, args=(proc.stdout, lines), daemon=True)

        budget.start()
        watchdog.start()
        reader.start()
        try:
            self._wait(proc, lines, watchdog)
        finally:
            budget.cancel()
            watchdog.cancel()
            terminate(proc)
            reader.join(timeout=5)
            self._drain(lines)
        elapsed = time.monotonic() - started

        self._collect_new_artifacts(before)
        return self._classify(proc.returncode, elapsed)

    def _wait(self, proc: subprocess.Popen, lines: "queue.Queue[Optional[str]]", watchdog: Watchdog) -> None:
        eof = False
        grace_until: Optional[float] = None
        while True:
            if self.ctx.cancelled:
                self._request_stop("cancel")
            if self._stop.is_set():
                if self._stop_reason != "finding":
                    return
                if grace_until is None:
                    grace_until = time.monotonic() + _FINDING_GRACE_SECONDS
                elif time.monotonic() >= grace_until:
                    return
            try:
                line = lines.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if eof and proc.poll() is not None:
                    return
                continue
            if line is None:
                eof = True
                if proc.poll() is not None:
                    return
                continue
            watchdog.kick()
            self._on_line(line)

    def _drain(self, lines: "queue.Queue[Optional[str]]") -> None:
        while True:
            try:
                line = lines.get_nowait()
            except queue.Empty:
                return
            if line is not None:
                self._on_line(line)

    # -----------------------------------------------------------------
    # findings
    # -----------------------------------------------------------------

    def _on_line(self, line: str) -> None:
        line = line.rstrip("\n")
        self._tail.append(line)
        if self.ctx.console.debug:
            self.ctx.console.print_step_output(self.job.id, line)

        m = _ARTIFACT_LINE.search(line)
        if m:
            path = str((self.cwd / m.group(1)).resolve())
            kind = _artifact_kind(Path(path).name)
            if kind is not None:
                self._record(kind, f"reproducer written to {m.group(1)}", artifact=path)
            return

        for kind, pattern in _FINDING_PATTERNS:
            if pattern.search(line):
                self._record(kind, line.strip())
                return

    def _on_hang(self) -> None:
        # a hung target will not exit on its own, so no grace period
        self._record(
            "hang",
            f"no output from the target for {self.spec.watchdog_seconds:g}s "
            f"(per-input timeout {self.spec.timeout:g}s)",
            stop_reason="hang",
        )

    def _record(self, kind: str, message: str, artifact: str | None = None, stop_reason: str = "finding") -> None:
        with self._lock:
            last = self.findings[-1] if self.findings else None
            if artifact is not None and last is not None and last.artifact is None:
                # "Test unit written to" follows the report it belongs to
                last.artifact = artifact
                return
            if artifact is None and last is not None and last.kind == kind and last.artifact is None:
                # same crash reported twice (e.g. panic, then deadly signal)
                return
            finding = Finding(kind=kind, message=message, artifact=artifact)
            self.findings.append(finding)
        self.ctx.console.print_fuzz_state(self.job.id, self.spec.target, f"finding ({kind})", message)
        if self.spec.stop_on_finding:
            self._request_stop(stop_reason)

    def _collect_new_artifacts(self, before: Set[Path]) -> None:
        known = {f.artifact for f in self.findings if f.artifact}
        for p in sorted(self._snapshot_artifacts() - before):
            kind = _artifact_kind(p.name)
            if kind is None or str(p) in known:
                continue
            with self._lock:
                self.findings.append(Finding(kind=kind, message=f"new artifact {p.name}", artifact=str(p)))

    def _retain_artifacts(self) -> List[str]:
        """Copy reproducing inputs and the output tail into the job's artifacts dir."""
        if not self.findings:
            return []
        dest = self.ctx.artifacts_dir_for(self.job)
        dest.mkdir(parents=True, exist_ok=True)
        kept: List[str] = []
        for f in self.findings:
            if f.artifact and os.path.isfile(f.artifact):
                target = dest / Path(f.artifact).name
                shutil.copy2(f.artifact, target)
                kept.append(str(target))
        log = dest / f"fuzz-{self.spec.target}.log"
        log.write_text("\n".join(self._tail) + "\n", encoding="utf-8")
        kept.append(str(log))
        return kept

    # -----------------------------------------------------------------
    # state
    # -----------------------------------------------------------------

    def _request_stop(self, reason: str) -> None:
        with self._lock:
            if self._stop_reason is None:
                self._stop_reason = reason
        self._stop.set()

    def _set_state(self, state: CampaignState, detail: str = "") -> None:
        self.state = state
        self.ctx.console.print_fuzz_state(self.job.id, self.spec.target, state.value, detail)

    def _classify(self, exit_code: Optional[int], elapsed: float) -> CampaignResult:
        reason = self._stop_reason
        if not self.findings and reason is None:
            if exit_code == LIBFUZZER_TIMEOUT_EXITCODE:
                self.findings.append(Finding(kind="hang", message=f"target exited with timeout code {exit_code}"))
            elif exit_code == LIBFUZZER_ERROR_EXITCODE:
                self.findings.append(Finding(kind="crash", message=f"target exited with error code {exit_code}"))

        if self.findings:
            return self._result(CampaignState.STOPPED_BY_CRASH, None, elapsed=elapsed, exit_code=exit_code)
        if reason == "cancel":
            return self._result(CampaignState.CANCELLED, None, elapsed=elapsed, exit_code=exit_code)
        if reason == "budget" or exit_code == 0:
            return self._result(CampaignState.STOPPED_BY_BUDGET, None, elapsed=elapsed, exit_code=exit_code)
        return self._result(
            CampaignState.STOPPED_BY_ERROR,
            None,
            elapsed=elapsed,
            exit_code=exit_code,
            error=f"fuzzer exited with code {exit_code} without crash evidence",
        )

    def _result(
        self,
        state: CampaignState,
        started: Optional[float],
        *,
        elapsed: Optional[float] = None,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> CampaignResult:
        if elapsed is None:
            elapsed = time.monotonic() - started if started is not None else 0.0
        self._set_state(state, f"{elapsed:.1f}s")
        return CampaignResult(
            target=self.spec.target,
            state=state,
            elapsed=elapsed,
            exit_code=exit_code,
            findings=list(self.findings),
            artifacts=self._retain_artifacts(),
            error=error,
            output="\n".join(self._tail)[-self.ctx.settings.output_tail:],
        )


def _campaign_step(spec: FuzzCampaignSpec) -> Step:
    return Step(name=f"fuzz {spec.target}", run=tuple(spec.command()))


def _pump(stream, lines: "queue.Queue[Optional[str]]") -> None:
    try:
        if stream is None:
            return
        for line in stream:
            lines.put(line)
    finally:
        lines.put(None)


def run_campaign(spec: FuzzCampaignSpec, job: Job, ctx: RunContext) -> CampaignResult:
    return FuzzCampaign(spec, job, ctx).run()
