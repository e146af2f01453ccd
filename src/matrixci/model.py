# model.py
from __future__ import annotations

import enum
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

# Matrix values are plain scalars so identities stay hashable and printable.
Scalar = Union[str, int, float, bool]
Identity = Tuple[Tuple[str, Scalar], ...]


def frozen_env(env: Optional[Mapping[str, Any]] = None) -> Mapping[str, str]:
    """Read-only copy of an env mapping, values forced to str."""
    return MappingProxyType({str(k): str(v) for k, v in (env or {}).items()})


# ---------------------------------------------------------------------
# Triggers / events
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PushTrigger:
    branches: Tuple[str, ...] = ()
    kind: str = field(default="push", init=False)


@dataclass(frozen=True)
class PullRequestTrigger:
    # matched against the branch the pull request targets
    branches: Tuple[str, ...] = ()
    kind: str = field(default="pull_request", init=False)


@dataclass(frozen=True)
class ScheduleTrigger:
    cron: str
    kind: str = field(default="schedule", init=False)


Trigger = Union[PushTrigger, PullRequestTrigger, ScheduleTrigger]

EVENT_KINDS = ("push", "pull_request", "schedule")


@dataclass(frozen=True)
class Event:
    """An incoming event that may start a run."""
    kind: str
    branch: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind {self.kind!r}; expected one of {EVENT_KINDS}")


# ---------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str | Tuple[str, ...] = ""
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=frozen_env)
    continue_on_error: bool = False
    # run | toolchain | checkout | cache
    kind: str = "run"
    uses: str | None = None
    with_: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def display_cmd(self) -> str:
        if isinstance(self.run, tuple):
            return shlex.join(self.run)
        return self.run


@dataclass(frozen=True)
class FuzzCampaignSpec:
    target: str
    fuzz_dir: str | None = None
    jobs: int = 4
    max_total_time: float = 120
    timeout: float = 30
    toolchain: str = "nightly-2025-01-01"
    locked: bool = True
    launcher: Tuple[str, ...] | None = None
    setup: Tuple[Tuple[str, ...], ...] | None = None
    build: Tuple[str, ...] | None = None
    stop_on_finding: bool = True
    hang_grace: float | None = None
    artifact_dir: str | None = None

    @classmethod
    def from_args(cls, args: str, **kwargs: Any) -> FuzzCampaignSpec:
        """
        Parse the `cargo fuzz run` argument form used in matrix values,
        e.g. "--fuzz-dir=keyvalues-parser/fuzz parse".
        """
        fuzz_dir = None
        target = None
        tokens = shlex.split(args)
        i = 0
        while i < len(tokens):
            tok = tokens[i]
            if tok.startswith("--fuzz-dir="):
                fuzz_dir = tok.split("=", 1)[1]
            elif tok == "--fuzz-dir" and i + 1 < len(tokens):
                fuzz_dir = tokens[i + 1]
                i += 1
            elif tok.startswith("-"):
                raise ValueError(f"Unsupported fuzz argument {tok!r} in {args!r}")
            elif target is None:
                target = tok
            else:
                raise ValueError(f"More than one fuzz target in {args!r}")
            i += 1
        if not target:
            raise ValueError(f"No fuzz target in {args!r}")
        return cls(target=target, fuzz_dir=fuzz_dir, **kwargs)

    @property
    def watchdog_seconds(self) -> float:
        grace = self.timeout if self.hang_grace is None else self.hang_grace
        return self.timeout + grace

    def default_launcher(self) -> Tuple[str, ...]:
        cmd = ["cargo", f"+{self.toolchain}"]
        if self.locked:
            cmd.append("--locked")
        cmd.extend(["fuzz", "run"])
        return tuple(cmd)

    def default_setup(self) -> Tuple[Tuple[str, ...], ...]:
        install_fuzz = ["cargo"]
        if self.locked:
            install_fuzz.append("--locked")
        install_fuzz.extend(["install", "cargo-fuzz"])
        return (
            ("rustup", "toolchain", "install", "--profile", "minimal", self.toolchain),
            tuple(install_fuzz),
        )

    def command(self) -> List[str]:
        cmd = list(self.launcher if self.launcher is not None else self.default_launcher())
        cmd.append(f"--jobs={self.jobs}")
        if self.fuzz_dir:
            cmd.append(f"--fuzz-dir={self.fuzz_dir}")
        cmd.append(self.target)
        cmd.append("--")
        cmd.append(f"-max_total_time={_seconds(self.max_total_time)}")
        cmd.append(f"-timeout={_seconds(self.timeout)}")
        return cmd


def _seconds(value: float) -> str:
    # libFuzzer only accepts integral seconds; round partial seconds up
    as_int = int(value)
    return str(as_int if as_int == value else as_int + 1)


@dataclass(frozen=True)
class JobSpec:
    """
    A declared job: steps + matrix + metadata.

    `steps`, `env` and `fuzz` may contain `${{ matrix.<axis> }}` templates
    that are rendered once per matrix combination.
    """
    name: str
    steps: Tuple[Step, ...]
    runs_on: str = "ubuntu-latest"
    display_name: str | None = None
    matrix: Mapping[str, Tuple[Scalar, ...]] = field(default_factory=lambda: MappingProxyType({}))
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=frozen_env)
    fuzz: FuzzCampaignSpec | None = None
    # raw templated fuzz args, e.g. "${{ matrix.fuzzer }}"
    fuzz_args: str | None = None
    fail_fast: bool = False
    max_parallel: int | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    jobs: Mapping[str, JobSpec]
    triggers: Tuple[Trigger, ...] = ()
    env: Mapping[str, str] = field(default_factory=frozen_env)


@dataclass(frozen=True)
class Job:
    """One concrete runnable unit produced by matrix expansion."""
    spec_name: str
    steps: Tuple[Step, ...]
    identity: Identity = ()
    display_name: str | None = None
    runs_on: str = "ubuntu-latest"
    env: Mapping[str, str] = field(default_factory=frozen_env)
    needs: Tuple[str, ...] = ()
    fuzz: FuzzCampaignSpec | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.spec_name

    @staticmethod
    def _with_values(base: str, identity: Identity) -> str:
        if not identity:
            return base
        values = ", ".join(str(v) for _axis, v in identity)
        return f"{base} ({values})"

    @property
    def id(self) -> str:
        # keyed by the `jobs:` entry; display names may repeat
        return self._with_values(self.spec_name, self.identity)

    @property
    def label(self) -> str:
        return self._with_values(self.name, self.identity)

    @property
    def matrix(self) -> Dict[str, Scalar]:
        return dict(self.identity)


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FailureKind(str, enum.Enum):
    STEP_FAILURE = "step_failure"
    FUZZ_FINDING = "fuzz_finding"
    INFRASTRUCTURE = "infrastructure"


class CampaignState(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED_BY_BUDGET = "stopped_by_budget"
    STOPPED_BY_CRASH = "stopped_by_crash"
    STOPPED_BY_ERROR = "stopped_by_error"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    duration: float = 0.0


@dataclass
class Finding:
    # crash | hang | oom
    kind: str
    message: str
    artifact: str | None = None


@dataclass
class CampaignResult:
    target: str
    state: CampaignState
    elapsed: float = 0.0
    exit_code: int | None = None
    findings: List[Finding] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    error: str | None = None
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state is CampaignState.STOPPED_BY_BUDGET


@dataclass
class JobResult:
    job_id: str
    status: JobStatus = JobStatus.PENDING
    failure_kind: FailureKind | None = None
    steps: List[StepResult] = field(default_factory=list)
    campaign: CampaignResult | None = None
    cache: str | None = None
    error: str | None = None
    duration: float = 0.0

    @property
    def failed_step(self) -> StepResult | None:
        for s in self.steps:
            if s.status is StepStatus.FAILED:
                return s
        return None


@dataclass
class RunResult:
    workflow: str
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    @property
    def status(self) -> JobStatus:
        statuses = [j.status for j in self.jobs.values()]
        if JobStatus.FAILED in statuses:
            return JobStatus.FAILED
        if JobStatus.CANCELLED in statuses or JobStatus.PENDING in statuses or JobStatus.RUNNING in statuses:
            return JobStatus.CANCELLED
        return JobStatus.SUCCEEDED

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED
