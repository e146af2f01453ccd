# dsl.py
# Python workflow files: build a WorkflowDefinition without YAML.
from __future__ import annotations

from dataclasses import replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .matrix import Matrix
from .model import (
    FuzzCampaignSpec,
    JobSpec,
    PullRequestTrigger,
    PushTrigger,
    Scalar,
    ScheduleTrigger,
    Step,
    Trigger,
    WorkflowDefinition,
    frozen_env,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: Union[str, Sequence[str]],
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    kind: str = "run",
) -> Step:
    """Create a shell step. A list `cmd` runs without a shell."""
    run = cmd if isinstance(cmd, str) else tuple(cmd)
    return Step(
        name=name,
        run=run,
        cwd=cwd,
        env=frozen_env(env),
        continue_on_error=continue_on_error,
        kind=kind,
    )


def uses(action: str, name: str | None = None, **inputs: Any) -> Step:
    """Built-in action step; keyword inputs use underscores for dashes (key_axes -> key-axes)."""
    with_ = {k.replace("_", "-"): v for k, v in inputs.items()}
    return Step(name=name or f"Run {action}", kind=action, uses=action, with_=MappingProxyType(with_))


def checkout() -> Step:
    return uses("checkout", name="Checkout")


def cache_step(name: str = "Cache", **inputs: Any) -> Step:
    return uses("cache", name=name, **inputs)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(*branches: str) -> PushTrigger:
    return PushTrigger(branches=tuple(branches))


def on_pull_request(*branches: str) -> PullRequestTrigger:
    return PullRequestTrigger(branches=tuple(branches))


def on_schedule(cron: str) -> ScheduleTrigger:
    return ScheduleTrigger(cron=cron)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def _axes(m: Union[Matrix, Mapping[str, Iterable[Scalar]], None]) -> Mapping[str, tuple]:
    if m is None:
        return MappingProxyType({})
    axes = m.axes if isinstance(m, Matrix) else m
    return MappingProxyType({k: tuple(v) for k, v in axes.items()})


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    display_name: str | None = None,
    runs_on: str = "ubuntu-latest",
    matrix: Union[Matrix, Mapping[str, Iterable[Scalar]], None] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    fuzz: Union[FuzzCampaignSpec, str, None] = None,
    fail_fast: bool = False,
    max_parallel: int | None = None,
) -> JobSpec:
    """
    `fuzz` is either a FuzzCampaignSpec or the `cargo fuzz run` argument
    form ("--fuzz-dir=D target"), which may use ${{ matrix.* }}.
    """
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final and fuzz is None:
        raise ValueError(f"job({name!r}) must have at least one step or a fuzz campaign")

    if cwd is not None:
        steps_final = [s if s.cwd is not None or s.uses else replace(s, cwd=cwd) for s in steps_final]

    fuzz_spec = fuzz if isinstance(fuzz, FuzzCampaignSpec) else (FuzzCampaignSpec(target="") if fuzz else None)
    return JobSpec(
        name=name,
        steps=tuple(steps_final),
        runs_on=runs_on,
        display_name=display_name,
        matrix=_axes(matrix),
        needs=tuple(needs or ()),
        env=frozen_env(env),
        fuzz=fuzz_spec,
        fuzz_args=fuzz if isinstance(fuzz, str) else None,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._axes: dict[str, tuple] = {}
        self._runs_on = "ubuntu-latest"
        self._fuzz: Union[FuzzCampaignSpec, str, None] = None
        self._display_name: str | None = None
        self._fail_fast = False
        self._max_parallel: int | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, platform: str):
        self._runs_on = platform
        return self

    def titled(self, display_name: str):
        self._display_name = display_name
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, axis: str, values: Iterable[Scalar]):
        self._axes[axis] = tuple(values)
        return self

    def fuzz(self, campaign: Union[FuzzCampaignSpec, str]):
        self._fuzz = campaign
        return self

    def strategy(self, fail_fast: bool = False, max_parallel: int | None = None):
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def build(self) -> JobSpec:
        return job(
            self.name,
            steps_list=self._steps,
            display_name=self._display_name,
            runs_on=self._runs_on,
            matrix=self._axes,
            needs=self._needs,
            env=self._env,
            fuzz=self._fuzz,
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: JobSpec,
    triggers: Sequence[Trigger] = (),
    env: Optional[Dict[str, str]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(...).

    Users can write:
        from matrixci import wf, job, sh, on_push

        def workflow():
            return wf(
                "ci",
                job("test", sh("Test", "cargo test")),
                triggers=[on_push("main")],
            )

    Or use WORKFLOW directly:
        WORKFLOW = wf("ci", job(...))
    """
    by_name: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.name in by_name:
            raise ValueError(f"Duplicate job name: {j.name}")
        by_name[j.name] = j
    return WorkflowDefinition(
        name=name,
        jobs=MappingProxyType(by_name),
        triggers=tuple(triggers),
        env=frozen_env(env),
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
