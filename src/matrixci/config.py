# config.py
# Loads workflow files: declarative YAML (validated with pydantic) or a
# Python file built with the DSL. Everything is checked before a run starts.
from __future__ import annotations

import runpy
from pathlib import Path
from types import MappingProxyType
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from .dag import validate_dag
from .errors import ConfigurationError
from .matrix import expand_workflow
from .model import (
    FuzzCampaignSpec,
    JobSpec,
    PullRequestTrigger,
    PushTrigger,
    ScheduleTrigger,
    Step,
    Trigger,
    WorkflowDefinition,
    frozen_env,
)
from .triggers import validate_cron

KNOWN_ACTIONS = ("checkout", "cache")
# hosted-CI action names that map onto a built-in
ACTION_ALIASES = {
    "actions/checkout": "checkout",
    "actions/cache": "cache",
    "Swatinem/rust-cache": "cache",
}


def _env_value(v: Any) -> Any:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    return v


EnvValue = Annotated[str, BeforeValidator(_env_value)]
MatrixValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ---------------------------------------------------------------------
# Triggers (`on:`)
# ---------------------------------------------------------------------

class PushSchema(_Schema):
    branches: List[str] = Field(default_factory=list)


class PullRequestSchema(_Schema):
    branches: List[str] = Field(default_factory=list)


class ScheduleSchema(_Schema):
    cron: str


class TriggersSchema(_Schema):
    push: Optional[PushSchema] = None
    pull_request: Optional[PullRequestSchema] = None
    schedule: List[ScheduleSchema] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _short_forms(cls, data: Any) -> Any:
        # `on: push`, `on: [push, pull_request]`, and bare `pull_request:` keys
        if isinstance(data, str):
            data = [data]
        if isinstance(data, list):
            data = {name: {} for name in data}
        if isinstance(data, dict):
            data = {k: ({} if v is None and k in ("push", "pull_request") else v) for k, v in data.items()}
        return data


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

class StepSchema(_Schema):
    name: Optional[str] = None
    run: Union[str, List[str], None] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, EnvValue] = Field(default_factory=dict)
    continue_on_error: bool = Field(False, alias="continue-on-error")
    working_directory: Optional[str] = Field(None, alias="working-directory")
    kind: Optional[Literal["run", "toolchain", "checkout", "cache"]] = None

    @model_validator(mode="after")
    def _run_or_uses(self) -> StepSchema:
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class StrategySchema(_Schema):
    matrix: Dict[str, List[MatrixValue]] = Field(default_factory=dict)
    fail_fast: bool = Field(False, alias="fail-fast")
    max_parallel: Optional[int] = Field(None, alias="max-parallel", ge=1)


class FuzzSchema(_Schema):
    args: Optional[str] = None
    target: Optional[str] = None
    fuzz_dir: Optional[str] = Field(None, alias="fuzz-dir")
    jobs: int = Field(4, ge=1)
    max_total_time: float = Field(120, alias="max-total-time", gt=0)
    timeout: float = Field(30, gt=0)
    hang_grace: Optional[float] = Field(None, alias="hang-grace", ge=0)
    toolchain: str = "nightly-2025-01-01"
    locked: bool = True
    stop_on_finding: bool = Field(True, alias="stop-on-finding")
    artifact_dir: Optional[str] = Field(None, alias="artifact-dir")
    launcher: Optional[List[str]] = None
    setup: Optional[List[List[str]]] = None
    build: Optional[List[str]] = None

    @model_validator(mode="after")
    def _args_or_target(self) -> FuzzSchema:
        if (self.args is None) == (self.target is None):
            raise ValueError("fuzz needs exactly one of 'args' or 'target'")
        return self


class JobSchema(_Schema):
    name: Optional[str] = None
    runs_on: str = Field("ubuntu-latest", alias="runs-on")
    needs: Union[str, List[str]] = Field(default_factory=list)
    env: Dict[str, EnvValue] = Field(default_factory=dict)
    strategy: StrategySchema = Field(default_factory=StrategySchema)
    steps: List[StepSchema] = Field(default_factory=list)
    fuzz: Optional[FuzzSchema] = None

    @model_validator(mode="after")
    def _has_work(self) -> JobSchema:
        if not self.steps and self.fuzz is None:
            raise ValueError("a job needs at least one step or a fuzz campaign")
        return self


class WorkflowSchema(_Schema):
    name: str = "workflow"
    on: TriggersSchema = Field(default_factory=TriggersSchema, validation_alias=AliasChoices("on", "triggers"))
    env: Dict[str, EnvValue] = Field(default_factory=dict)
    jobs: Dict[str, JobSchema]


# ---------------------------------------------------------------------
# Schema -> model
# ---------------------------------------------------------------------

def _action_name(uses: str) -> str:
    bare = uses.split("@", 1)[0]
    name = ACTION_ALIASES.get(bare, bare)
    if name not in KNOWN_ACTIONS:
        raise ConfigurationError(
            f"Unsupported action '{uses}'. Built-in actions: {', '.join(KNOWN_ACTIONS)}"
        )
    return name


def _is_toolchain_script(run: str) -> bool:
    lines = [line.strip() for line in run.splitlines() if line.strip()]
    return bool(lines) and all(line.startswith("rustup ") for line in lines)


def _default_step_name(s: StepSchema) -> str:
    if s.uses is not None:
        return f"Run {s.uses}"
    if isinstance(s.run, list):
        return f"Run {' '.join(s.run)}"
    first = (s.run or "").strip().splitlines()
    return f"Run {first[0]}" if first else "Run"


def _to_step(s: StepSchema) -> Step:
    name = s.name or _default_step_name(s)
    if s.uses is not None:
        action = _action_name(s.uses)
        return Step(name=name, kind=action, uses=action, with_=MappingProxyType(dict(s.with_)), env=frozen_env(s.env))

    run: Union[str, tuple] = tuple(s.run) if isinstance(s.run, list) else s.run
    kind = s.kind
    if kind is None:
        kind = "toolchain" if isinstance(run, str) and _is_toolchain_script(run) else "run"
    return Step(
        name=name,
        run=run,
        cwd=s.working_directory,
        env=frozen_env(s.env),
        continue_on_error=s.continue_on_error,
        kind=kind,
    )


def _to_fuzz(f: FuzzSchema) -> FuzzCampaignSpec:
    return FuzzCampaignSpec(
        target=f.target or "",
        fuzz_dir=f.fuzz_dir,
        jobs=f.jobs,
        max_total_time=f.max_total_time,
        timeout=f.timeout,
        toolchain=f.toolchain,
        locked=f.locked,
        launcher=tuple(f.launcher) if f.launcher is not None else None,
        setup=tuple(tuple(c) for c in f.setup) if f.setup is not None else None,
        build=tuple(f.build) if f.build is not None else None,
        stop_on_finding=f.stop_on_finding,
        hang_grace=f.hang_grace,
        artifact_dir=f.artifact_dir,
    )


def _to_job(job_id: str, j: JobSchema) -> JobSpec:
    needs = [j.needs] if isinstance(j.needs, str) else list(j.needs)
    return JobSpec(
        name=job_id,
        display_name=j.name or None,
        runs_on=j.runs_on,
        steps=tuple(_to_step(s) for s in j.steps),
        matrix=MappingProxyType({k: tuple(v) for k, v in j.strategy.matrix.items()}),
        needs=tuple(needs),
        env=frozen_env(j.env),
        fuzz=_to_fuzz(j.fuzz) if j.fuzz is not None else None,
        fuzz_args=j.fuzz.args if j.fuzz is not None else None,
        fail_fast=j.strategy.fail_fast,
        max_parallel=j.strategy.max_parallel,
    )


def _to_triggers(t: TriggersSchema) -> tuple:
    triggers: List[Trigger] = []
    if t.push is not None:
        triggers.append(PushTrigger(branches=tuple(t.push.branches)))
    if t.pull_request is not None:
        triggers.append(PullRequestTrigger(branches=tuple(t.pull_request.branches)))
    triggers.extend(ScheduleTrigger(cron=s.cron) for s in t.schedule)
    return tuple(triggers)


def _format_validation_error(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        lines.append(f"  {loc}: {err.get('msg')}")
    return "Invalid workflow:\n" + "\n".join(lines)


def parse_workflow(data: Dict[str, Any]) -> WorkflowDefinition:
    """
    Build a WorkflowDefinition from already-parsed YAML/JSON data and
    validate it. Raises ConfigurationError.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Workflow file must contain a mapping at the top level")
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as the boolean True
    if True in data:
        data["on"] = data.pop(True)

    try:
        schema = WorkflowSchema.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e)) from e

    definition = WorkflowDefinition(
        name=schema.name,
        jobs=MappingProxyType({job_id: _to_job(job_id, j) for job_id, j in schema.jobs.items()}),
        triggers=_to_triggers(schema.on),
        env=frozen_env(schema.env),
    )
    validate_workflow(definition)
    return definition


def validate_workflow(definition: WorkflowDefinition) -> None:
    """
    Everything that can be checked before scheduling: cron syntax,
    job dependencies, matrix axes and `${{ matrix.* }}` references.
    """
    if not definition.jobs:
        raise ConfigurationError(f"Workflow '{definition.name}' declares no jobs")
    for trigger in definition.triggers:
        if isinstance(trigger, ScheduleTrigger):
            validate_cron(trigger.cron)
    validate_dag(definition.jobs)
    expand_workflow(definition)


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowDefinition:
    """
    Load a workflow from a file path.

    `.yml` / `.yaml`: the declarative format.
    `.py`: the file must define either
      - workflow() -> WorkflowDefinition
      - WORKFLOW = WorkflowDefinition(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        try:
            with wf_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{wf_path.name}: invalid YAML: {e}") from e
        return parse_workflow(data)

    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            definition = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from matrixci import wf, job, sh` then "
                    "`def workflow(): return wf('name', job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        definition = globals_dict["WORKFLOW"]

    if not isinstance(definition, WorkflowDefinition):
        raise ConfigurationError(
            "Workflow must return/define a WorkflowDefinition. "
            "Define workflow() -> WorkflowDefinition or WORKFLOW = wf(...)."
        )

    validate_workflow(definition)
    return definition
