# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Callable, Iterable, List, Mapping, Sequence

from .errors import ConfigurationError
from .model import FuzzCampaignSpec, Identity, Job, JobSpec, Scalar, Step, WorkflowDefinition, frozen_env

_MATRIX_REF = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


def validate_matrix(axes: Mapping[str, Sequence[Scalar]], *, job: str = "") -> None:
    where = f" in job '{job}'" if job else ""
    for axis, values in axes.items():
        if len(values) == 0:
            raise ConfigurationError(f"Matrix axis '{axis}'{where} has no values")
        seen = set()
        for v in values:
            marker = (type(v).__name__, v)
            if marker in seen:
                raise ConfigurationError(f"Matrix axis '{axis}'{where} repeats value {v!r}")
            seen.add(marker)


def expand(axes: Mapping[str, Sequence[Scalar]], *, job: str = "") -> List[Identity]:
    """
    Full cross product of the axes, row-major: the first declared axis
    varies slowest. No axes -> one empty identity.
    """
    validate_matrix(axes, job=job)
    names = list(axes.keys())
    return [
        tuple(zip(names, combo))
        for combo in itertools.product(*(list(axes[n]) for n in names))
    ]


class Matrix:
    """
    Matrix expander over one or more axes.

    Example:
        Matrix({"rust": ["stable", "beta"]}).jobs(
            lambda m: job(f"build-{m['rust']}", sh(...))
        )
    """

    def __init__(self, axes: Mapping[str, Iterable[Scalar]]):
        self.axes = {k: tuple(v) for k, v in axes.items()}

    def combinations(self) -> List[Identity]:
        return expand(self.axes)

    def jobs(self, builder: Callable[[dict], Any]) -> List[Any]:
        return [builder(dict(identity)) for identity in self.combinations()]


def matrix(key: str, values: Iterable[Scalar]) -> Matrix:
    return Matrix({key: values})


# ---------------------------------------------------------------------
# Templating: ${{ matrix.<axis> }}
# ---------------------------------------------------------------------

def _format(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(text: str, identity: Identity, *, job: str = "") -> str:
    values = dict(identity)

    def sub(m: re.Match) -> str:
        axis = m.group(1)
        if axis not in values:
            raise ConfigurationError(
                f"Job '{job}' references unknown matrix axis '{axis}'. Known axes: {sorted(values)}"
            )
        return _format(values[axis])

    return _MATRIX_REF.sub(sub, text)


def _render_step(step: Step, identity: Identity, job: str) -> Step:
    if isinstance(step.run, tuple):
        run = tuple(render(tok, identity, job=job) for tok in step.run)
    else:
        run = render(step.run, identity, job=job)
    return replace(
        step,
        name=render(step.name, identity, job=job),
        run=run,
        cwd=render(step.cwd, identity, job=job) if step.cwd else step.cwd,
        env=frozen_env({k: render(v, identity, job=job) for k, v in step.env.items()}),
    )


def _render_fuzz(spec: JobSpec, identity: Identity) -> FuzzCampaignSpec | None:
    if spec.fuzz_args is not None:
        args = render(spec.fuzz_args, identity, job=spec.name)
        base = spec.fuzz or FuzzCampaignSpec(target="")
        try:
            parsed = FuzzCampaignSpec.from_args(args)
        except ValueError as e:
            raise ConfigurationError(f"Job '{spec.name}': {e}") from e
        return replace(base, target=parsed.target, fuzz_dir=parsed.fuzz_dir or base.fuzz_dir)
    if spec.fuzz is None:
        return None
    fuzz = spec.fuzz
    return replace(
        fuzz,
        target=render(fuzz.target, identity, job=spec.name),
        fuzz_dir=render(fuzz.fuzz_dir, identity, job=spec.name) if fuzz.fuzz_dir else fuzz.fuzz_dir,
    )


def expand_job(spec: JobSpec, workflow_env: Mapping[str, str]) -> List[Job]:
    """Expand one JobSpec into its concrete Jobs (one per matrix combination)."""
    jobs: List[Job] = []
    for identity in expand(spec.matrix, job=spec.name):
        env = dict(workflow_env)
        env.update({k: render(v, identity, job=spec.name) for k, v in spec.env.items()})
        display = render(spec.display_name, identity, job=spec.name) if spec.display_name else None
        jobs.append(
            Job(
                spec_name=spec.name,
                steps=tuple(_render_step(s, identity, spec.name) for s in spec.steps),
                identity=identity,
                display_name=display,
                runs_on=spec.runs_on,
                env=frozen_env(env),
                needs=spec.needs,
                fuzz=_render_fuzz(spec, identity),
            )
        )
    return jobs


def expand_workflow(definition: WorkflowDefinition) -> List[Job]:
    """
    Build the job arena for a run. Each JobSpec's matrix is expanded
    independently; ids must be unique across the whole run.
    """
    jobs: List[Job] = []
    for spec in definition.jobs.values():
        jobs.extend(expand_job(spec, definition.env))

    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigurationError(f"Duplicate job ids after matrix expansion: {dupes}")
    return jobs
