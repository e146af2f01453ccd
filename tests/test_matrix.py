from __future__ import annotations

from types import MappingProxyType

import pytest

from matrixci.errors import ConfigurationError
from matrixci.matrix import Matrix, expand, expand_job, expand_workflow, render
from matrixci.model import JobSpec, Step, WorkflowDefinition, frozen_env


def _spec(name="build", matrix=None, steps=None, **kwargs) -> JobSpec:
    return JobSpec(
        name=name,
        steps=tuple(steps or [Step(name="noop", run="true")]),
        matrix=MappingProxyType(matrix or {}),
        **kwargs,
    )


def test_expand_is_row_major_cross_product():
    identities = expand({"os": ["linux", "mac"], "rust": ["stable", "beta", "nightly"]})

    assert len(identities) == 6
    assert identities[0] == (("os", "linux"), ("rust", "stable"))
    assert identities[2] == (("os", "linux"), ("rust", "nightly"))
    assert identities[3] == (("os", "mac"), ("rust", "stable"))
    assert len(set(identities)) == 6


def test_expand_without_axes_yields_one_empty_identity():
    assert expand({}) == [()]


def test_empty_axis_is_rejected():
    with pytest.raises(ConfigurationError, match="rust"):
        expand({"rust": []}, job="build")


def test_duplicate_values_are_rejected():
    with pytest.raises(ConfigurationError, match="repeats"):
        expand({"rust": ["stable", "stable"]})


def test_expansion_is_deterministic():
    axes = {"a": [1, 2], "b": [True, False]}
    assert expand(axes) == expand(axes)


def test_matrix_helper_builds_per_combination():
    names = Matrix({"rust": ["stable", "beta"]}).jobs(lambda m: f"build-{m['rust']}")
    assert names == ["build-stable", "build-beta"]


def test_render_substitutes_matrix_values():
    identity = (("rust", "beta"), ("debug", True))
    text = "rustup default ${{ matrix.rust }} --verbose=${{matrix.debug}}"
    assert render(text, identity) == "rustup default beta --verbose=true"


def test_render_rejects_unknown_axis():
    with pytest.raises(ConfigurationError, match="toolchain"):
        render("echo ${{ matrix.toolchain }}", (("rust", "stable"),), job="build")


def test_expand_job_renders_steps_and_merges_env():
    spec = _spec(
        display_name="Multiple toolchain tasks",
        matrix={"rust": ("stable", "beta")},
        steps=[
            Step(name="Install ${{ matrix.rust }} toolchain", run="rustup default ${{ matrix.rust }}"),
            Step(name="Docs", run="cargo doc", env=frozen_env({"RUSTDOCFLAGS": "-D warnings"})),
        ],
        env=frozen_env({"CHANNEL": "${{ matrix.rust }}"}),
    )

    jobs = expand_job(spec, {"RUSTFLAGS": "--deny warnings"})

    assert [j.id for j in jobs] == ["build (stable)", "build (beta)"]
    assert jobs[1].label == "Multiple toolchain tasks (beta)"
    beta = jobs[1]
    assert beta.steps[0].name == "Install beta toolchain"
    assert beta.steps[0].run == "rustup default beta"
    assert beta.steps[1].env["RUSTDOCFLAGS"] == "-D warnings"
    assert beta.env == {"RUSTFLAGS": "--deny warnings", "CHANNEL": "beta"}
    assert beta.matrix == {"rust": "beta"}


def test_expand_job_parses_fuzz_args_per_combination():
    spec = _spec(
        name="fuzz",
        matrix={"fuzzer": ("--fuzz-dir=keyvalues-parser/fuzz parse", "--fuzz-dir=keyvalues-serde/fuzz serde")},
        fuzz_args="${{ matrix.fuzzer }}",
    )

    jobs = expand_job(spec, {})

    assert [(j.fuzz.target, j.fuzz.fuzz_dir) for j in jobs] == [
        ("parse", "keyvalues-parser/fuzz"),
        ("serde", "keyvalues-serde/fuzz"),
    ]
    assert jobs[0].fuzz.max_total_time == 120


def test_specs_expand_independently():
    definition = WorkflowDefinition(
        name="ci",
        jobs={
            "a": _spec("a", matrix={"x": (1, 2)}),
            "b": _spec("b", matrix={"y": ("p", "q", "r")}),
        },
    )
    assert len(expand_workflow(definition)) == 5


def test_jobs_sharing_a_display_name_keep_distinct_ids():
    definition = WorkflowDefinition(
        name="ci",
        jobs={
            "lint": _spec("lint", display_name="Check"),
            "docs": _spec("docs", display_name="Check", matrix={"rust": ("stable",)}),
        },
    )

    jobs = expand_workflow(definition)

    assert [j.id for j in jobs] == ["lint", "docs (stable)"]
    assert [j.label for j in jobs] == ["Check", "Check (stable)"]


def test_values_that_print_alike_are_rejected_as_duplicate_ids():
    definition = WorkflowDefinition(name="ci", jobs={"a": _spec("a", matrix={"n": (1, "1")})})
    with pytest.raises(ConfigurationError, match="Duplicate"):
        expand_workflow(definition)
