from __future__ import annotations

import pytest

from matrixci import build, checkout, job, matrix, on_pull_request, on_push, on_schedule, sh, uses, wf
from matrixci.matrix import expand_workflow
from matrixci.model import FuzzCampaignSpec
from matrixci.step_workflows.cargo import cargo_gates
from matrixci.step_workflows.toolchain import toolchain_step


def test_job_collects_positional_and_listed_steps():
    spec = job("test", sh("B", "b"), steps_list=[sh("A", "a")], cwd="crate")

    assert [s.name for s in spec.steps] == ["A", "B"]
    assert all(s.cwd == "crate" for s in spec.steps)


def test_job_without_work_is_rejected():
    with pytest.raises(ValueError):
        job("empty")


def test_list_command_is_kept_as_tokens():
    step = sh("Tokens", ["cargo", "test", "--all-features"])
    assert step.run == ("cargo", "test", "--all-features")
    assert step.display_cmd == "cargo test --all-features"


def test_uses_maps_underscores_to_dashes():
    step = uses("cache", key_axes=["rust"], key_files="Cargo.lock")
    assert step.kind == "cache"
    assert dict(step.with_) == {"key-axes": ["rust"], "key-files": "Cargo.lock"}


def test_wf_rejects_duplicate_job_names():
    with pytest.raises(ValueError):
        wf("ci", job("a", sh("A", "true")), job("a", sh("A", "true")))


def test_builder_produces_the_same_spec_as_job():
    built = build("test").depends_on("lint").with_env(LEVEL=2).define_step("Test", "cargo test").build()

    assert built.needs == ("lint",)
    assert dict(built.env) == {"LEVEL": "2"}
    assert built.steps[0].run == "cargo test"


def test_builder_forwards_title_and_strategy():
    built = (
        build("toolchains")
        .titled("Multiple toolchain tasks")
        .with_matrix("rust", ["stable", "beta"])
        .strategy(fail_fast=True, max_parallel=1)
        .define_step("Test", "cargo test")
        .build()
    )

    assert built.display_name == "Multiple toolchain tasks"
    assert built.fail_fast is True
    assert built.max_parallel == 1
    assert built == job(
        "toolchains",
        sh("Test", "cargo test"),
        display_name="Multiple toolchain tasks",
        matrix={"rust": ["stable", "beta"]},
        fail_fast=True,
        max_parallel=1,
    )


def test_on_pull_request_accepts_branch_filters():
    assert on_pull_request("main", "release/**").branches == ("main", "release/**")
    assert on_pull_request().branches == ()


def test_fuzz_args_form_expands_per_matrix_value():
    spec = job(
        "fuzz",
        checkout(),
        matrix=matrix("fuzzer", ["--fuzz-dir=a/fuzz parse", "--fuzz-dir=b/fuzz serde"]),
        fuzz="${{ matrix.fuzzer }}",
    )
    jobs = expand_workflow(wf("ci", spec, triggers=[on_push("main"), on_schedule("0 0 1 * *")]))

    assert [(j.fuzz.target, j.fuzz.fuzz_dir) for j in jobs] == [("parse", "a/fuzz"), ("serde", "b/fuzz")]


def test_explicit_campaign_spec_is_templated():
    spec = job(
        "fuzz",
        matrix={"target": ["parse"]},
        fuzz=FuzzCampaignSpec(target="${{ matrix.target }}", max_total_time=10),
    )
    (only,) = expand_workflow(wf("ci", spec))
    assert only.fuzz.target == "parse"
    assert only.fuzz.max_total_time == 10


def test_toolchain_step_is_infrastructure():
    step = toolchain_step("nightly", components=["miri"])

    assert step.kind == "toolchain"
    assert step.name == "Install nightly toolchain"
    assert step.run.splitlines() == [
        "rustup toolchain install nightly --profile minimal --component miri",
        "rustup default nightly",
    ]


def test_cargo_gates_order():
    steps = cargo_gates()

    assert [s.name for s in steps] == [
        "Install ${{ matrix.rust }} toolchain",
        "Cache",
        "Check formatting",
        "Build all targets",
        "Run the test suite",
        "Check clippy lints",
        "Check docs",
    ]
    assert dict(steps[-1].env) == {"RUSTDOCFLAGS": "-D warnings"}
    assert "cargo bench -- --test" in steps[4].run


def test_cargo_gates_without_cache():
    assert "Cache" not in [s.name for s in cargo_gates("stable", cache=False)]
