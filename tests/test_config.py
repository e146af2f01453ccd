from __future__ import annotations

import pytest

from matrixci.config import load_workflow, parse_workflow
from matrixci.errors import ConfigurationError
from matrixci.matrix import expand_workflow
from matrixci.model import Event, PullRequestTrigger, PushTrigger, ScheduleTrigger
from matrixci.triggers import should_run

from conftest import ROOT


def _workflow(**jobs):
    return {"name": "t", "on": {"push": None}, "jobs": jobs}


def test_bundled_workflow_loads():
    definition = load_workflow(ROOT / "matrixci.yml")

    assert definition.name == "Build, Test, Format, and Lint"
    assert definition.triggers == (
        PushTrigger(branches=("main",)),
        PullRequestTrigger(),
        ScheduleTrigger(cron="0 0 1 * *"),
    )
    assert dict(definition.env) == {"CARGO_TERM_COLOR": "always", "RUSTFLAGS": "--deny warnings"}

    toolchains = definition.jobs["multiple_toolchains"]
    assert toolchains.matrix["rust"] == ("stable", "beta")
    assert [s.kind for s in toolchains.steps] == [
        "checkout",
        "toolchain",
        "cache",
        "run",
        "run",
        "run",
        "run",
        "run",
    ]
    assert toolchains.steps[-1].name == "Check docs"
    assert dict(toolchains.steps[-1].env) == {"RUSTDOCFLAGS": "-D warnings"}


def test_bundled_workflow_expands_to_four_jobs():
    jobs = expand_workflow(load_workflow(ROOT / "matrixci.yml"))

    assert [j.id for j in jobs] == [
        "multiple_toolchains (stable)",
        "multiple_toolchains (beta)",
        "fuzz (--fuzz-dir=keyvalues-parser/fuzz parse)",
        "fuzz (--fuzz-dir=keyvalues-serde/fuzz serde)",
    ]
    assert jobs[1].steps[1].name == "Install beta toolchain"
    assert "rustup default beta" in jobs[1].steps[1].run

    fuzz = [j.fuzz for j in jobs[2:]]
    assert [(f.target, f.fuzz_dir) for f in fuzz] == [
        ("parse", "keyvalues-parser/fuzz"),
        ("serde", "keyvalues-serde/fuzz"),
    ]
    assert all(f.toolchain == "nightly-2025-01-01" and f.jobs == 4 for f in fuzz)
    assert fuzz[0].max_total_time == 120
    assert fuzz[0].timeout == 30


def test_yaml_on_key_read_as_boolean_is_accepted():
    data = {"name": "t", True: {"pull_request": None}, "jobs": {"a": {"steps": [{"run": "true"}]}}}
    assert parse_workflow(data).triggers == (PullRequestTrigger(),)


def test_pull_request_branch_filter_is_kept():
    data = {"on": {"pull_request": {"branches": ["release"]}}, "jobs": {"a": {"steps": [{"run": "true"}]}}}
    definition = parse_workflow(data)

    assert definition.triggers == (PullRequestTrigger(branches=("release",)),)
    assert not should_run(Event("pull_request", branch="feature"), definition.triggers)


def test_jobs_may_share_a_display_name():
    definition = parse_workflow(
        _workflow(
            lint={"name": "Check", "steps": [{"run": "cargo clippy"}]},
            docs={"name": "Check", "steps": [{"run": "cargo doc"}]},
        )
    )
    jobs = expand_workflow(definition)
    assert [(j.id, j.name) for j in jobs] == [("lint", "Check"), ("docs", "Check")]


def test_short_trigger_forms():
    data = {"on": ["push", "pull_request"], "jobs": {"a": {"steps": [{"run": "true"}]}}}
    assert parse_workflow(data).triggers == (PushTrigger(), PullRequestTrigger())


def test_env_scalars_become_strings():
    definition = parse_workflow(
        {"env": {"DEBUG": True, "JOBS": 4}, "jobs": {"a": {"steps": [{"run": "true"}]}}}
    )
    assert dict(definition.env) == {"DEBUG": "true", "JOBS": "4"}


def test_step_defaults():
    definition = parse_workflow(_workflow(a={"steps": [{"run": "cargo test\ncargo bench"}]}))
    step = definition.jobs["a"].steps[0]
    assert step.name == "Run cargo test"
    assert step.kind == "run"
    assert not step.continue_on_error


@pytest.mark.parametrize(
    "job, message",
    [
        ({"strategy": {"matrix": {"rust": []}}, "steps": [{"run": "true"}]}, "no values"),
        ({"strategy": {"matrix": {"rust": ["stable"]}}, "steps": [{"run": "echo ${{ matrix.os }}"}]}, "unknown matrix axis"),
        ({"step": [{"run": "true"}]}, "step"),
        ({"steps": [{"run": "true", "uses": "actions/checkout@v4"}]}, "exactly one"),
        ({"steps": [{"uses": "actions/setup-node@v4"}]}, "Unsupported action"),
        ({"needs": ["nope"], "steps": [{"run": "true"}]}, "missing job"),
        ({"steps": []}, "at least one step"),
        (
            {
                "strategy": {"matrix": {"f": ["--jobs=2 parse"]}},
                "steps": [{"run": "true"}],
                "fuzz": {"args": "${{ matrix.f }}"},
            },
            "Unsupported fuzz argument",
        ),
    ],
)
def test_invalid_jobs_are_rejected_before_running(job, message):
    with pytest.raises(ConfigurationError, match=message):
        parse_workflow(_workflow(a=job))


def test_invalid_cron_is_rejected():
    data = {"on": {"schedule": [{"cron": "61 * * * *"}]}, "jobs": {"a": {"steps": [{"run": "true"}]}}}
    with pytest.raises(ConfigurationError):
        parse_workflow(data)


def test_dependency_cycle_is_rejected():
    data = _workflow(
        a={"needs": "b", "steps": [{"run": "true"}]},
        b={"needs": ["a"], "steps": [{"run": "true"}]},
    )
    with pytest.raises(ConfigurationError, match="cycle"):
        parse_workflow(data)


def test_invalid_yaml_is_configuration_error(tmp_path):
    path = tmp_path / "broken.yml"
    path.write_text("jobs: [unclosed\n")
    with pytest.raises(ConfigurationError):
        load_workflow(path)


def test_unknown_suffix_is_rejected(tmp_path):
    path = tmp_path / "workflow.toml"
    path.write_text("")
    with pytest.raises(ConfigurationError):
        load_workflow(path)


def test_python_workflow_file(tmp_path):
    path = tmp_path / "ci_workflow.py"
    path.write_text(
        "from matrixci import wf, job, sh, on_push\n"
        "\n"
        "def workflow():\n"
        "    return wf(\n"
        "        'ci',\n"
        "        job('build', sh('Build ${{ matrix.rust }}', 'cargo build'), matrix={'rust': ['stable', 'beta']}),\n"
        "        job('deploy', sh('Deploy', 'true'), needs=['build']),\n"
        "        triggers=[on_push('main')],\n"
        "    )\n"
    )

    definition = load_workflow(path)

    assert list(definition.jobs) == ["build", "deploy"]
    assert definition.triggers == (PushTrigger(branches=("main",)),)
    assert [j.id for j in expand_workflow(definition)] == ["build (stable)", "build (beta)", "deploy"]


def test_python_workflow_constant(tmp_path):
    path = tmp_path / "const_workflow.py"
    path.write_text("from matrixci import wf, job, sh\nWORKFLOW = wf('ci', job('a', sh('A', 'true')))\n")
    assert load_workflow(path).name == "ci"


def test_python_file_without_workflow_is_rejected(tmp_path):
    path = tmp_path / "empty_workflow.py"
    path.write_text("X = 1\n")
    with pytest.raises(ConfigurationError):
        load_workflow(path)
