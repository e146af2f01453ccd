# step_workflows/cargo.py
from __future__ import annotations

from typing import List, Sequence

from ..dsl import cache_step, sh
from ..model import Step
from .toolchain import toolchain_step


# ---------------------------------------------------------------------
# Standard gates for a non-fuzz Rust job
# ---------------------------------------------------------------------

def cargo_gates(
    channel: str = "${{ matrix.rust }}",
    *,
    components: Sequence[str] = ("clippy", "rustfmt"),
    cache: bool = True,
    cwd: str | None = None,
) -> List[Step]:
    """
    The ordered gate sequence:

      install toolchain -> cache -> fmt -> build -> test + bench check
      -> clippy -> docs

    Any failing gate stops the job. Docs are built with warnings denied.
    """
    steps: List[Step] = [toolchain_step(channel, components=components)]
    if cache:
        steps.append(cache_step())
    steps.extend(
        [
            sh("Check formatting", "cargo fmt --all -- --check", cwd=cwd),
            # --all-targets so benches and examples still compile
            sh("Build all targets", "cargo build --all-targets --all-features", cwd=cwd),
            sh("Run the test suite", "cargo test --all-features\ncargo bench -- --test", cwd=cwd),
            sh("Check clippy lints", "cargo clippy", cwd=cwd),
            sh("Check docs", "cargo doc", cwd=cwd, env={"RUSTDOCFLAGS": "-D warnings"}),
        ]
    )
    return steps
