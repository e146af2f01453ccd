# step_workflows/toolchain.py
from __future__ import annotations

from typing import Sequence

from ..model import Step


# ---------------------------------------------------------------------
# Toolchain install step helper
# ---------------------------------------------------------------------

def toolchain_step(
    channel: str,
    *,
    components: Sequence[str] = (),
    profile: str = "minimal",
    name: str | None = None,
) -> Step:
    """
    Install a Rust toolchain and make it the default.

    The step is infrastructure: a failure here is reported as an
    infrastructure failure, not as a test/lint failure.
    """
    install = f"rustup toolchain install {channel} --profile {profile}"
    if components:
        install += f" --component {','.join(components)}"
    return Step(
        name=name or f"Install {channel} toolchain",
        run=f"{install}\nrustup default {channel}",
        kind="toolchain",
    )
