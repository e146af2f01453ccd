# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-job diagnostics in RunResult
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(ValueError):
    """Malformed workflow definition. Fatal: the run never starts."""


@dataclass(eq=False)
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class InfrastructureError(CIError):
    """Toolchain install or tool invocation failure (not a test/lint failure)."""

    def __init__(self, job: str, message: str, *, step: str | None = None, **details) -> None:
        super().__init__(kind="infrastructure", job=job, step=step, message=message, details=details)


class FuzzFinding(CIError):
    """A crash or hang discovered by a fuzz campaign."""

    def __init__(self, job: str, message: str, *, artifacts: List[str] | None = None) -> None:
        super().__init__(
            kind="fuzz_finding",
            job=job,
            step=None,
            message=message,
            details={"artifacts": list(artifacts or [])},
        )

    @property
    def artifacts(self) -> List[str]:
        return self.details["artifacts"]


TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo-fuzz": "Install cargo-fuzz: cargo install cargo-fuzz",
    "bash": "Install bash or set MATRIXCI_SHELL to another shell.",
    "git": "Install Git or pass --branch explicitly.",
}
