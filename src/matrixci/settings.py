# settings.py
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, replace
from typing import Tuple

DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_ARTIFACTS_DIR = ".matrixci/artifacts"
DEFAULT_SHELL = "bash --noprofile --norc -eo pipefail -c"


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class EngineSettings:
    """Engine-wide knobs. CLI options override the environment."""
    cache_dir: str = DEFAULT_CACHE_DIR
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR
    workers: int | None = None
    shell: Tuple[str, ...] = tuple(shlex.split(DEFAULT_SHELL))
    output_tail: int = 4000
    cache_keep: int = 3

    @classmethod
    def from_env(cls) -> EngineSettings:
        workers = os.environ.get("MATRIXCI_WORKERS")
        return cls(
            cache_dir=os.environ.get("MATRIXCI_CACHE_DIR", DEFAULT_CACHE_DIR),
            artifacts_dir=os.environ.get("MATRIXCI_ARTIFACTS_DIR", DEFAULT_ARTIFACTS_DIR),
            workers=int(workers) if workers else None,
            shell=tuple(shlex.split(os.environ.get("MATRIXCI_SHELL", DEFAULT_SHELL))),
            output_tail=int(os.environ.get("MATRIXCI_OUTPUT_TAIL", "4000")),
            cache_keep=int(os.environ.get("MATRIXCI_CACHE_KEEP", "3")),
        )

    def override(self, **changes) -> EngineSettings:
        """Return a copy with every non-None change applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def max_workers(self) -> int:
        return self.workers if self.workers else default_workers()
