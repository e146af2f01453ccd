# context.py
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .cache import CacheStore
from .model import Job, frozen_env
from .settings import EngineSettings
from .ui.console import Console, get_console


@dataclass(frozen=True)
class RunContext:
    """
    Everything a job needs from the run, passed explicitly into every job
    and step invocation. `env` is the workflow's global, read-only env.
    """
    repo_root: Path
    settings: EngineSettings = field(default_factory=EngineSettings)
    env: Mapping[str, str] = field(default_factory=frozen_env)
    cache: Optional[CacheStore] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    console: Console = field(default_factory=get_console)

    @property
    def artifacts_root(self) -> Path:
        p = Path(self.settings.artifacts_dir)
        return p if p.is_absolute() else self.repo_root / p

    def artifacts_dir_for(self, job: Job) -> Path:
        return self.artifacts_root / slugify(job.id)

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


def slugify(text: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", text).strip("-")
    return slug or "job"
