from __future__ import annotations

import io
import sys
import textwrap
from pathlib import Path

import pytest

from matrixci.context import RunContext
from matrixci.settings import EngineSettings
from matrixci.ui.console import Console, set_console

ROOT = Path(__file__).resolve().parents[1]
PY = sys.executable


@pytest.fixture
def console() -> Console:
    c = Console(stream=io.StringIO(), err_stream=io.StringIO())
    set_console(c)
    return c


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    # plain sh keeps the tests independent of bash being installed
    return EngineSettings(
        cache_dir=str(tmp_path / "cache"),
        artifacts_dir=str(tmp_path / "artifacts"),
        workers=4,
        shell=("sh", "-c"),
    )


@pytest.fixture
def make_ctx(tmp_path: Path, settings: EngineSettings, console: Console):
    def _make(**kwargs) -> RunContext:
        kwargs.setdefault("repo_root", tmp_path)
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("console", console)
        return RunContext(**kwargs)

    return _make


@pytest.fixture
def write_script(tmp_path: Path):
    """Write a small Python program and return its path."""

    def _write(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path

    return _write
