# cache.py
from __future__ import annotations

import hashlib
import json
import os
import re
import subprocess
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .model import Job

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed cache shared by all jobs of a run:
#   cache_key = "<prefix>-<spec>-<axis values>-" + hash(
#       format version,
#       job spec name + platform,
#       selected matrix axes (all by default: toolchains never share),
#       CARGO*/RUST* env (flags change compiled artifacts),
#       optional tool versions,
#       contents of lockfiles/manifests (globs),
#   )
#
# Blob: a tar.gz of the cached directories. Entries are never modified in
# place: writers build a private temp file and os.replace() it, so two
# jobs racing on one key resolve as last-writer-wins.
#
# Layout:
#   root/
#     <key>.tar.gz
#     <key>.manifest.json
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_KEY_FILES = ["**/Cargo.lock", "**/Cargo.toml", "rust-toolchain", "rust-toolchain.toml"]
DEFAULT_CACHE_PATHS = ["target", "~/.cargo/registry/index", "~/.cargo/registry/cache", "~/.cargo/git/db"]
DEFAULT_CACHE_EXCLUDES = [
    ".git/*",
    ".matrixci/*",
    "*/incremental/*",
    "*.DS_Store",
]
KEY_ENV_PREFIXES = ("CARGO", "RUST", "CC", "CFLAGS", "CXX")
_FORMAT_VERSION = 1


@dataclass(frozen=True)
class CacheEntry:
    key: str
    path: Path
    created_at: float
    size: int
    manifest: Dict = field(default_factory=dict)


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: Sequence[str]) -> bool:
    return any(fnmatch(rel, g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand key file patterns into concrete files.
    Supports:
      - file path: "Cargo.lock"
      - glob:      "**/Cargo.lock"
    Skips anything under excluded directories (e.g. target/).
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.is_file():
            out.append(p)
            continue
        out.extend(m for m in sorted(repo_root.glob(pat)) if m.is_file())

    seen = set()
    uniq: List[Path] = []
    for p in out:
        rel = _relpath(p, repo_root)
        if rel in seen or rel.startswith("target/") or "/target/" in rel:
            continue
        seen.add(rel)
        uniq.append(p)
    return uniq


def fingerprint_files(repo_root: str | Path, patterns: Sequence[str]) -> Tuple[str, Dict]:
    """Hash the lockfile/manifest set deterministically (paths + contents)."""
    root = Path(repo_root).resolve()
    file_fps = sorted(
        (_relpath(p, root), _hash_file_contents(p)) for p in _resolve_globs(root, patterns)
    )
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def _tool_version(tool: str) -> Optional[str]:
    """
    Best-effort version discovery. Keep it simple and stable.
    """
    try:
        completed = subprocess.run([tool, "--version"], text=True, capture_output=True, check=False)
    except OSError:
        return None
    text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
    if completed.returncode == 0 and text:
        # Normalize whitespace to make hashing stable
        return " ".join(text.split())
    return None


def compute_cache_key(
    job: Job,
    *,
    repo_root: str | Path = ".",
    key_files: Optional[Sequence[str]] = None,
    key_axes: Optional[Sequence[str]] = None,
    tools: Optional[Sequence[str]] = None,
    prefix: str = "v0-rust",
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest_bits). Same inputs -> same key.
    """
    files_hash, files_manifest = fingerprint_files(
        repo_root, list(key_files) if key_files is not None else DEFAULT_KEY_FILES
    )

    matrix = job.matrix
    if key_axes is not None:
        matrix = {k: v for k, v in matrix.items() if k in key_axes}

    env = {k: v for k, v in job.env.items() if k.startswith(KEY_ENV_PREFIXES)}

    payload = {
        "v": _FORMAT_VERSION,  # bump this if you change hashing format
        "job": job.spec_name,
        "runs_on": job.runs_on,
        "matrix": {k: str(v) for k, v in matrix.items()},
        "env": env,
        "toolchain": job.fuzz.toolchain if job.fuzz is not None else None,
        "tool_versions": {t: _tool_version(t) for t in (tools or [])},
        "files_hash": files_hash,
    }

    key = cache_scope(job, key_axes=key_axes, prefix=prefix) + _sha256_str(_json_dumps_stable(payload))[:40]
    manifest = {
        "key": key,
        "payload": payload,
        "files": files_manifest,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _key_part(value) -> str:
    return re.sub(r"[^A-Za-z0-9._]+", "_", str(value)).strip("_") or "_"


def cache_scope(job: Job, *, key_axes: Optional[Sequence[str]] = None, prefix: str = "v0-rust") -> str:
    """Key prefix shared by every generation of one job's cache (what prune() groups by)."""
    matrix = job.matrix
    if key_axes is not None:
        matrix = {k: v for k, v in matrix.items() if k in key_axes}
    parts = [_key_part(job.spec_name), *(_key_part(v) for v in matrix.values())]
    return f"{prefix}-{'-'.join(parts)}-"


def _check_key(key: str) -> None:
    if not key or "/" in key or "\\" in key or key.startswith("."):
        raise ValueError(f"Invalid cache key: {key!r}")


def _expand(path: str, root: Path) -> Path:
    p = Path(path).expanduser()
    return p if p.is_absolute() else root / p


def _tar_add_path(
    tar: tarfile.TarFile,
    index: int,
    src: Path,
    *,
    exclude_globs: Sequence[str],
) -> None:
    """
    Add src (file/dir) into tar. Directories go under "d<index>/",
    single files under "f<index>/", so restore can map them back onto the
    same path list without a side manifest.
    """
    if not src.exists():
        return

    if src.is_file():
        tar.add(str(src), arcname=f"f{index}/{src.name}", recursive=False)
        return

    for f in _iter_files_under(src):
        rel = f.relative_to(src).as_posix()
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=f"d{index}/{rel}", recursive=False)


def _member_target(name: str, bases: List[Path]) -> Optional[Path]:
    head, _, rest = name.partition("/")
    if not rest or len(head) < 2 or head[0] not in "df" or not head[1:].isdigit():
        return None
    idx = int(head[1:])
    if idx >= len(bases):
        return None
    base = bases[idx] if head[0] == "d" else bases[idx].parent
    target = (base / rest).resolve()
    # never write outside the cached path
    if base.resolve() not in target.parents:
        return None
    return target


class CacheStore:
    """
    File-based content-addressed store.

    restore() is a pure lookup; save() is idempotent for identical
    content and atomic per key.
    """

    _locks: Dict[Path, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        _check_key(key)
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        _check_key(key)
        return self.root / f"{key}.manifest.json"

    def _key_lock(self, key: str) -> threading.Lock:
        # archive and manifest of one key are published together
        path = self.artifact_path(key)
        with CacheStore._locks_guard:
            return CacheStore._locks.setdefault(path, threading.Lock())

    def _atomic_write(self, target: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(self.root), prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, target)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def _write_manifest(self, key: str, manifest: Optional[Dict], size: int) -> Dict:
        stored = dict(manifest or {})
        stored.update({"key": key, "size": size, "created_at": time.time()})
        self._atomic_write(
            self.manifest_path(key),
            json.dumps(stored, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8"),
        )
        return stored

    # -----------------------------------------------------------------
    # Blob API
    # -----------------------------------------------------------------

    def restore(self, key: str) -> Optional[bytes]:
        """Blob for `key`, or None on a miss. No side effects."""
        art = self.artifact_path(key)
        try:
            return art.read_bytes()
        except FileNotFoundError:
            return None

    def save(self, key: str, blob: bytes, manifest: Optional[Dict] = None) -> CacheEntry:
        art = self.artifact_path(key)
        with self._key_lock(key):
            self._atomic_write(art, blob)
            stored = self._write_manifest(key, manifest, len(blob))
        return CacheEntry(key=key, path=art, created_at=stored["created_at"], size=len(blob), manifest=stored)

    def contains(self, key: str) -> bool:
        return self.artifact_path(key).exists()

    # -----------------------------------------------------------------
    # Directory API (what jobs actually use)
    # -----------------------------------------------------------------

    def save_paths(
        self,
        key: str,
        paths: Sequence[str],
        *,
        repo_root: str | Path = ".",
        manifest: Optional[Dict] = None,
        excludes: Optional[Sequence[str]] = None,
    ) -> CacheEntry:
        """
        Archive `paths` (relative to repo_root, or absolute / ~) under `key`.
        """
        root = Path(repo_root).resolve()
        art = self.artifact_path(key)
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

        fd, tmp = tempfile.mkstemp(dir=str(self.root), prefix=f".{art.name}.", suffix=".tmp")
        os.close(fd)
        try:
            with tarfile.open(tmp, mode="w:gz") as tar:
                for i, entry in enumerate(paths):
                    _tar_add_path(tar, i, _expand(entry, root), exclude_globs=exclude_globs)
            size = os.path.getsize(tmp)
            stored = dict(manifest or {})
            stored["paths"] = list(paths)
            with self._key_lock(key):
                os.replace(tmp, art)
                stored = self._write_manifest(key, stored, size)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        return CacheEntry(key=key, path=art, created_at=stored["created_at"], size=size, manifest=stored)

    def restore_paths(self, key: str, paths: Sequence[str], *, repo_root: str | Path = ".") -> bool:
        """
        Extract the archive for `key` back onto `paths`. False on a miss.
        Restore is "overwrite by extraction"; nothing is deleted first.
        """
        art = self.artifact_path(key)
        if not art.exists():
            return False
        root = Path(repo_root).resolve()
        bases = [_expand(p, root) for p in paths]

        with tarfile.open(str(art), mode="r:gz") as tar:
            for member in tar:
                target = _member_target(member.name, bases)
                if target is None:
                    continue
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src, target.open("wb") as out:
                    while True:
                        chunk = src.read(1024 * 1024)
                        if not chunk:
                            break
                        out.write(chunk)
                os.chmod(target, member.mode & 0o777)
        return True

    # -----------------------------------------------------------------
    # Housekeeping
    # -----------------------------------------------------------------

    def entries(self, prefix: str = "") -> List[CacheEntry]:
        out: List[CacheEntry] = []
        for art in sorted(self.root.glob(f"{prefix}*.tar.gz")):
            key = art.name[: -len(".tar.gz")]
            try:
                manifest = json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
            except (OSError, ValueError):
                manifest = {}
            stat = art.stat()
            out.append(
                CacheEntry(
                    key=key,
                    path=art,
                    created_at=float(manifest.get("created_at", stat.st_mtime)),
                    size=stat.st_size,
                    manifest=manifest,
                )
            )
        return out

    def prune(self, prefix: str = "", keep: int = 3) -> List[str]:
        """
        Keep only the newest N entries whose key starts with `prefix`.
        Returns the removed keys.
        """
        entries = sorted(self.entries(prefix), key=lambda e: e.created_at, reverse=True)
        removed: List[str] = []
        for e in entries[keep:]:
            e.path.unlink(missing_ok=True)
            self.manifest_path(e.key).unlink(missing_ok=True)
            removed.append(e.key)
        return removed
