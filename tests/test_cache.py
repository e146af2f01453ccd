from __future__ import annotations

import threading
from pathlib import Path

import pytest

from matrixci.cache import CacheStore, cache_scope, compute_cache_key
from matrixci.model import Job, Step, frozen_env


def _job(spec="multiple_toolchains", **matrix) -> Job:
    return Job(
        spec_name=spec,
        steps=(Step(name="noop", run="true"),),
        identity=tuple(matrix.items()),
        env=frozen_env({"RUSTFLAGS": "--deny warnings", "HOME_DIR": "/ignored"}),
    )


def test_restore_miss_returns_none(tmp_path):
    store = CacheStore(tmp_path / "cache")
    assert store.restore("v0-rust-missing-abc") is None


def test_save_then_restore_returns_blob(tmp_path):
    store = CacheStore(tmp_path / "cache")
    entry = store.save("v0-rust-build-abc", b"compiled", manifest={"note": "x"})

    assert store.contains("v0-rust-build-abc")
    assert store.restore("v0-rust-build-abc") == b"compiled"
    assert entry.size == len(b"compiled")
    assert entry.manifest["note"] == "x"


def test_repeated_identical_saves_keep_the_same_content(tmp_path):
    store = CacheStore(tmp_path / "cache")
    store.save("k1", b"same")
    store.save("k1", b"same")

    assert store.restore("k1") == b"same"
    assert [e.key for e in store.entries()] == ["k1"]
    # no temp files left behind
    assert not list((tmp_path / "cache").glob(".*.tmp"))


@pytest.mark.parametrize("key", ["", "../escape", "a/b", ".hidden"])
def test_keys_with_path_separators_are_rejected(tmp_path, key):
    store = CacheStore(tmp_path / "cache")
    with pytest.raises(ValueError):
        store.save(key, b"x")


def test_prune_keeps_newest_entries(tmp_path):
    store = CacheStore(tmp_path / "cache")
    for i in range(4):
        store.save(f"v0-rust-build-{i}", b"x")
    store.save("other-key", b"x")

    removed = store.prune("v0-rust-build-", keep=2)

    assert len(removed) == 2
    remaining = {e.key for e in store.entries()}
    assert "v0-rust-build-3" in remaining
    assert "other-key" in remaining
    assert len(remaining) == 3


def test_save_and_restore_directories(tmp_path):
    repo = tmp_path / "repo"
    (repo / "target" / "debug").mkdir(parents=True)
    (repo / "target" / "debug" / "app").write_bytes(b"\x7fELF")
    (repo / "target" / "debug" / "incremental").mkdir()
    (repo / "target" / "debug" / "incremental" / "junk").write_text("skip me")
    (repo / "Cargo.lock").write_text("lock")

    store = CacheStore(tmp_path / "cache")
    store.save_paths("k-dirs", ["target", "Cargo.lock"], repo_root=repo)

    other = tmp_path / "fresh"
    other.mkdir()
    assert store.restore_paths("k-dirs", ["target", "Cargo.lock"], repo_root=other)
    assert (other / "target" / "debug" / "app").read_bytes() == b"\x7fELF"
    assert (other / "Cargo.lock").read_text() == "lock"
    assert not (other / "target" / "debug" / "incremental" / "junk").exists()


def test_restore_paths_miss(tmp_path):
    store = CacheStore(tmp_path / "cache")
    assert store.restore_paths("k-none", ["target"], repo_root=tmp_path) is False


def test_cache_key_is_stable_and_depends_on_toolchain(tmp_path):
    (tmp_path / "Cargo.lock").write_text("v1")

    stable1, _ = compute_cache_key(_job(rust="stable"), repo_root=tmp_path)
    stable2, _ = compute_cache_key(_job(rust="stable"), repo_root=tmp_path)
    beta, _ = compute_cache_key(_job(rust="beta"), repo_root=tmp_path)

    assert stable1 == stable2
    assert stable1 != beta
    assert stable1.startswith("v0-rust-multiple_toolchains-stable-")


def test_cache_key_follows_lockfile_contents(tmp_path):
    lock = tmp_path / "Cargo.lock"
    lock.write_text("v1")
    before, manifest = compute_cache_key(_job(rust="stable"), repo_root=tmp_path)
    lock.write_text("v2")
    after, _ = compute_cache_key(_job(rust="stable"), repo_root=tmp_path)

    assert before != after
    assert manifest["files"]["files"][0][0] == "Cargo.lock"


def test_key_axes_limit_what_distinguishes_jobs(tmp_path):
    a, _ = compute_cache_key(_job("fuzz", fuzzer="parse"), repo_root=tmp_path, key_axes=[])
    b, _ = compute_cache_key(_job("fuzz", fuzzer="serde"), repo_root=tmp_path, key_axes=[])
    assert a == b


def test_cache_scope_is_a_prefix_of_the_key(tmp_path):
    job = _job(rust="beta")
    key, _ = compute_cache_key(job, repo_root=tmp_path)
    assert key.startswith(cache_scope(job))
    assert "/" not in key


def test_concurrent_saves_to_one_key_leave_one_intact_blob(tmp_path):
    store = CacheStore(tmp_path / "cache")
    blobs = [bytes([i]) * 200_000 for i in range(8)]
    start = threading.Barrier(len(blobs))

    def writer(blob):
        start.wait()
        store.save("k", blob)

    threads = [threading.Thread(target=writer, args=(b,)) for b in blobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.restore("k") in blobs
    assert [e.key for e in store.entries()] == ["k"]
    assert not list(store.root.glob(".*.tmp"))


def test_concurrent_path_saves_keep_archive_and_manifest_together(tmp_path):
    store = CacheStore(tmp_path / "cache")
    writers = 6
    start = threading.Barrier(writers)

    def writer(i):
        root = tmp_path / f"ws{i}"
        (root / "target").mkdir(parents=True)
        (root / "target" / "marker").write_text(str(i))
        start.wait()
        store.save_paths("v0-rust-build-k", ["target"], repo_root=root, manifest={"writer": i})

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    (entry,) = store.entries()
    out = tmp_path / "restored"
    out.mkdir()
    assert store.restore_paths("v0-rust-build-k", ["target"], repo_root=out)
    assert (out / "target" / "marker").read_text() == str(entry.manifest["writer"])
