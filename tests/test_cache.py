from __future__ import annotations

import os
import time

from actionflow.cache import CacheStore, hash_files, parse_paths


def _populate(ws):
    (ws / "node_modules" / "pkg").mkdir(parents=True)
    (ws / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1")
    (ws / "node_modules" / "pkg" / "__pycache__").mkdir()
    (ws / "node_modules" / "pkg" / "__pycache__" / "x.pyc").write_bytes(b"\0")


def test_save_and_restore_exact_key(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    _populate(ws)
    store = CacheStore(tmp_path / "cache")

    manifest = store.save("deps-abc", ["node_modules"], workspace=ws)
    assert manifest["files"] == ["ws/node_modules/pkg/index.js"]

    (ws / "node_modules" / "pkg" / "index.js").unlink()
    hit = store.restore("deps-abc", workspace=ws)
    assert hit.hit is True
    assert hit.matched_key == "deps-abc"
    assert (ws / "node_modules" / "pkg" / "index.js").read_text() == "module.exports = 1"


def test_restore_keys_pick_newest_prefix_match(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "f.txt").write_text("old")
    store = CacheStore(tmp_path / "cache")
    store.save("deps-1", ["f.txt"], workspace=ws)
    time.sleep(0.01)
    (ws / "f.txt").write_text("new")
    store.save("deps-2", ["f.txt"], workspace=ws)

    (ws / "f.txt").unlink()
    hit = store.restore("deps-3", ["deps-"], workspace=ws)
    assert hit.hit is False
    assert hit.matched_key == "deps-2"
    assert (ws / "f.txt").read_text() == "new"


def test_miss(tmp_path):
    store = CacheStore(tmp_path / "cache")
    hit = store.restore("nothing", ["no-"], workspace=tmp_path)
    assert (hit.hit, hit.matched_key, hit.reason) == (False, "", "cache miss")


def test_prune_keeps_newest(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "f").write_text("x")
    store = CacheStore(tmp_path / "cache")
    for n in range(4):
        store.save(f"k{n}", ["f"], workspace=ws)
        time.sleep(0.01)
    removed = store.prune(keep=2)
    assert sorted(removed) == ["k0", "k1"]
    assert store.lookup("k3") == "k3"
    assert store.lookup("k0") is None


def test_paths_outside_workspace_round_trip(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    outside = tmp_path / "home" / ".npm"
    outside.mkdir(parents=True)
    (outside / "cache.bin").write_text("data")
    store = CacheStore(tmp_path / "cache")
    store.save("k", [str(outside)], workspace=ws)
    os.remove(outside / "cache.bin")
    assert store.restore("k", workspace=ws).hit
    assert (outside / "cache.bin").read_text() == "data"


def test_hash_files(tmp_path):
    (tmp_path / "a.txt").write_text("a")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.txt").write_text("b")
    all_files = hash_files(tmp_path, ["**/*.txt"])
    only_a = hash_files(tmp_path, ["**/*.txt", "!sub/*.txt"])
    assert all_files and only_a and all_files != only_a
    assert hash_files(tmp_path, ["a.txt"]) == only_a
    assert hash_files(tmp_path, ["*.none"]) == ""


def test_parse_paths():
    assert parse_paths("a\n\n  b  \n") == ["a", "b"]
    assert parse_paths("") == []
