# cache.py
from __future__ import annotations

import hashlib
import json
import shutil
import tarfile
import time
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional

# ---------------------------------------------------------------------
# Key-addressed cache used by the `actions/cache` action:
#
#   root/
#     <sha256(key)>.tar.gz         the cached paths
#     <sha256(key)>.manifest.json  key, paths, file list, saved_at
#
# Paths inside the workspace are archived under "ws/<relpath>", paths
# outside it (e.g. ~/.npm) under "abs/<abs path>", so restore puts every
# file back where it came from.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".actionflow/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".actionflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool            # exact primary key restored
    key: str             # primary key asked for
    matched_key: str     # key actually restored ("" on miss)
    reason: str          # human readable
    manifest: Dict = field(default_factory=dict)


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    # fnmatch lets `*` cross "/", so ".git/**" covers the whole tree;
    # "**/x" must also match x at the top level
    return any(fnmatch(rel, g) or (g.startswith("**/") and fnmatch(rel, g[3:])) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns relative to root into existing files.
    Supports plain paths, directories (all files below) and globs with `**`.
    A leading `!` removes matches of earlier patterns.
    """
    out: Dict[str, Path] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        negate = pat.startswith("!")
        if negate:
            pat = pat[1:]

        direct = root / pat
        if direct.exists() and not any(c in pat for c in "*?["):
            matches = list(_iter_files_under(direct)) if direct.is_dir() else [direct]
        else:
            matches = [m for m in sorted(root.glob(pat)) if m.is_file()]

        for m in matches:
            key = str(m.resolve())
            if negate:
                out.pop(key, None)
            else:
                out.setdefault(key, m)
    return sorted(out.values(), key=lambda p: _relpath(p, root))


def hash_files(workspace: str | Path, patterns: List[str]) -> str:
    """
    `hashFiles()` expression function: one sha256 over the sha256 of every
    matched file, in path order. Empty string when nothing matches.
    """
    root = Path(workspace).resolve()
    files = [f for f in _resolve_globs(root, patterns)
             if not _matches_any_glob(_relpath(f, root), DEFAULT_CACHE_EXCLUDES)]
    if not files:
        return ""
    h = hashlib.sha256()
    for f in files:
        h.update(bytes.fromhex(_hash_file_contents(f)))
    return h.hexdigest()


def parse_paths(raw: str) -> List[str]:
    """`path:` input: one entry per line, blank lines ignored."""
    return [line.strip() for line in (raw or "").splitlines() if line.strip()]


def _arcname(path: Path, workspace: Path) -> str:
    try:
        return "ws/" + _relpath(path, workspace)
    except ValueError:
        return "abs/" + path.resolve().as_posix().lstrip("/")


def _target(arcname: str, workspace: Path) -> Optional[Path]:
    parts = PurePosixPath(arcname).parts
    if ".." in parts or len(parts) < 2:
        return None
    if parts[0] == "ws":
        return workspace.joinpath(*parts[1:])
    if parts[0] == "abs":
        return Path("/").joinpath(*parts[1:])
    return None


class CacheStore:
    """File-based key/value store of tar.gz artifacts."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.manifest.json"

    def _manifests(self) -> List[Dict]:
        """Stored manifests, newest first."""
        found = []
        for man in self.root.glob("*.manifest.json"):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            data["_mtime"] = man.stat().st_mtime
            found.append(data)
        found.sort(key=lambda m: (m.get("saved_at", 0), m["_mtime"]), reverse=True)
        return found

    def lookup(self, key: str, restore_keys: List[str] = ()) -> Optional[str]:
        """Exact key first, then the newest entry whose key starts with a restore key."""
        if self.artifact_path(key).exists() and self.manifest_path(key).exists():
            return key
        manifests = self._manifests()
        for prefix in restore_keys:
            for m in manifests:
                stored = m.get("key", "")
                if stored.startswith(prefix) and self.artifact_path(stored).exists():
                    return stored
        return None

    def restore(self, key: str, restore_keys: List[str] = (), *, workspace: str | Path = ".") -> CacheHit:
        """
        Restore the best matching artifact into place.

        NOTE: restore overwrites by extraction; it never deletes files.
        """
        ws = Path(workspace).resolve()
        matched = self.lookup(key, list(restore_keys))
        if matched is None:
            return CacheHit(hit=False, key=key, matched_key="", reason="cache miss")

        try:
            with tarfile.open(str(self.artifact_path(matched)), mode="r:gz") as tar:
                for member in tar.getmembers():
                    if not member.isfile():
                        continue
                    target = _target(member.name, ws)
                    if target is None:
                        continue
                    src = tar.extractfile(member)
                    if src is None:
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with src, target.open("wb") as dst:
                        shutil.copyfileobj(src, dst)
        except (OSError, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, matched_key="", reason=f"cache exists but restore failed: {e}")

        try:
            stored = json.loads(self.manifest_path(matched).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        exact = matched == key
        reason = "cache hit" if exact else f"restored from prefix match '{matched}'"
        return CacheHit(hit=exact, key=key, matched_key=matched, reason=reason, manifest=stored)

    def save(self, key: str, paths: List[str], *, workspace: str | Path = ".",
             excludes: Optional[List[str]] = None) -> Dict:
        """
        Archive paths under key and return the manifest.

        The tar is written to a temp file and renamed into place, so a
        concurrent reader never sees a partial artifact.
        """
        ws = Path(workspace).resolve()
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

        files: List[Path] = []
        for entry in paths:
            p = Path(entry).expanduser()
            src = p if p.is_absolute() else ws / p
            if src.is_file():
                files.append(src)
            elif src.is_dir():
                files.extend(_iter_files_under(src))
            else:
                files.extend(f for f in sorted(ws.glob(entry)) if f.is_file())

        art = self.artifact_path(key)
        tmp = art.with_suffix(".tmp")
        archived: List[str] = []
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for f in files:
                    arc = _arcname(f, ws)
                    if arc.startswith("ws/") and _matches_any_glob(arc[3:], exclude_globs):
                        continue
                    tar.add(str(f), arcname=arc, recursive=False)
                    archived.append(arc)

            manifest = {
                "key": key,
                "paths": list(paths),
                "files": archived,
                "saved_at": time.time(),
            }
            tmp.replace(art)
            self.manifest_path(key).write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return manifest

    def prune(self, keep: int = 10) -> List[str]:
        """Keep only the newest N artifacts; returns the keys removed."""
        removed = []
        for m in self._manifests()[keep:]:
            key = m.get("key", "")
            self.artifact_path(key).unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed

