# builtin.py
from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional

from ..cache import DEFAULT_CACHE_DIR, CacheStore, parse_paths
from ..git_facts import git
from .registry import ActionCall, ActionInput, ActionRegistry, ActionResult

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "git": "Install Git or fix PATH.",
}


def tool_version(tool: str) -> Optional[str]:
    """
    Best-effort version discovery: first of `--version`, `-V`, `version`
    that exits 0 with output.
    """
    for cmd in ([tool, "--version"], [tool, "-V"], [tool, "version"]):
        try:
            completed = subprocess.run(cmd, text=True, capture_output=True, check=False)
        except OSError:
            return None
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            return " ".join(text.split())
    return None


_VERSION_RE = re.compile(r"v?(\d+(?:\.\d+)*)")


def version_matches(requested: str, installed: str) -> bool:
    """'16.x' / '16' / '3.11' against e.g. 'v16.20.2' or 'Python 3.11.4'."""
    m = _VERSION_RE.search(installed)
    if not m:
        return False
    have = m.group(1).split(".")
    want = [p for p in requested.strip().lstrip("v").split(".") if p not in ("x", "X", "*", "")]
    return have[:len(want)] == want


def _setup_tool(call: ActionCall, *, tool: str, version_input: str) -> ActionResult:
    installed = tool_version(tool)
    if installed is None:
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        return ActionResult(exit_code=1, message=f"{tool} is not available. Hint: {hint}")

    requested = call.inputs.get(version_input, "")
    if requested and not version_matches(requested, installed):
        return ActionResult(
            exit_code=1,
            message=f"{tool} {requested} requested but {installed} is installed",
        )
    call.log(f"Using {tool}: {installed}")
    m = _VERSION_RE.search(installed)
    return ActionResult(outputs={"version": m.group(1) if m else installed})


def checkout(call: ActionCall) -> ActionResult:
    """Verify the workspace is a git checkout and report what is checked out."""
    if call.inputs.get("ref"):
        call.log(f"Local checkout: ref {call.inputs['ref']!r} is not fetched, using the workspace as is")
    if not git.is_repo(call.workspace):
        return ActionResult(exit_code=1, message=f"{call.workspace} is not a git repository")
    try:
        sha = git.head_sha(call.workspace)
        ref = git.current_ref(call.workspace)
    except subprocess.CalledProcessError as e:
        return ActionResult(exit_code=1, message=f"could not read HEAD: {e}")
    call.log(f"Checked out {ref} at {sha[:12]}")
    return ActionResult(outputs={"ref": ref, "commit": sha})


def make_cache_action(cache_dir: str | Path = DEFAULT_CACHE_DIR, keep: int = 10):
    def cache(call: ActionCall) -> ActionResult:
        """Restore paths by key; on a miss, save them after the job succeeds."""
        paths = parse_paths(call.inputs.get("path", ""))
        key = call.inputs.get("key", "").strip()
        if not paths or not key:
            return ActionResult(exit_code=1, message="actions/cache needs 'path' and 'key'")
        restore_keys = parse_paths(call.inputs.get("restore-keys", ""))

        store = CacheStore(cache_dir)
        hit = store.restore(key, restore_keys, workspace=call.workspace)
        call.log(f"Cache: {hit.reason} (key {key})")

        post = None
        if not hit.hit:
            def post() -> None:
                store.save(key, paths, workspace=call.workspace)
                store.prune(keep)
                call.log(f"Cache saved with key: {key}")

        return ActionResult(
            outputs={
                "cache-hit": "true" if hit.hit else "false",
                "cache-matched-key": hit.matched_key,
                "cache-primary-key": key,
            },
            post=post,
        )
    return cache


def register_builtins(registry: ActionRegistry, *, cache_dir: str | Path = DEFAULT_CACHE_DIR,
                      cache_keep: int = 10) -> ActionRegistry:
    registry.action(
        "actions/checkout",
        inputs={"ref": ActionInput(), "fetch-depth": ActionInput(default="1")},
        outputs=["ref", "commit"],
    )(checkout)

    registry.action(
        "actions/cache",
        inputs={
            "path": ActionInput(required=True),
            "key": ActionInput(required=True),
            "restore-keys": ActionInput(default=""),
        },
        outputs=["cache-hit", "cache-matched-key", "cache-primary-key"],
    )(make_cache_action(cache_dir, cache_keep))

    registry.action(
        "actions/setup-node",
        inputs={"node-version": ActionInput(default="")},
        outputs=["version"],
        description="Check that node is installed (and matches node-version).",
    )(lambda call: _setup_tool(call, tool="node", version_input="node-version"))

    registry.action(
        "actions/setup-python",
        inputs={"python-version": ActionInput(default="")},
        outputs=["version"],
        description="Check that python3 is installed (and matches python-version).",
    )(lambda call: _setup_tool(call, tool="python3", version_input="python-version"))

    return registry
