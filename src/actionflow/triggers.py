# triggers.py
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import WorkflowLoadError
from .git_facts import git

SUPPORTED_EVENTS = ("push", "pull_request", "workflow_dispatch", "schedule")

_FILTER_KEYS = ("branches", "branches-ignore", "tags", "tags-ignore", "paths", "paths-ignore")


@dataclass(frozen=True)
class Event:
    """
    What triggered the run. Only the expression evaluator (`github.*`) and
    the trigger filters look at it.

    For pull_request, ref is the base branch the PR targets.
    """
    name: str = "push"
    ref: str = ""
    sha: str = ""
    repository: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    changed_files: Optional[List[str]] = None

    @property
    def ref_type(self) -> str:
        if self.ref.startswith("refs/tags/"):
            return "tag"
        return "branch"

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/", "refs/pull/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @classmethod
    def from_git(cls, name: str = "push", *, ref: Optional[str] = None,
                 workspace: str | Path = ".") -> "Event":
        """Event for the local checkout; fields stay empty outside a repo."""
        sha = repo = ""
        if git.is_repo(workspace):
            try:
                sha = git.head_sha(workspace)
                ref = ref or git.current_ref(workspace)
            except subprocess.CalledProcessError:
                pass  # empty repo, no HEAD yet
            try:
                url = git.remote_url("origin", workspace)
                repo = "/".join(url.rstrip("/").removesuffix(".git").replace(":", "/").split("/")[-2:])
            except subprocess.CalledProcessError:
                repo = Path(workspace).resolve().name
        if ref and not ref.startswith("refs/") and len(ref) != 40:
            ref = f"refs/heads/{ref}"
        return cls(name=name, ref=ref or "", sha=sha, repository=repo)


def normalize_on(raw: Any) -> Dict[str, Dict[str, Any]]:
    """
    Accepts every shape `on:` takes in a workflow file:
      on: push
      on: [push, pull_request]
      on: {push: {branches: [main]}, pull_request: null}
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        raw = [raw]
    if isinstance(raw, list):
        return {str(e): {} for e in raw}
    if not isinstance(raw, dict):
        raise WorkflowLoadError(f"'on' must be a string, list or mapping, got {type(raw).__name__}")

    out: Dict[str, Dict[str, Any]] = {}
    for event, filt in raw.items():
        if filt is None:
            filt = {}
        if not isinstance(filt, (dict, list)):
            raise WorkflowLoadError(f"filter for event '{event}' must be a mapping")
        if isinstance(filt, dict):
            filt = {k: ([v] if isinstance(v, str) else list(v)) if k in _FILTER_KEYS else v
                    for k, v in filt.items()}
        out[str(event)] = filt
    return out


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """
    Filter glob as a regex: `*` and `?` stay inside one path segment, `**`
    spans segments, and `**/` also matches no directory at all.
    """
    out: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[" and "]" in pattern[i + 1:]:
            end = pattern.index("]", i + 1)
            out.append("[" + pattern[i + 1:end].replace("\\", "\\\\") + "]")
            i = end
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(value: str, pattern: str) -> bool:
    return glob_to_regex(pattern).match(value) is not None


def _matches_any(value: str, patterns: List[str]) -> bool:
    """
    Patterns are applied in order; a leading `!` removes earlier matches.
    """
    hit = False
    for p in patterns:
        if p.startswith("!"):
            if hit and glob_match(value, p[1:]):
                hit = False
        elif glob_match(value, p):
            hit = True
    return hit


def _ref_allowed(filt: Dict[str, Any], event: Event) -> bool:
    if event.ref_type == "tag":
        include, exclude = "tags", "tags-ignore"
        other = ("branches", "branches-ignore")
    else:
        include, exclude = "branches", "branches-ignore"
        other = ("tags", "tags-ignore")

    has_own = include in filt or exclude in filt
    if not has_own and any(k in filt for k in other):
        # filter only names the other ref kind
        return False
    name = event.ref_name
    if include in filt and not _matches_any(name, filt[include]):
        return False
    if exclude in filt and _matches_any(name, filt[exclude]):
        return False
    return True


def _paths_allowed(filt: Dict[str, Any], changed: List[str]) -> bool:
    if "paths" in filt and not any(_matches_any(f, filt["paths"]) for f in changed):
        return False
    if "paths-ignore" in filt and changed and all(_matches_any(f, filt["paths-ignore"]) for f in changed):
        return False
    return True


def matches(on: Dict[str, Dict[str, Any]], event: Event, *, workspace: str | Path = ".") -> bool:
    """
    Would this event trigger a workflow with these `on` filters?

    A workflow without `on` always runs. Path filters look at
    event.changed_files, or ask git when the event carries none.
    """
    if not on:
        return True
    if event.name not in on:
        return False
    filt = on[event.name]
    if not isinstance(filt, dict) or not filt:
        return True

    if event.name in ("push", "pull_request") and event.ref and not _ref_allowed(filt, event):
        return False

    if "paths" in filt or "paths-ignore" in filt:
        changed = event.changed_files
        if changed is None:
            try:
                changed = git.working_changes(cwd=workspace)
            except (subprocess.CalledProcessError, FileNotFoundError):
                return True  # no git facts: do not filter
        if not _paths_allowed(filt, changed):
            return False
    return True
