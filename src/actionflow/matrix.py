# matrix.py
from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from typing import Any, Dict, List

from .errors import InvalidMatrixError
from .model import MatrixSpec

# ---------------------------------------------------------------------
# Expansion order:
#   1. cartesian product of the axes (first axis varies slowest)
#   2. drop combinations hit by an `exclude` entry
#   3. fold in `include` entries (merge into matching combos, else append)
#   4. collapse duplicates, first occurrence wins
#
# How 2 and 3 match entries is set by MatrixPolicy.
# ---------------------------------------------------------------------

EXCLUDE_PARTIAL = "partial"
EXCLUDE_EXACT = "exact"
INCLUDE_MERGE = "merge"
INCLUDE_APPEND = "append"


@dataclass(frozen=True)
class MatrixPolicy:
    exclude_match: str = EXCLUDE_PARTIAL
    include_mode: str = INCLUDE_MERGE

    def __post_init__(self) -> None:
        if self.exclude_match not in (EXCLUDE_PARTIAL, EXCLUDE_EXACT):
            raise ValueError(f"unknown exclude_match policy: {self.exclude_match!r}")
        if self.include_mode not in (INCLUDE_MERGE, INCLUDE_APPEND):
            raise ValueError(f"unknown include_mode policy: {self.include_mode!r}")


def _stable_key(combo: Dict[str, Any]) -> str:
    # values may be unhashable (dicts/lists), so dedupe on canonical JSON
    return json.dumps(combo, sort_keys=True, default=str)


def _excluded(combo: Dict[str, Any], entry: Dict[str, Any], policy: MatrixPolicy) -> bool:
    if policy.exclude_match == EXCLUDE_EXACT:
        return _stable_key(combo) == _stable_key(entry)
    return all(k in combo and combo[k] == v for k, v in entry.items())


def validate(spec: MatrixSpec, *, job: str = "") -> None:
    for axis, values in spec.axes.items():
        if not isinstance(values, list):
            raise InvalidMatrixError(f"matrix axis '{axis}' must be a list, got {type(values).__name__}", job=job)
        if not values:
            raise InvalidMatrixError(f"matrix axis '{axis}' has no values", job=job)
    for label, entries in (("include", spec.include), ("exclude", spec.exclude)):
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise InvalidMatrixError(f"matrix '{label}' must be a list of mappings", job=job)


def expand(
    spec: MatrixSpec | None,
    policy: MatrixPolicy = MatrixPolicy(),
    *,
    job: str = "",
) -> List[Dict[str, Any]]:
    """
    Expand a matrix into its concrete binding sets.

    Deterministic: the same spec and policy always give the same list in the
    same order. An empty matrix gives a single empty binding.
    """
    if spec is None or spec.empty:
        return [{}]
    validate(spec, job=job)

    names = list(spec.axes)
    base: List[Dict[str, Any]] = []
    if names:
        for values in itertools.product(*(spec.axes[n] for n in names)):
            combo = dict(zip(names, values))
            if any(_excluded(combo, e, policy) for e in spec.exclude):
                continue
            base.append(combo)

    combos = [dict(c) for c in base]
    for entry in spec.include:
        if policy.include_mode == INCLUDE_APPEND:
            combos.append(dict(entry))
            continue

        merged = False
        for i, original in enumerate(base):
            # an include may only add keys; it must not contradict an axis value
            clashes = any(k in original and original[k] != v for k, v in entry.items())
            if clashes:
                continue
            combos[i].update(entry)
            merged = True
        if not merged:
            combos.append(dict(entry))

    out: List[Dict[str, Any]] = []
    seen = set()
    for combo in combos:
        key = _stable_key(combo)
        if key in seen:
            continue
        seen.add(key)
        out.append(combo)
    if not out:
        raise InvalidMatrixError("matrix excludes every combination", job=job)
    return out


def instance_label(job_id: str, bindings: Dict[str, Any]) -> str:
    """`build` or `build (ubuntu, 16.x)` -- how a job instance is named."""
    if not bindings:
        return job_id

    def fmt(v: Any) -> str:
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (dict, list)):
            return json.dumps(v, sort_keys=True)
        return str(v)

    return f"{job_id} ({', '.join(fmt(v) for v in bindings.values())})"
