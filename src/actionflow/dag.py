# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set

from .errors import CyclicDependencyError, DuplicateJobError, UnknownJobError
from .model import Job


@dataclass(frozen=True)
class DependencyGraph:
    """
    Resolved `needs` graph.

    predecessors: job -> jobs it needs
    successors:   job -> jobs that need it
    declared:     job ids in declaration order (tie-break everywhere)
    """
    predecessors: Dict[str, Set[str]]
    successors: Dict[str, Set[str]]
    declared: List[str]

    def _rank(self, names: Iterable[str]) -> List[str]:
        pos = {n: i for i, n in enumerate(self.declared)}
        return sorted(names, key=pos.__getitem__)

    def layers(self) -> List[List[str]]:
        """
        Topological "levels": every job in a layer only needs jobs in earlier
        layers. A scheduling hint, not a barrier.
        """
        indeg = {n: len(p) for n, p in self.predecessors.items()}
        q = deque(self._rank(n for n, d in indeg.items() if d == 0))

        levels: List[List[str]] = []
        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)

            nxt: List[str] = []
            for node in level:
                for child in self.successors[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            q.extend(self._rank(nxt))
            levels.append(level)
        return levels

    @property
    def order(self) -> List[str]:
        return [n for level in self.layers() for n in level]

    def ancestors(self, job_id: str) -> Set[str]:
        """Every job reachable through `needs`, direct or transitive."""
        seen: Set[str] = set()
        stack = list(self.predecessors[job_id])
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self.predecessors[n])
        return seen

    def descendants(self, job_id: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.successors[job_id])
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self.successors[n])
        return seen


def _find_cycle(preds: Dict[str, Set[str]], declared: List[str]) -> List[str]:
    """Return one cycle as a closed path, e.g. ['a', 'b', 'a']."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in declared}
    path: List[str] = []

    def visit(n: str) -> List[str] | None:
        color[n] = GREY
        path.append(n)
        for p in sorted(preds[n], key=declared.index):
            if color[p] == GREY:
                return path[path.index(p):] + [p]
            if color[p] == WHITE:
                found = visit(p)
                if found:
                    return found
        path.pop()
        color[n] = BLACK
        return None

    for n in declared:
        if color[n] == WHITE:
            found = visit(n)
            if found:
                # report in dependency direction: needed job first
                return list(reversed(found))
    return []


def build_graph(jobs: List[Job]) -> DependencyGraph:
    """
    Build the dependency graph from Job objects.

    Requires:
      - job.id: str (unique)
      - job.needs: ids of jobs that must finish BEFORE this job
    Raises DuplicateJobError, UnknownJobError or CyclicDependencyError.
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        raise DuplicateJobError(sorted({n for n in ids if ids.count(n) > 1}))

    known = set(ids)
    preds: Dict[str, Set[str]] = {n: set() for n in ids}
    succs: Dict[str, Set[str]] = {n: set() for n in ids}

    for job in jobs:
        for need in job.needs or []:
            if need not in known:
                raise UnknownJobError(job.id, need, ids)
            # edge need -> job (need runs before job)
            preds[job.id].add(need)
            succs[need].add(job.id)

    graph = DependencyGraph(predecessors=preds, successors=succs, declared=ids)

    placed = sum(len(level) for level in graph.layers())
    if placed != len(ids):
        raise CyclicDependencyError(_find_cycle(preds, ids))
    return graph
