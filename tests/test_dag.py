from __future__ import annotations

import pytest

from actionflow.dag import build_graph
from actionflow.dsl import job, sh
from actionflow.errors import CyclicDependencyError, DuplicateJobError, UnknownJobError


def _jobs(**needs):
    return [job(name, sh("x", "true"), needs=deps) for name, deps in needs.items()]


def test_layers_follow_needs_and_declaration_order():
    g = build_graph(_jobs(lint=[], unit=[], build=["lint", "unit"], deploy=["build"], docs=[]))
    assert g.layers() == [["lint", "unit", "docs"], ["build"], ["deploy"]]
    assert g.order == ["lint", "unit", "docs", "build", "deploy"]


def test_ancestors_and_descendants_are_transitive():
    g = build_graph(_jobs(a=[], b=["a"], c=["b"], d=[]))
    assert g.ancestors("c") == {"a", "b"}
    assert g.ancestors("a") == set()
    assert g.descendants("a") == {"b", "c"}
    assert g.descendants("d") == set()


def test_cycle_detected():
    with pytest.raises(CyclicDependencyError) as exc:
        build_graph(_jobs(a=["c"], b=["a"], c=["b"], free=[]))
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "dependency cycle" in exc.value.message


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependencyError) as exc:
        build_graph(_jobs(a=["a"]))
    assert exc.value.cycle == ["a", "a"]


def test_unknown_need():
    with pytest.raises(UnknownJobError) as exc:
        build_graph(_jobs(a=["ghost"]))
    assert exc.value.job == "a"
    assert exc.value.missing == "ghost"


def test_duplicate_ids():
    jobs = [job("a", sh("x", "true")), job("a", sh("y", "true"))]
    with pytest.raises(DuplicateJobError):
        build_graph(jobs)
