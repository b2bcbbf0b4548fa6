"""Unit tests for dependency graph ordering."""

import pytest

from infra_orchestrator.core.errors import DependencyCycle, UnknownDependency
from infra_orchestrator.core.graph import (
    downstream_of,
    find_cycle,
    reverse_topological_order,
    topological_order,
)


class TestTopologicalOrder:
    """Dependencies-first ordering."""

    def test_dependencies_come_first(self):
        order = topological_order({"nodepool": ["cluster"], "cluster": ["subnet"], "subnet": ["vpc"], "vpc": []})

        assert order == ["vpc", "subnet", "cluster", "nodepool"]

    def test_ties_broken_by_identifier(self):
        order = topological_order({"c": ["a", "b"], "b": [], "a": [], "d": []})

        assert order == ["a", "b", "c", "d"]

    def test_stable_across_input_order(self):
        first = topological_order({"x": [], "y": ["x"], "z": ["x"]})
        second = topological_order({"z": ["x"], "y": ["x"], "x": []})

        assert first == second == ["x", "y", "z"]

    def test_duplicate_dependency_counted_once(self):
        assert topological_order({"a": [], "b": ["a", "a"]}) == ["a", "b"]

    def test_cycle_rejected(self):
        with pytest.raises(DependencyCycle) as exc:
            topological_order({"a": ["b"], "b": ["c"], "c": ["a"], "d": []})

        assert exc.value.members[0] == exc.value.members[-1]
        assert set(exc.value.members) == {"a", "b", "c"}

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(DependencyCycle):
            topological_order({"a": ["a"]})

    def test_unknown_dependency_rejected(self):
        with pytest.raises(UnknownDependency) as exc:
            topological_order({"a": ["ghost"]})

        assert exc.value.node == "a"
        assert exc.value.dependency == "ghost"

    def test_unknown_dependency_ignored_when_requested(self):
        assert topological_order({"a": ["ghost"], "b": ["a"]}, ignore_unknown=True) == ["a", "b"]


class TestReverseOrder:
    """Dependents-first ordering used for teardown."""

    def test_dependents_come_first(self):
        order = reverse_topological_order(
            {"vpc": [], "subnet": ["vpc"], "cluster": ["subnet"], "nodepool": ["cluster", "subnet"]}
        )

        assert order == ["nodepool", "cluster", "subnet", "vpc"]

    def test_ties_broken_by_identifier(self):
        order = reverse_topological_order({"vpc": [], "subnet-b": ["vpc"], "subnet-a": ["vpc"]})

        assert order == ["subnet-a", "subnet-b", "vpc"]


class TestHelpers:
    """Cycle search and downstream closure."""

    def test_find_cycle_empty_for_dag(self):
        assert find_cycle({"a": [], "b": ["a"]}) == []

    def test_find_cycle_reports_path(self):
        assert find_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]

    def test_downstream_is_transitive(self):
        graph = {"a": [], "b": ["a"], "c": ["b"], "d": ["a"], "e": []}

        assert downstream_of(graph, "a") == {"b", "c", "d"}
        assert downstream_of(graph, "c") == set()
