"""Tests for DAG resolution: topological sort and wave computation."""

import itertools

from phasegate_mcp.engine import DAGResolver


def _wave_ids(resolver: DAGResolver, **kwargs) -> list[list[str]]:
    result = resolver.get_execution_waves(**kwargs)
    assert result.is_success, result.error
    return [wave.phase_ids for wave in result.unwrap()]


class TestTopologicalSort:
    def test_linear_chain(self):
        resolver = DAGResolver(["a", "b", "c"], {"b": ["a"], "c": ["b"]})
        assert resolver.topological_sort().unwrap() == ["a", "b", "c"]

    def test_cycle_is_reported(self):
        resolver = DAGResolver(["a", "b"], {"a": ["b"], "b": ["a"]})
        result = resolver.topological_sort()
        assert not result.is_success
        assert "Cyclic dependency" in result.error
        assert "a, b" in result.error

    def test_unknown_dependency_is_an_error(self):
        resolver = DAGResolver(["a"], {"a": ["ghost"]})
        result = resolver.topological_sort()
        assert not result.is_success
        assert "ghost" in result.error


class TestExecutionWaves:
    def test_independent_phases_share_a_wave(self):
        resolver = DAGResolver(["A", "B", "C"], {"C": ["A", "B"]})
        assert _wave_ids(resolver) == [["A", "B"], ["C"]]

    def test_declaration_order_is_kept_within_a_wave(self):
        resolver = DAGResolver(["z", "y", "x"], {})
        assert _wave_ids(resolver) == [["z", "y", "x"]]

    def test_dependencies_outside_the_batch_are_satisfied(self):
        resolver = DAGResolver(["planning", "backlog"], {"backlog": ["planning", "research"]})
        assert _wave_ids(resolver) == [["planning"], ["backlog"]]

    def test_self_dependency_is_ignored(self):
        resolver = DAGResolver(["a"], {"a": ["a"]})
        assert _wave_ids(resolver) == [["a"]]

    def test_deadlock_is_forced_by_default(self):
        resolver = DAGResolver(["root", "a", "b"], {"a": ["b"], "b": ["a"]})
        waves = resolver.get_execution_waves().unwrap()
        assert [w.phase_ids for w in waves] == [["root"], ["a", "b"]]
        assert [w.forced for w in waves] == [False, True]

    def test_deadlock_fails_when_configured(self):
        resolver = DAGResolver(["root", "a", "b"], {"a": ["b"], "b": ["a"]})
        result = resolver.get_execution_waves(on_deadlock="fail")
        assert not result.is_success
        assert result.metadata["remaining"] == ["a", "b"]

    def test_wide_waves_are_split(self):
        resolver = DAGResolver(["a", "b", "c", "d", "e"], {"e": ["a"]})
        waves = resolver.get_execution_waves(max_wave_size=2).unwrap()
        assert [w.phase_ids for w in waves] == [["a", "b"], ["c", "d"], ["e"]]
        assert [w.index for w in waves] == [0, 1, 2]

    def test_every_phase_runs_after_its_dependencies(self):
        """Wave index of a phase exceeds the wave index of each dependency."""
        phases = ["p0", "p1", "p2", "p3", "p4", "p5"]
        candidate_edges = [
            (child, parent) for child, parent in itertools.combinations(reversed(phases), 2)
        ]
        # Enumerate a deterministic family of acyclic graphs (edges only point backwards)
        for mask in range(0, 2 ** len(candidate_edges), 97):
            dependencies: dict[str, list[str]] = {p: [] for p in phases}
            for bit, (child, parent) in enumerate(candidate_edges):
                if mask & (1 << bit):
                    dependencies[child].append(parent)

            for max_wave_size in (None, 2):
                waves = DAGResolver(phases, dependencies).get_execution_waves(
                    max_wave_size=max_wave_size
                ).unwrap()
                index = {pid: wave.index for wave in waves for pid in wave.phase_ids}
                assert sorted(index) == sorted(phases)
                for child, parents in dependencies.items():
                    for parent in parents:
                        assert index[child] > index[parent], (mask, child, parent)
