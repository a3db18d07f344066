"""
Unit tests for the reachability engine and the extractor.

Tests cover:
- Worked scenarios (single chain, disjoint chains, orphan parent)
- Closure equality against a naive fixpoint on random graphs
- Reflexivity and the empty root set
- Cycles: termination and reporting
- Deep chains without recursion
- Room filtering of candidates
"""

import pytest

from synapse_gc.sg_finder.errors import FatalDataAnomalyError
from synapse_gc.sg_finder.graph import (
    AnomalyKind,
    AnomalyPolicy,
    Diagnostics,
    ReachabilityEngine,
    Severity,
    build_graph,
    find_cycles,
    iter_unreferenced,
    mark_reachable,
)
from tests.graphs import loaded_graph, naive_unreferenced, random_forest, unreferenced_of


class TestScenarios:
    """Worked examples."""

    def test_single_chain_with_one_stray_group(self):
        ids, diagnostics = unreferenced_of([1, 2, 3, 4], [(2, 1), (3, 2)], [3])
        assert ids == [4]
        assert len(diagnostics) == 0

    def test_disjoint_chains(self):
        edges = [(11, 10), (12, 11), (21, 20), (22, 21)]
        ids, _ = unreferenced_of([10, 11, 12, 20, 21, 22], edges, [12])
        assert ids == [20, 21, 22]

    def test_orphan_parent_does_not_crash_or_leak(self):
        ids, diagnostics = unreferenced_of([5, 6], [(5, 99)], [6])
        assert ids == [5]
        assert 99 not in ids
        assert diagnostics.counts()[AnomalyKind.ORPHAN_REFERENCE] == 1

    def test_kept_orphan_parent_is_not_reported(self):
        ids, _ = unreferenced_of([5], [(5, 99)], [5])
        assert ids == []


class TestMarkReachable:
    """Tests for mark_reachable()."""

    def test_every_root_is_kept(self):
        groups, edges, roots = random_forest(seed=3, size=500)
        graph = build_graph(loaded_graph(groups, edges, roots), Diagnostics())
        kept = mark_reachable(graph)
        assert all(kept[graph.index.lookup(r)] for r in roots)

    def test_empty_root_set_keeps_nothing(self):
        ids, _ = unreferenced_of([1, 2, 3], [(2, 1), (3, 2)], [])
        assert ids == [1, 2, 3]

    def test_empty_graph(self):
        ids, diagnostics = unreferenced_of([], [], [])
        assert ids == []
        assert len(diagnostics) == 0

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    def test_matches_naive_closure(self, seed):
        groups, edges, roots = random_forest(seed=seed, size=2_000, ref_ratio=0.05)
        ids, diagnostics = unreferenced_of(list(groups), edges, roots)
        assert ids == naive_unreferenced(groups, edges, roots)
        assert len(diagnostics) == 0

    def test_matches_naive_closure_with_multiple_parents(self):
        groups = list(range(1, 9))
        edges = [(8, 7), (8, 5), (7, 6), (5, 4), (4, 3), (2, 1)]
        ids, diagnostics = unreferenced_of(groups, edges, [8])
        assert ids == naive_unreferenced(groups, edges, [8]) == [1, 2]
        assert diagnostics.counts()[AnomalyKind.MULTIPLE_PARENTS] == 1

    def test_deep_chain_does_not_recurse(self):
        size = 100_000
        groups = range(1, size + 1)
        edges = [(g, g - 1) for g in range(2, size + 1)]
        ids, _ = unreferenced_of(groups, edges, [size])
        assert ids == []

    def test_result_is_order_independent(self):
        groups, edges, roots = random_forest(seed=9, size=1_000)
        forward, _ = unreferenced_of(list(groups), edges, roots)
        backward, _ = unreferenced_of(list(reversed(list(groups))), list(reversed(edges)), roots)
        assert forward == backward


class TestCycles:
    """Tests for find_cycles() and cycle reporting."""

    def test_acyclic_graph_has_no_cycles(self):
        groups, edges, roots = random_forest(seed=5, size=300)
        graph = build_graph(loaded_graph(groups, edges, roots), Diagnostics())
        assert find_cycles(graph) == []

    def test_two_node_cycle_terminates_and_is_reported(self):
        diagnostics = Diagnostics()
        graph = build_graph(loaded_graph([1, 2, 3], [(1, 2), (2, 1)], [3]), diagnostics)
        result = ReachabilityEngine().run(graph, diagnostics)

        assert len(result.cycles) == 1
        assert sorted(result.cycles[0]) == [1, 2]
        [anomaly] = diagnostics.of_kind(AnomalyKind.CYCLE)
        assert sorted(anomaly.group_ids) == [1, 2]

    def test_cycle_reachable_from_root_terminates(self):
        edges = [(4, 3), (3, 2), (2, 1), (1, 3)]
        ids, diagnostics = unreferenced_of([1, 2, 3, 4, 5], edges, [4])
        assert ids == [5]
        [anomaly] = diagnostics.of_kind(AnomalyKind.CYCLE)
        assert sorted(anomaly.group_ids) == [1, 2, 3]

    def test_self_loop_is_a_cycle(self):
        graph = build_graph(loaded_graph([1], [(1, 1)], [1]), Diagnostics())
        assert find_cycles(graph) == [[1]]

    def test_unkept_cycle_is_still_reported(self):
        ids, diagnostics = unreferenced_of([1, 2, 3], [(1, 2), (2, 1)], [3])
        assert ids == [1, 2]
        assert diagnostics.counts()[AnomalyKind.CYCLE] == 1

    def test_cycle_abort_policy(self):
        policy = AnomalyPolicy({AnomalyKind.CYCLE: Severity.ABORT})
        with pytest.raises(FatalDataAnomalyError):
            unreferenced_of([1, 2], [(1, 2), (2, 1)], [1], policy=policy)

    def test_cycle_detection_can_be_disabled(self):
        diagnostics = Diagnostics()
        graph = build_graph(loaded_graph([1, 2], [(1, 2), (2, 1)], [1]), diagnostics)
        result = ReachabilityEngine(detect_cycles=False).run(graph, diagnostics)
        assert result.cycles == []
        assert result.kept_count == 2


class TestExtractor:
    """Tests for iter_unreferenced()."""

    def test_is_lazy(self):
        graph = build_graph(loaded_graph([1, 2, 3], [], []), Diagnostics())
        kept = mark_reachable(graph)
        iterator = iter_unreferenced(graph, kept, None, Diagnostics())
        assert next(iterator) == 1

    def test_foreign_group_is_room_mismatch(self):
        ids, diagnostics = unreferenced_of(
            [2],
            [(2, 1)],
            [],
            room_id="!a:test",
            foreign={1: "!b:test"},
        )
        assert ids == [2]
        [anomaly] = diagnostics.of_kind(AnomalyKind.ROOM_MISMATCH)
        assert anomaly.group_ids == (1,)

    def test_kept_foreign_group_is_silent(self):
        ids, diagnostics = unreferenced_of(
            [2],
            [(2, 1)],
            [2],
            room_id="!a:test",
            foreign={1: "!b:test"},
        )
        assert ids == []
        assert diagnostics.counts()[AnomalyKind.ROOM_MISMATCH] == 0
