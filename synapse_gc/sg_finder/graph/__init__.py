"""
State group graph: loading, indexing, reachability and extraction.

This package turns the rows of one store snapshot into the list of state
groups that no event keeps alive:

    StateGroupLoader.load() ─► build_graph() ─► ReachabilityEngine.run()
                                                        │
                                       iter_unreferenced() ◄┘

Invariants:
    - The graph is never modified after build_graph() returns
    - Every structural anomaly goes through one Diagnostics instance

How to change safely:
    - Keep stages independent; each takes the previous stage's output only
"""

from .anomalies import AnomalyKind, AnomalyPolicy, DataAnomaly, Diagnostics, Severity
from .extractor import collect_unreferenced, iter_unreferenced
from .index import NO_PARENT, GroupGraph, IdIndex, build_graph
from .loader import LoadedGraph, StateGroupLoader, gather_or_cancel
from .reachability import ReachabilityEngine, ReachabilityResult, find_cycles, mark_reachable

__all__ = [
    # Anomalies
    "AnomalyKind",
    "AnomalyPolicy",
    "DataAnomaly",
    "Diagnostics",
    "Severity",
    # Loading
    "LoadedGraph",
    "StateGroupLoader",
    "gather_or_cancel",
    # Index
    "IdIndex",
    "GroupGraph",
    "NO_PARENT",
    "build_graph",
    # Reachability
    "ReachabilityEngine",
    "ReachabilityResult",
    "mark_reachable",
    "find_cycles",
    # Extraction
    "iter_unreferenced",
    "collect_unreferenced",
]
