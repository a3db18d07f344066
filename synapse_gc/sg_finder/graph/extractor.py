"""
Extraction of unreferenced state groups.

Walks the kept vector once and yields the sparse id of every node that is
not kept. Nothing is buffered; callers that need a list or a stable order
use collect_unreferenced().

Invariants:
    - Only groups that exist are emitted; synthetic (orphan) indices were
      already reported when they were created
    - With a room scope only groups of that room are emitted; any other
      unkept group is a ROOM_MISMATCH anomaly
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from .anomalies import AnomalyKind, Diagnostics
from .index import GroupGraph

logger = logging.getLogger(__name__)


def iter_unreferenced(
    graph: GroupGraph,
    kept: bytearray,
    room_id: str | None,
    diagnostics: Diagnostics,
) -> Iterator[int]:
    """Yield the ids of groups that no event keeps alive.

    Args:
        graph: Graph the kept vector was computed on
        kept: Output of mark_reachable()
        room_id: Room scope, None for the whole database
        diagnostics: Anomaly collector

    Yields:
        Sparse state group ids, in index order

    Raises:
        FatalDataAnomalyError: If room mismatches are configured to abort
    """
    index = graph.index
    for node in range(len(graph)):
        if kept[node] or index.is_synthetic(node):
            continue
        group_id = index.id_of(node)
        if room_id is not None:
            room = graph.room_of(node)
            if room != room_id:
                diagnostics.record(
                    AnomalyKind.ROOM_MISMATCH,
                    f"Unreferenced state group {group_id} belongs to {room}, not {room_id}",
                    (group_id,),
                )
                continue
        yield group_id


def collect_unreferenced(
    graph: GroupGraph,
    kept: bytearray,
    room_id: str | None,
    diagnostics: Diagnostics,
) -> list[int]:
    """Sorted list of unreferenced group ids."""
    ids = sorted(iter_unreferenced(graph, kept, room_id, diagnostics))
    logger.debug("Collected unreferenced state groups", extra={"count": len(ids)})
    return ids
