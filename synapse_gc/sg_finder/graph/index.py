"""
Dense id index and adjacency for the state group graph.

State group ids are sparse 64-bit integers. Traversal works on dense
zero-based indices instead, so the kept set can be a bytearray and the
primary adjacency a flat ``array('q')``.

Adjacency layout:
    parents[i]          primary parent of i, or -1 when i has none
    extra_parents[i]    further parents of i (only for damaged data)

Invariants:
    - intern() is idempotent and indices are dense and zero-based
    - Every id seen in an edge or root has an index; ids that are not
      known groups get a synthetic index and one ORPHAN_REFERENCE anomaly
    - Synthetic indices are never reported as unreferenced
    - Duplicate identical edges collapse to one

How to change safely:
    - Indices of known groups must stay below known_count; the extractor
      relies on that split
    - Keep the adjacency flat; a per-node list costs ~100 bytes per group
"""

from __future__ import annotations

import logging
from array import array
from collections.abc import Iterator
from dataclasses import dataclass, field
from itertools import chain
from typing import TYPE_CHECKING

from .anomalies import AnomalyKind, Diagnostics

if TYPE_CHECKING:
    from .loader import LoadedGraph

logger = logging.getLogger(__name__)

NO_PARENT = -1


class IdIndex:
    """Bidirectional mapping between sparse group ids and dense indices.

    Example:
        >>> index = IdIndex()
        >>> index.intern(1042)
        0
        >>> index.intern(7)
        1
        >>> index.intern(1042)
        0
        >>> index.id_of(1)
        7
    """

    def __init__(self) -> None:
        self._index: dict[int, int] = {}
        self._ids = array("q")
        self._synthetic: set[int] = set()

    def intern(self, group_id: int) -> int:
        """Return the index for ``group_id``, assigning the next one if new."""
        index = self._index.get(group_id)
        if index is None:
            index = len(self._ids)
            self._index[group_id] = index
            self._ids.append(group_id)
        return index

    def lookup(self, group_id: int) -> int | None:
        return self._index.get(group_id)

    def resolve(self, group_id: int, context: str, diagnostics: Diagnostics) -> int:
        """Return the index for ``group_id``, synthesizing one for unknown ids.

        The first time an unknown id is resolved an ORPHAN_REFERENCE anomaly
        is recorded; later references to the same id reuse the synthetic
        index silently.

        Args:
            group_id: Id referenced by an edge or an event
            context: Where the reference came from, for the anomaly message
            diagnostics: Anomaly collector

        Raises:
            FatalDataAnomalyError: If orphan references are configured to abort
        """
        index = self._index.get(group_id)
        if index is not None:
            return index
        index = self.intern(group_id)
        self._synthetic.add(index)
        diagnostics.record(
            AnomalyKind.ORPHAN_REFERENCE,
            f"{context} references state group {group_id}, which is not a known state group",
            (group_id,),
        )
        return index

    def id_of(self, index: int) -> int:
        return self._ids[index]

    def is_synthetic(self, index: int) -> bool:
        return index in self._synthetic

    @property
    def known_count(self) -> int:
        """Number of indices that belong to groups that actually exist."""
        return len(self._ids) - len(self._synthetic)

    @property
    def synthetic_count(self) -> int:
        return len(self._synthetic)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._index


@dataclass
class GroupGraph:
    """The state group graph in dense form.

    Attributes:
        index: Id index shared by every structure below
        parents: Primary parent per index, NO_PARENT when none
        extra_parents: Parents beyond the first, keyed by child index
        roots: Distinct indices referenced by events
        room_id: Room scope of the load, None for the whole database
        foreign_rooms: Room of each index that lies outside the scope
        edge_count: Distinct edges after collapsing duplicates
    """

    index: IdIndex
    parents: array
    extra_parents: dict[int, list[int]] = field(default_factory=dict)
    roots: array = field(default_factory=lambda: array("q"))
    room_id: str | None = None
    foreign_rooms: dict[int, str] = field(default_factory=dict)
    edge_count: int = 0

    def __len__(self) -> int:
        return len(self.parents)

    def parents_of(self, node: int) -> Iterator[int]:
        """Yield every parent index of ``node``."""
        parent = self.parents[node]
        if parent != NO_PARENT:
            yield parent
            extra = self.extra_parents.get(node)
            if extra:
                yield from extra

    def room_of(self, node: int) -> str | None:
        """Room of ``node``; the scope room unless recorded as foreign."""
        if self.index.is_synthetic(node):
            return None
        return self.foreign_rooms.get(node, self.room_id)


def build_graph(loaded: LoadedGraph, diagnostics: Diagnostics) -> GroupGraph:
    """Intern a loaded snapshot and build its dense adjacency.

    Groups are interned first, in-scope then foreign, so that every edge or
    root pointing at a real group resolves to a known index regardless of
    the order the scans delivered their pages in.

    Args:
        loaded: Buffers produced by the loader
        diagnostics: Anomaly collector

    Returns:
        GroupGraph ready for traversal

    Raises:
        FatalDataAnomalyError: If an anomaly's policy is ABORT
    """
    index = IdIndex()
    for group_id in loaded.group_ids:
        index.intern(group_id)

    foreign_rooms: dict[int, str] = {}
    for group_id, room in loaded.foreign_groups.items():
        node = index.intern(group_id)
        if room != loaded.room_id:
            foreign_rooms[node] = room

    # Resolve edge endpoints before sizing the adjacency; orphans grow the index
    children = array("q")
    parent_nodes = array("q")
    for child_id, parent_id in zip(loaded.edge_children, loaded.edge_parents):
        context = f"Edge {child_id} -> {parent_id}"
        children.append(index.resolve(child_id, context, diagnostics))
        parent_nodes.append(index.resolve(parent_id, context, diagnostics))

    for child_id, parent_id in sorted(loaded.cross_room_edges):
        diagnostics.record(
            AnomalyKind.CROSS_ROOM_EDGE,
            f"State group {child_id} is a delta against {parent_id} from another room",
            (child_id, parent_id),
        )

    root_nodes = array(
        "q",
        (
            index.resolve(group_id, "An event", diagnostics)
            for group_id in chain(loaded.root_ids, loaded.pinned_ids)
        ),
    )

    parents = array("q", [NO_PARENT]) * len(index)
    extra_parents: dict[int, list[int]] = {}
    edge_count = 0
    for child, parent in zip(children, parent_nodes):
        current = parents[child]
        if current == NO_PARENT:
            parents[child] = parent
        elif current == parent or parent in extra_parents.get(child, ()):
            continue
        else:
            extra_parents.setdefault(child, []).append(parent)
        edge_count += 1

    for child in sorted(extra_parents):
        all_parents = [parents[child], *extra_parents[child]]
        group_ids = (index.id_of(child), *(index.id_of(p) for p in all_parents))
        diagnostics.record(
            AnomalyKind.MULTIPLE_PARENTS,
            f"State group {group_ids[0]} has {len(group_ids) - 1} predecessors",
            group_ids,
        )

    seen = bytearray(len(index))
    roots = array("q")
    for node in root_nodes:
        if not seen[node]:
            seen[node] = 1
            roots.append(node)

    graph = GroupGraph(
        index=index,
        parents=parents,
        extra_parents=extra_parents,
        roots=roots,
        room_id=loaded.room_id,
        foreign_rooms=foreign_rooms,
        edge_count=edge_count,
    )
    logger.info(
        "Built state group graph",
        extra={
            "nodes": len(index),
            "known": index.known_count,
            "synthetic": index.synthetic_count,
            "edges": edge_count,
            "roots": len(roots),
            "foreign": len(foreign_rooms),
        },
    )
    return graph
