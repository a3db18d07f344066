"""
Pipeline orchestration for the unreferenced state group finder.

find_unreferenced() runs every stage once, in order, against one store
snapshot:

    load ─► index ─► reachability ─► extract

Invariants:
    - The store is only read; nothing is written or deleted
    - All anomalies of a run are collected in one Diagnostics instance and
      returned with the result, even when the result is empty
    - A FatalDataAnomalyError leaves no partial result behind

How to change safely:
    - Keep this module free of I/O other than through the store; output
      belongs to the caller
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .config import FinderSettings
from .graph import (
    Diagnostics,
    ReachabilityEngine,
    StateGroupLoader,
    build_graph,
    collect_unreferenced,
)
from .store import StateGroupStore

logger = logging.getLogger(__name__)


@dataclass
class FinderResult:
    """Outcome of one finder run.

    Attributes:
        room_id: Room scope, None for the whole database
        unreferenced: Unreferenced state group ids, ascending
        fetched_groups: Groups returned by the scope scan
        total_groups: Groups that took part in traversal, foreign included
        kept_groups: Groups reachable from an event reference
        counts: Loader counters
        diagnostics: Anomalies observed during the run
        durations: Wall time per stage, in seconds
    """

    room_id: str | None
    unreferenced: list[int]
    fetched_groups: int
    total_groups: int
    kept_groups: int
    counts: dict[str, int] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    durations: dict[str, float] = field(default_factory=dict)

    def to_dict(self, include_ids: bool = False) -> dict[str, Any]:
        """Convert to dictionary for the JSON run report."""
        data: dict[str, Any] = {
            "room_id": self.room_id,
            "fetched_groups": self.fetched_groups,
            "total_groups": self.total_groups,
            "kept_groups": self.kept_groups,
            "unreferenced_groups": len(self.unreferenced),
            "counts": dict(self.counts),
            "durations": {k: round(v, 3) for k, v in self.durations.items()},
            "anomalies": self.diagnostics.summary(),
        }
        if include_ids:
            data["unreferenced"] = list(self.unreferenced)
        return data


async def find_unreferenced(
    store: StateGroupStore,
    settings: FinderSettings,
    room_id: str | None = None,
    diagnostics: Diagnostics | None = None,
) -> FinderResult:
    """Find the state groups that no event keeps alive.

    Args:
        store: Store to read from
        settings: Finder settings
        room_id: Restrict the search to one room
        diagnostics: Anomaly collector; built from the settings when omitted

    Returns:
        FinderResult with the ids in ascending order

    Raises:
        StoreConnectionError: If the store cannot be reached
        StoreQueryError: If a query fails
        SchemaMismatchError: If the schema is not what the finder reads
        FatalDataAnomalyError: If an anomaly's policy is ABORT
    """
    if diagnostics is None:
        diagnostics = Diagnostics(settings.anomaly_policy(), log_limit=settings.anomaly_log_limit)
    durations: dict[str, float] = {}

    loaded = await StateGroupLoader(store, settings).load(room_id)
    durations["load"] = loaded.duration_s

    started = time.monotonic()
    graph = build_graph(loaded, diagnostics)
    durations["index"] = time.monotonic() - started
    logger.info(f"Total state groups: {graph.index.known_count}")

    reachability = ReachabilityEngine().run(graph, diagnostics)
    durations["reachability"] = reachability.duration_s

    started = time.monotonic()
    unreferenced = collect_unreferenced(graph, reachability.kept, room_id, diagnostics)
    durations["extract"] = time.monotonic() - started

    logger.info(
        f"Found {len(unreferenced)} unreferenced groups",
        extra={
            "room_id": room_id,
            "unreferenced": len(unreferenced),
            "kept": reachability.kept_count,
            "anomalies": len(diagnostics),
        },
    )
    return FinderResult(
        room_id=room_id,
        unreferenced=unreferenced,
        fetched_groups=len(loaded.group_ids),
        total_groups=graph.index.known_count,
        kept_groups=reachability.kept_count,
        counts=loaded.counts(),
        diagnostics=diagnostics,
        durations=durations,
    )
