"""
Loading of the state group graph from the store.

The loader opens one snapshot, runs the group, edge and root scans
concurrently, and folds their pages into compact buffers:

    scan_groups ─┐
    scan_edges  ─┼─► barrier ─► resolve missing groups ─► LoadedGraph
    scan_roots  ─┘              (room-scoped loads only)

Ids are only buffered here; they are interned by build_graph() once every
scan has finished, so the order pages arrive in never matters.

Invariants:
    - All reads of one attempt use one snapshot, and the snapshot is
      released on every path (success, failure, cancellation)
    - A failing scan cancels its siblings before the error propagates
    - Only transient store errors are retried, each retry opens a fresh
      snapshot and starts from empty buffers
    - Resolution never walks a foreign group's ancestors; only a descendant
      can keep an in-scope group alive
    - Every foreign group reached as a child is explored exactly once, even
      if it was first found as a parent

How to change safely:
    - Keep buffers as array('q'); a list of ints is ~4x larger
    - Anything that affects the result must be read inside the snapshot
"""

from __future__ import annotations

import asyncio
import logging
import time
from array import array
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import StoreError
from ..store.base import EdgeRow, StateGroupStore, StoreSnapshot

if TYPE_CHECKING:
    from ..config import FinderSettings

logger = logging.getLogger(__name__)


@dataclass
class LoadedGraph:
    """Raw buffers read from one snapshot.

    Attributes:
        room_id: Room scope, None for the whole database
        group_ids: Groups in scope
        edge_children: Child side of each edge, parallel to edge_parents
        edge_parents: Parent side of each edge
        cross_room_edges: Edges whose ends belong to different rooms
        root_ids: Groups referenced by events
        foreign_groups: Groups outside the scope found while resolving, with
            their room
        pinned_ids: Foreign groups kept because resolution stopped before
            their descendants were explored
        missing_ids: Ids looked up during resolution that do not exist
        resolve_rounds: Resolution rounds run
        attempts: Load attempts, including the successful one
        duration_s: Wall time of the successful attempt
    """

    room_id: str | None = None
    group_ids: array = field(default_factory=lambda: array("q"))
    edge_children: array = field(default_factory=lambda: array("q"))
    edge_parents: array = field(default_factory=lambda: array("q"))
    cross_room_edges: set[tuple[int, int]] = field(default_factory=set)
    root_ids: array = field(default_factory=lambda: array("q"))
    foreign_groups: dict[int, str] = field(default_factory=dict)
    pinned_ids: array = field(default_factory=lambda: array("q"))
    missing_ids: set[int] = field(default_factory=set)
    resolve_rounds: int = 0
    attempts: int = 1
    duration_s: float = 0.0

    def add_edge(self, edge: EdgeRow) -> None:
        self.edge_children.append(edge.child_id)
        self.edge_parents.append(edge.parent_id)
        if edge.cross_room:
            self.cross_room_edges.add((edge.child_id, edge.parent_id))

    @property
    def edge_count(self) -> int:
        return len(self.edge_children)

    def counts(self) -> dict[str, int]:
        return {
            "groups": len(self.group_ids),
            "edges": self.edge_count,
            "roots": len(self.root_ids),
            "foreign_groups": len(self.foreign_groups),
            "pinned": len(self.pinned_ids),
            "missing": len(self.missing_ids),
            "resolve_rounds": self.resolve_rounds,
            "attempts": self.attempts,
        }


async def gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """Await all of ``aws``; if one fails, cancel the rest and re-raise.

    asyncio.gather() leaves the remaining tasks running when one raises;
    the scans share a snapshot that is about to be released, so they must
    be stopped and awaited first.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, StoreError) and error.transient


class StateGroupLoader:
    """Reads the state group graph of a room, or of the whole database.

    Example:
        >>> loader = StateGroupLoader(store, FinderSettings())
        >>> loaded = await loader.load("!room:example.org")
        >>> loaded.counts()["groups"]
        1204
    """

    def __init__(self, store: StateGroupStore, settings: FinderSettings) -> None:
        self.store = store
        self.settings = settings

    async def load(self, room_id: str | None) -> LoadedGraph:
        """Load with bounded retries of transient store failures.

        Args:
            room_id: Room scope, None for every room

        Returns:
            Buffers of one consistent snapshot

        Raises:
            StoreConnectionError: If the store stays unreachable
            StoreQueryError: If a query fails, or keeps failing transiently
            SchemaMismatchError: If the schema is not what the finder reads
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_min_wait_s,
                min=self.settings.retry_min_wait_s,
                max=self.settings.retry_max_wait_s,
            ),
            retry=retry_if_exception(_is_transient),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                loaded = await self._load_once(room_id)
                loaded.attempts = attempt.retry_state.attempt_number
        return loaded

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Load attempt {retry_state.attempt_number} failed, retrying in {delay:.1f}s: {error}",
            extra={
                "attempt": retry_state.attempt_number,
                "max_attempts": self.settings.max_attempts,
                "error_code": getattr(error, "code", None),
            },
        )

    async def _load_once(self, room_id: str | None) -> LoadedGraph:
        started = time.monotonic()
        loaded = LoadedGraph(room_id=room_id)
        scope = room_id or "all rooms"
        logger.info(f"Loading state groups for {scope}")

        async with self.store.snapshot() as snapshot:
            await gather_or_cancel(
                self._scan_groups(snapshot, loaded),
                self._scan_edges(snapshot, loaded),
                self._scan_roots(snapshot, loaded),
            )
            if room_id is not None and self.settings.resolve_missing:
                await self._resolve_missing(snapshot, loaded)

        loaded.duration_s = time.monotonic() - started
        logger.info(
            f"Fetched {len(loaded.group_ids)} state groups from DB",
            extra={**loaded.counts(), "duration_s": round(loaded.duration_s, 3)},
        )
        return loaded

    async def _scan_groups(self, snapshot: StoreSnapshot, loaded: LoadedGraph) -> None:
        pages = 0
        async for page in snapshot.scan_groups(loaded.room_id, self.settings.page_size):
            loaded.group_ids.extend(page)
            pages += 1
            logger.debug(
                "Scanned state groups page",
                extra={"page": pages, "rows": len(page), "total": len(loaded.group_ids)},
            )
        logger.info(f"Scanned {len(loaded.group_ids)} state groups in {pages} page(s)")

    async def _scan_edges(self, snapshot: StoreSnapshot, loaded: LoadedGraph) -> None:
        pages = 0
        async for page in snapshot.scan_edges(loaded.room_id, self.settings.page_size):
            for edge in page:
                loaded.add_edge(edge)
            pages += 1
            logger.debug(
                "Scanned edges page",
                extra={"page": pages, "rows": len(page), "total": loaded.edge_count},
            )
        logger.info(f"Scanned {loaded.edge_count} edges in {pages} page(s)")

    async def _scan_roots(self, snapshot: StoreSnapshot, loaded: LoadedGraph) -> None:
        pages = 0
        async for page in snapshot.scan_roots(loaded.room_id, self.settings.page_size):
            loaded.root_ids.extend(page)
            pages += 1
            logger.debug(
                "Scanned references page",
                extra={"page": pages, "rows": len(page), "total": len(loaded.root_ids)},
            )
        logger.info(f"Scanned {len(loaded.root_ids)} referenced state groups in {pages} page(s)")

    async def _resolve_missing(self, snapshot: StoreSnapshot, loaded: LoadedGraph) -> None:
        """Look up edge endpoints that lie outside the scanned groups.

        Groups that exist are recorded as foreign. A foreign group reached
        as the child of an edge is explored once: its own children and
        whether an event references it, since either can keep an in-scope
        ancestor alive. This holds for a group first seen as the parent of
        an in-scope group too, once it also turns up as a child. Ids that
        exist nowhere are left for build_graph() to report as orphans.
        """
        in_scope = set(loaded.group_ids)
        lookup: set[int] = set()
        explore_next: set[int] = set()
        explored: set[int] = set()
        for child_id, parent_id in zip(loaded.edge_children, loaded.edge_parents):
            if child_id not in in_scope:
                lookup.add(child_id)
                explore_next.add(child_id)
            if parent_id not in in_scope:
                lookup.add(parent_id)

        # Edges to children that have not been looked up yet
        frontier: list[EdgeRow] = []
        while lookup or explore_next:
            if loaded.resolve_rounds >= self.settings.max_resolve_rounds:
                self._pin_frontier(loaded, frontier, explore_next.difference(explored))
                break
            loaded.resolve_rounds += 1

            if lookup:
                ids = sorted(lookup)
                logger.info(f"Fetching {len(ids)} missing state groups from DB")
                found = await snapshot.fetch_groups(ids)
                for row in found:
                    loaded.foreign_groups[row.group_id] = row.room_id
                loaded.missing_ids.update(lookup.difference(loaded.foreign_groups))
                logger.info(
                    f"Got {len(found)} from DB",
                    extra={"round": loaded.resolve_rounds, "still_missing": len(ids) - len(found)},
                )

            for edge in frontier:
                loaded.add_edge(edge)
            explore = sorted(explore_next.intersection(loaded.foreign_groups).difference(explored))
            explored.update(explore)
            lookup = set()
            explore_next = set()
            frontier = []
            if not explore:
                continue

            for edge in await snapshot.fetch_child_edges(explore):
                child_id = edge.child_id
                if child_id in in_scope:
                    continue
                if child_id in loaded.foreign_groups or child_id in loaded.missing_ids:
                    loaded.add_edge(edge)
                    if child_id in loaded.foreign_groups and child_id not in explored:
                        explore_next.add(child_id)
                    continue
                frontier.append(edge)
                lookup.add(child_id)
                explore_next.add(child_id)
            loaded.root_ids.extend(await snapshot.fetch_referenced(explore))

    def _pin_frontier(
        self, loaded: LoadedGraph, frontier: list[EdgeRow], unexplored: set[int]
    ) -> None:
        # Parents of unlooked-up children, and known groups whose children were never read
        pending = {edge.parent_id for edge in frontier}
        pending.update(unexplored.intersection(loaded.foreign_groups))
        pinned = sorted(pending)
        loaded.pinned_ids.extend(pinned)
        logger.warning(
            f"Stopped resolving missing state groups after {loaded.resolve_rounds} rounds; "
            f"keeping {len(pinned)} group(s) whose descendants were not explored",
            extra={"unexplored_edges": len(frontier), "pinned": len(pinned)},
        )
