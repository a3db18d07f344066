"""
In-memory state group store for testing.

This module provides a dict-backed implementation of the StateGroupStore
protocol for:
- Unit tests
- Integration tests of the loader and the full pipeline
- Local experiments without a PostgreSQL server

Invariants:
    - snapshot() copies the data, so writes made while a run is in progress
      are invisible to it, exactly like a REPEATABLE READ transaction
    - Scans yield pages of at most ``page_size`` rows and give control back
      to the event loop between pages
    - Injected failures are raised before any row is yielded

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep the scan semantics identical to the PostgreSQL queries
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field

from ..errors import SchemaMismatchError, StoreError
from .base import REQUIRED_COLUMNS, EdgeRow, GroupRow

logger = logging.getLogger(__name__)

STAGES = ("snapshot", "groups", "edges", "roots", "fetch")


@dataclass
class _Tables:
    """Copy of the three tables taken when a snapshot opens."""

    groups: dict[int, str] = field(default_factory=dict)
    edges: list[tuple[int, int]] = field(default_factory=list)
    references: list[tuple[str, int]] = field(default_factory=list)


class InMemorySnapshot:
    """Snapshot over copied in-memory tables."""

    def __init__(self, store: InMemoryStateGroupStore, tables: _Tables) -> None:
        self._store = store
        self._tables = tables

    def _in_room(self, group_id: int, room_id: str | None) -> bool:
        return room_id is None or self._tables.groups.get(group_id) == room_id

    def _edge_row(self, child_id: int, parent_id: int) -> EdgeRow:
        child_room = self._tables.groups.get(child_id)
        parent_room = self._tables.groups.get(parent_id)
        cross_room = child_room is not None and parent_room is not None and child_room != parent_room
        return EdgeRow(child_id, parent_id, cross_room)

    async def _pages(self, stage: str, rows: Iterable, page_size: int) -> AsyncIterator[list]:
        self._store._maybe_fail(stage)
        page: list = []
        for row in rows:
            page.append(row)
            if len(page) >= page_size:
                self._store.pages_served[stage] += 1
                yield page
                page = []
                await asyncio.sleep(0)
        if page:
            self._store.pages_served[stage] += 1
            yield page

    def scan_groups(self, room_id: str | None, page_size: int) -> AsyncIterator[list[int]]:
        rows = (g for g in self._tables.groups if self._in_room(g, room_id))
        return self._pages("groups", rows, page_size)

    def scan_edges(self, room_id: str | None, page_size: int) -> AsyncIterator[list[EdgeRow]]:
        seen: set[tuple[int, int]] = set()

        def rows() -> Iterable[EdgeRow]:
            for child_id, parent_id in self._tables.edges:
                if (child_id, parent_id) in seen:
                    continue
                if self._in_room(child_id, room_id) or (
                    room_id is not None and self._in_room(parent_id, room_id)
                ):
                    seen.add((child_id, parent_id))
                    yield self._edge_row(child_id, parent_id)

        return self._pages("edges", rows(), page_size)

    def scan_roots(self, room_id: str | None, page_size: int) -> AsyncIterator[list[int]]:
        def rows() -> Iterable[int]:
            seen: set[int] = set()
            for _event_id, group_id in self._tables.references:
                if group_id in seen:
                    continue
                if room_id is None or self._tables.groups.get(group_id) == room_id:
                    seen.add(group_id)
                    yield group_id

        return self._pages("roots", rows(), page_size)

    async def fetch_groups(self, group_ids: Sequence[int]) -> list[GroupRow]:
        self._store._maybe_fail("fetch")
        return [
            GroupRow(g, self._tables.groups[g]) for g in group_ids if g in self._tables.groups
        ]

    async def fetch_child_edges(self, group_ids: Sequence[int]) -> list[EdgeRow]:
        self._store._maybe_fail("fetch")
        wanted = set(group_ids)
        return [self._edge_row(c, p) for c, p in dict.fromkeys(self._tables.edges) if p in wanted]

    async def fetch_referenced(self, group_ids: Sequence[int]) -> list[int]:
        self._store._maybe_fail("fetch")
        referenced = {g for _, g in self._tables.references}
        return [g for g in dict.fromkeys(group_ids) if g in referenced]


class InMemoryStateGroupStore:
    """In-memory implementation of StateGroupStore for testing.

    Attributes:
        groups: state_groups rows (id -> room_id)
        edges: state_group_edges rows (state_group, prev_state_group)
        references: event_to_state_groups rows (event_id, state_group)
        snapshots_opened: Number of snapshot() calls, failed ones included
        open_snapshots: Snapshots currently held open
        pages_served: Pages yielded per scan stage

    Example:
        >>> store = InMemoryStateGroupStore()
        >>> store.add_group(1, "!a:example.org")
        >>> store.add_group(2, "!a:example.org", prev=1)
        >>> store.add_reference("$event", 2)
    """

    def __init__(self, missing_columns: Iterable[str] = ()) -> None:
        self.groups: dict[int, str] = {}
        self.edges: list[tuple[int, int]] = []
        self.references: list[tuple[str, int]] = []
        self.missing_columns = list(missing_columns)
        self.snapshots_opened = 0
        self.open_snapshots = 0
        self.pages_served: dict[str, int] = {stage: 0 for stage in STAGES}
        self._failures: dict[str, list[StoreError]] = {stage: [] for stage in STAGES}

    def add_group(self, group_id: int, room_id: str, prev: int | None = None) -> None:
        self.groups[group_id] = room_id
        if prev is not None:
            self.edges.append((group_id, prev))

    def add_edge(self, child_id: int, parent_id: int) -> None:
        self.edges.append((child_id, parent_id))

    def add_reference(self, event_id: str, group_id: int) -> None:
        self.references.append((event_id, group_id))

    def inject_failure(self, error: StoreError, times: int = 1, stage: str = "snapshot") -> None:
        """Make the next ``times`` operations of ``stage`` raise ``error``."""
        if stage not in self._failures:
            raise ValueError(f"Unknown stage '{stage}'. Must be one of: {', '.join(STAGES)}")
        self._failures[stage].extend([error] * times)

    def _maybe_fail(self, stage: str) -> None:
        if self._failures[stage]:
            raise self._failures[stage].pop(0)

    @contextlib.asynccontextmanager
    async def snapshot(self) -> AsyncIterator[InMemorySnapshot]:
        self.snapshots_opened += 1
        self._maybe_fail("snapshot")
        if self.missing_columns:
            valid = {f"{t}.{c}" for t, c in REQUIRED_COLUMNS}
            missing = [c for c in self.missing_columns if c in valid]
            raise SchemaMismatchError(f"missing: {', '.join(missing)}", missing=missing)

        tables = _Tables(
            groups=dict(self.groups),
            edges=list(self.edges),
            references=list(self.references),
        )
        self.open_snapshots += 1
        logger.debug("InMemoryStateGroupStore snapshot opened")
        try:
            yield InMemorySnapshot(self, tables)
        finally:
            self.open_snapshots -= 1
            logger.debug("InMemoryStateGroupStore snapshot released")
