"""
Base protocol and types for state group store access.

This module defines the StateGroupStore protocol that all backends must
implement, along with the row types the scans return and the fixed table
contract the finder reads.

Invariants:
    - Every read of one run goes through one StoreSnapshot, so groups, edges
      and references are mutually consistent
    - Scans yield bounded pages; no backend materialises a whole table
      before the first page is returned
    - Backends never write

How to change safely:
    - Protocol changes require updating all implementations
    - REQUIRED_COLUMNS mirrors Synapse's schema; it is not ours to change
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncContextManager, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import FinderSettings

STATE_GROUPS_TABLE = "state_groups"
EDGES_TABLE = "state_group_edges"
REFERENCES_TABLE = "event_to_state_groups"

# (table, column) pairs the finder reads
REQUIRED_COLUMNS: tuple[tuple[str, str], ...] = (
    (STATE_GROUPS_TABLE, "id"),
    (STATE_GROUPS_TABLE, "room_id"),
    (EDGES_TABLE, "state_group"),
    (EDGES_TABLE, "prev_state_group"),
    (REFERENCES_TABLE, "event_id"),
    (REFERENCES_TABLE, "state_group"),
)


@dataclass(frozen=True)
class GroupRow:
    """A state group looked up by id.

    Attributes:
        group_id: State group id
        room_id: Room the group belongs to
    """

    group_id: int
    room_id: str


@dataclass(frozen=True)
class EdgeRow:
    """One ``state_group_edges`` row.

    Attributes:
        child_id: The group stored as a delta
        parent_id: The group it is a delta against (its prev_state_group)
        cross_room: True when both groups exist and belong to different rooms
    """

    child_id: int
    parent_id: int
    cross_room: bool = False


@runtime_checkable
class StoreSnapshot(Protocol):
    """Read-only view of the store as of one point in time.

    Scans may run concurrently with each other; implementations either give
    each scan its own connection on the same snapshot or serialise them on a
    shared one.
    """

    @abstractmethod
    def scan_groups(self, room_id: str | None, page_size: int) -> AsyncIterator[list[int]]:
        """Yield pages of state group ids in scope."""
        ...

    @abstractmethod
    def scan_edges(self, room_id: str | None, page_size: int) -> AsyncIterator[list[EdgeRow]]:
        """Yield pages of edges in scope.

        With a room scope, an edge is in scope when either end is in the
        room; an out-of-room child can still pin an in-room parent.
        """
        ...

    @abstractmethod
    def scan_roots(self, room_id: str | None, page_size: int) -> AsyncIterator[list[int]]:
        """Yield pages of distinct group ids referenced by in-scope events."""
        ...

    @abstractmethod
    async def fetch_groups(self, group_ids: Sequence[int]) -> list[GroupRow]:
        """Look up groups by id, regardless of room. Unknown ids are omitted."""
        ...

    @abstractmethod
    async def fetch_child_edges(self, group_ids: Sequence[int]) -> list[EdgeRow]:
        """Return every edge whose parent (prev_state_group) is in ``group_ids``."""
        ...

    @abstractmethod
    async def fetch_referenced(self, group_ids: Sequence[int]) -> list[int]:
        """Return the subset of ``group_ids`` referenced by any event."""
        ...


@runtime_checkable
class StateGroupStore(Protocol):
    """Protocol for state group store backends.

    Example:
        >>> store = PostgresStateGroupStore(dsn, settings)
        >>> async with store.snapshot() as snap:
        ...     async for page in snap.scan_groups(None, 50_000):
        ...         print(len(page))
    """

    @abstractmethod
    def snapshot(self) -> AsyncContextManager[StoreSnapshot]:
        """Open a consistent read-only snapshot.

        The snapshot and every connection behind it are released when the
        context exits, on success, failure or cancellation.

        Raises:
            StoreConnectionError: If the store cannot be reached
            SchemaMismatchError: If the expected tables or columns are missing
        """
        ...


def chunked(values: Iterable[int], size: int) -> Iterable[list[int]]:
    """Split ``values`` into lists of at most ``size`` items."""
    chunk: list[int] = []
    for value in values:
        chunk.append(value)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def create_store(dsn: str, settings: FinderSettings) -> StateGroupStore:
    """Factory function to create a store from a connection string.

    Args:
        dsn: PostgreSQL connection string (URL or key/value form)
        settings: Finder settings

    Returns:
        StateGroupStore implementation
    """
    from .postgres import PostgresStateGroupStore

    return PostgresStateGroupStore(dsn, settings)
