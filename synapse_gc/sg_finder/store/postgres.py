"""
PostgreSQL state group store.

This module reads Synapse's state group tables through psycopg 3's asyncio
interface. It works with any PostgreSQL-compatible server that supports
exported snapshots (PostgreSQL 9.2+).

Invariants:
    - Every connection runs REPEATABLE READ READ ONLY transactions
    - With parallel scans, the primary connection exports its snapshot and
      each scan connection imports it before issuing any other statement,
      so all three scans see exactly the same data
    - Scans stream through server-side cursors in ``page_size`` pages
    - Every connection carries connect and statement timeouts
    - Connections are closed on every exit path; in-flight queries are
      cancelled server side before the connection is dropped

How to change safely:
    - Test against a real Synapse schema (see tests/e2e)
    - Keep all SQL read-only; the finder never deletes anything
    - Check EXPLAIN plans on a large database before changing a scan query
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import psycopg
from psycopg import IsolationLevel, errors, sql
from psycopg.conninfo import conninfo_to_dict, make_conninfo

from ..errors import (
    ConfigurationError,
    SchemaMismatchError,
    StoreConnectionError,
    StoreError,
    StoreQueryError,
)
from .base import REQUIRED_COLUMNS, EdgeRow, GroupRow, chunked

if TYPE_CHECKING:
    from ..config import FinderSettings

logger = logging.getLogger(__name__)

APPLICATION_NAME = "synapse-find-unreferenced-state-groups"

T = TypeVar("T")

# SQLSTATEs worth a fresh attempt on a new snapshot
_TRANSIENT_QUERY_STATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "57014",  # query_canceled (statement_timeout)
    "55P03",  # lock_not_available
}

_EDGE_COLUMNS = """
    e.state_group, e.prev_state_group,
    COALESCE(c.room_id <> p.room_id, FALSE) AS cross_room
"""

_GROUPS_ALL = "SELECT id FROM state_groups"
_GROUPS_IN_ROOM = "SELECT id FROM state_groups WHERE room_id = %(room_id)s"

_EDGES_ALL = f"""
    SELECT {_EDGE_COLUMNS}
    FROM state_group_edges AS e
    LEFT JOIN state_groups AS c ON c.id = e.state_group
    LEFT JOIN state_groups AS p ON p.id = e.prev_state_group
"""

# Either end in the room. UNION removes the edges that match on both sides.
_EDGES_IN_ROOM = f"""
    SELECT {_EDGE_COLUMNS}
    FROM state_groups AS c
    JOIN state_group_edges AS e ON e.state_group = c.id
    LEFT JOIN state_groups AS p ON p.id = e.prev_state_group
    WHERE c.room_id = %(room_id)s
    UNION
    SELECT {_EDGE_COLUMNS}
    FROM state_groups AS p
    JOIN state_group_edges AS e ON e.prev_state_group = p.id
    LEFT JOIN state_groups AS c ON c.id = e.state_group
    WHERE p.room_id = %(room_id)s
"""

_ROOTS_ALL = "SELECT DISTINCT state_group FROM event_to_state_groups"
_ROOTS_IN_ROOM = """
    SELECT DISTINCT e.state_group
    FROM event_to_state_groups AS e
    JOIN state_groups AS sg ON sg.id = e.state_group
    WHERE sg.room_id = %(room_id)s
"""

_FETCH_GROUPS = "SELECT id, room_id FROM state_groups WHERE id = ANY(%(ids)s::bigint[])"
_FETCH_CHILD_EDGES = f"""
    SELECT {_EDGE_COLUMNS}
    FROM state_group_edges AS e
    LEFT JOIN state_groups AS c ON c.id = e.state_group
    LEFT JOIN state_groups AS p ON p.id = e.prev_state_group
    WHERE e.prev_state_group = ANY(%(ids)s::bigint[])
"""
_FETCH_REFERENCED = """
    SELECT DISTINCT state_group FROM event_to_state_groups
    WHERE state_group = ANY(%(ids)s::bigint[])
"""

_SCHEMA_COLUMNS = """
    SELECT table_name, column_name
    FROM information_schema.columns
    WHERE table_schema = ANY(current_schemas(false))
      AND table_name = ANY(%(tables)s::text[])
"""


def classify_error(error: psycopg.Error) -> StoreError:
    """Map a psycopg error onto the finder's error taxonomy.

    Args:
        error: Error raised by psycopg

    Returns:
        StoreConnectionError, StoreQueryError or SchemaMismatchError with the
        ``transient`` flag set for failures a fresh attempt could fix
    """
    sqlstate = error.sqlstate
    message = str(error).strip() or type(error).__name__

    if isinstance(error, (errors.UndefinedTable, errors.UndefinedColumn)):
        return SchemaMismatchError(f"Store schema mismatch: {message}", missing=[message])

    if sqlstate and sqlstate.startswith("28"):
        return StoreConnectionError(f"Authentication failed: {message}", transient=False)

    if sqlstate and (sqlstate.startswith("08") or sqlstate in ("57P01", "57P02", "57P03")):
        return StoreConnectionError(f"Connection lost: {message}")

    if sqlstate in _TRANSIENT_QUERY_STATES:
        return StoreQueryError(f"Query failed: {message}", sqlstate=sqlstate, transient=True)

    if isinstance(error, psycopg.OperationalError) and sqlstate is None:
        # libpq-level failures (refused, unreachable, timeout) carry no SQLSTATE
        return StoreConnectionError(f"Connection failed: {message}")

    return StoreQueryError(f"Query failed: {message}", sqlstate=sqlstate)


def redact_dsn(dsn: str) -> str:
    """Return ``dsn`` in key/value form with any password masked.

    Raises:
        ConfigurationError: If ``dsn`` is not a valid connection string
    """
    try:
        params = conninfo_to_dict(dsn)
    except psycopg.ProgrammingError as e:
        raise ConfigurationError(f"Invalid connection string: {e}", setting="postgres_url") from e
    if "password" in params:
        params["password"] = "***"
    return make_conninfo(**params)


@contextlib.contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except psycopg.Error as e:
        raise classify_error(e) from e


async def _cancel_quietly(conn: psycopg.AsyncConnection) -> None:
    """Ask the server to abandon whatever ``conn`` is running."""
    if conn.closed:
        return
    with contextlib.suppress(psycopg.Error):
        await conn.cancel_safe(timeout=5.0)


class PostgresSnapshot:
    """One exported snapshot and the connections reading from it.

    Attributes:
        snapshot_id: Exported snapshot id, or None when scans share the
            primary connection
    """

    def __init__(
        self,
        store: PostgresStateGroupStore,
        primary: psycopg.AsyncConnection,
        snapshot_id: str | None,
    ) -> None:
        self._store = store
        self._primary = primary
        self.snapshot_id = snapshot_id

    @contextlib.asynccontextmanager
    async def _reader(self) -> AsyncIterator[psycopg.AsyncConnection]:
        """Connection positioned on this snapshot for one scan."""
        if self.snapshot_id is None:
            yield self._primary
            return

        conn = await self._store.connect()
        try:
            async with conn.transaction():
                try:
                    await conn.execute(
                        sql.SQL("SET TRANSACTION SNAPSHOT {}").format(
                            sql.Literal(self.snapshot_id)
                        )
                    )
                    yield conn
                except BaseException:
                    await _cancel_quietly(conn)
                    raise
        finally:
            await conn.close()

    async def _scan(
        self,
        name: str,
        query: str,
        params: dict[str, Any],
        page_size: int,
        convert: Callable[[tuple[Any, ...]], T],
    ) -> AsyncIterator[list[T]]:
        with _translate_errors():
            async with self._reader() as conn:
                async with conn.cursor(name=f"sg_finder_{name}") as cur:
                    await cur.execute(query, params)
                    while True:
                        rows = await cur.fetchmany(page_size)
                        if not rows:
                            break
                        yield [convert(row) for row in rows]

    def scan_groups(self, room_id: str | None, page_size: int) -> AsyncIterator[list[int]]:
        query = _GROUPS_ALL if room_id is None else _GROUPS_IN_ROOM
        return self._scan("groups", query, {"room_id": room_id}, page_size, _first)

    def scan_edges(self, room_id: str | None, page_size: int) -> AsyncIterator[list[EdgeRow]]:
        query = _EDGES_ALL if room_id is None else _EDGES_IN_ROOM
        return self._scan("edges", query, {"room_id": room_id}, page_size, _edge)

    def scan_roots(self, room_id: str | None, page_size: int) -> AsyncIterator[list[int]]:
        query = _ROOTS_ALL if room_id is None else _ROOTS_IN_ROOM
        return self._scan("roots", query, {"room_id": room_id}, page_size, _first)

    async def _fetch(self, query: str, group_ids: Sequence[int]) -> list[tuple[Any, ...]]:
        rows: list[tuple[Any, ...]] = []
        with _translate_errors():
            for chunk in chunked(group_ids, self._store.settings.page_size):
                cur = await self._primary.execute(query, {"ids": chunk})
                rows.extend(await cur.fetchall())
        return rows

    async def fetch_groups(self, group_ids: Sequence[int]) -> list[GroupRow]:
        return [GroupRow(row[0], row[1]) for row in await self._fetch(_FETCH_GROUPS, group_ids)]

    async def fetch_child_edges(self, group_ids: Sequence[int]) -> list[EdgeRow]:
        return [_edge(row) for row in await self._fetch(_FETCH_CHILD_EDGES, group_ids)]

    async def fetch_referenced(self, group_ids: Sequence[int]) -> list[int]:
        return [row[0] for row in await self._fetch(_FETCH_REFERENCED, group_ids)]


class PostgresStateGroupStore:
    """PostgreSQL implementation of the StateGroupStore protocol.

    Attributes:
        dsn: Connection string (URL or key/value form)
        settings: Finder settings (timeouts, paging, parallelism)

    Example:
        >>> store = PostgresStateGroupStore("postgresql://synapse@db/synapse", settings)
        >>> async with store.snapshot() as snap:
        ...     async for page in snap.scan_roots("!room:example.org", 50_000):
        ...         print(page[:3])
    """

    def __init__(self, dsn: str, settings: FinderSettings) -> None:
        self.dsn = dsn
        self.settings = settings

    async def connect(self) -> psycopg.AsyncConnection:
        """Open a connection configured for read-only snapshot reads.

        Raises:
            StoreConnectionError: If the server cannot be reached
        """
        with _translate_errors():
            conn = await psycopg.AsyncConnection.connect(
                self.dsn,
                autocommit=True,
                connect_timeout=self.settings.connect_timeout_s,
                application_name=APPLICATION_NAME,
            )
            try:
                await conn.execute(
                    "SELECT set_config('statement_timeout', %s, false)",
                    (str(self.settings.statement_timeout_ms),),
                )
                await conn.set_isolation_level(IsolationLevel.REPEATABLE_READ)
                await conn.set_read_only(True)
            except BaseException:
                await conn.close()
                raise
        return conn

    @contextlib.asynccontextmanager
    async def snapshot(self) -> AsyncIterator[PostgresSnapshot]:
        """Open a consistent snapshot of the three state group tables.

        Raises:
            StoreConnectionError: If the server cannot be reached
            SchemaMismatchError: If a table or column is missing
        """
        conn = await self.connect()
        logger.debug("Connected to store", extra={"dsn": redact_dsn(self.dsn)})
        try:
            with _translate_errors():
                await self.check_schema(conn)
                parallel = self.settings.parallel_scans and not await self._in_recovery(conn)
                async with conn.transaction():
                    try:
                        snapshot_id = await self._export_snapshot(conn) if parallel else None
                        logger.debug(
                            "Opened store snapshot",
                            extra={"snapshot_id": snapshot_id, "parallel_scans": parallel},
                        )
                        yield PostgresSnapshot(self, conn, snapshot_id)
                    except BaseException:
                        await _cancel_quietly(conn)
                        raise
        finally:
            await conn.close()

    async def check_schema(self, conn: psycopg.AsyncConnection) -> None:
        """Verify every table and column the finder reads exists.

        Raises:
            SchemaMismatchError: Listing each missing ``table.column``
        """
        tables = sorted({table for table, _ in REQUIRED_COLUMNS})
        cur = await conn.execute(_SCHEMA_COLUMNS, {"tables": tables})
        present = {(row[0], row[1]) for row in await cur.fetchall()}
        missing = [f"{t}.{c}" for t, c in REQUIRED_COLUMNS if (t, c) not in present]
        if missing:
            raise SchemaMismatchError(
                f"Store schema does not match Synapse's state group tables; missing: "
                f"{', '.join(missing)}",
                missing=missing,
            )

    async def _in_recovery(self, conn: psycopg.AsyncConnection) -> bool:
        # Standbys cannot export snapshots
        cur = await conn.execute("SELECT pg_is_in_recovery()")
        row = await cur.fetchone()
        if row and row[0]:
            logger.info("Store is a standby; scans will share one connection")
            return True
        return False

    async def _export_snapshot(self, conn: psycopg.AsyncConnection) -> str:
        cur = await conn.execute("SELECT pg_export_snapshot()")
        row = await cur.fetchone()
        if row is None or row[0] is None:
            raise StoreQueryError("pg_export_snapshot() returned no snapshot id")
        return row[0]


def _first(row: tuple[Any, ...]) -> int:
    return row[0]


def _edge(row: tuple[Any, ...]) -> EdgeRow:
    return EdgeRow(child_id=row[0], parent_id=row[1], cross_room=bool(row[2]))


__all__ = [
    "APPLICATION_NAME",
    "PostgresSnapshot",
    "PostgresStateGroupStore",
    "classify_error",
    "redact_dsn",
]
