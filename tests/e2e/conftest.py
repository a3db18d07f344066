"""
E2E test fixtures for the finder.

These tests need a PostgreSQL server the test user may create schemas on.
Each test gets its own throwaway schema holding Synapse's three state group
tables, selected through the connection's search_path.
"""

import os
import uuid
from typing import Generator

import psycopg
import pytest
from psycopg.conninfo import make_conninfo

E2E_DSN = os.environ.get("SG_FINDER_E2E_DSN")

STATE_GROUPS_DDL = "CREATE TABLE state_groups (id BIGINT PRIMARY KEY, room_id TEXT NOT NULL, event_id TEXT)"
EDGES_DDL = "CREATE TABLE state_group_edges (state_group BIGINT NOT NULL, prev_state_group BIGINT NOT NULL)"
REFERENCES_DDL = (
    "CREATE TABLE event_to_state_groups (event_id TEXT PRIMARY KEY, state_group BIGINT NOT NULL)"
)


class SynapseSchema:
    """A throwaway schema with Synapse's state group tables."""

    def __init__(self, admin_dsn: str, tables: tuple[str, ...]) -> None:
        self.name = f"sg_finder_e2e_{uuid.uuid4().hex[:8]}"
        self.admin_dsn = admin_dsn
        self.dsn = make_conninfo(admin_dsn, options=f"-c search_path={self.name}")
        with psycopg.connect(admin_dsn, autocommit=True) as conn:
            conn.execute(f"CREATE SCHEMA {self.name}")
        with psycopg.connect(self.dsn, autocommit=True) as conn:
            for ddl in tables:
                conn.execute(ddl)

    def populate(self, groups, edges=(), roots=()) -> None:
        """Insert rows; groups maps id -> room."""
        with psycopg.connect(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    "INSERT INTO state_groups (id, room_id, event_id) VALUES (%s, %s, %s)",
                    [(g, room, f"$create{g}") for g, room in groups.items()],
                )
                cur.executemany(
                    "INSERT INTO state_group_edges (state_group, prev_state_group) VALUES (%s, %s)",
                    list(edges),
                )
                cur.executemany(
                    "INSERT INTO event_to_state_groups (event_id, state_group) VALUES (%s, %s)",
                    [(f"$event{n}", g) for n, g in enumerate(roots)],
                )

    def drop(self) -> None:
        with psycopg.connect(self.admin_dsn, autocommit=True) as conn:
            conn.execute(f"DROP SCHEMA {self.name} CASCADE")


@pytest.fixture(scope="session")
def e2e_dsn() -> str:
    if not E2E_DSN:
        pytest.skip("E2E tests disabled. Set SG_FINDER_E2E_DSN to enable.")
    return E2E_DSN


@pytest.fixture
def synapse_db(e2e_dsn) -> Generator[SynapseSchema, None, None]:
    """Schema with all three tables."""
    schema = SynapseSchema(e2e_dsn, (STATE_GROUPS_DDL, EDGES_DDL, REFERENCES_DDL))
    try:
        yield schema
    finally:
        schema.drop()


@pytest.fixture
def broken_synapse_db(e2e_dsn) -> Generator[SynapseSchema, None, None]:
    """Schema without state_group_edges."""
    schema = SynapseSchema(e2e_dsn, (STATE_GROUPS_DDL, REFERENCES_DDL))
    try:
        yield schema
    finally:
        schema.drop()
