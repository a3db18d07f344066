"""
State group store access.

This module provides a pluggable read-only store interface supporting:
- PostgreSQL (the Synapse database, via psycopg 3)
- In-memory (for testing)

Invariants:
    - All reads of one run go through a single consistent snapshot
    - Scans are paged; nothing is materialised whole before paging starts
    - Backends never write

How to change safely:
    - New backends must implement the StateGroupStore protocol
    - Keep scan semantics identical across backends; the in-memory backend
      is what the pipeline tests run against
"""

from .base import (
    REQUIRED_COLUMNS,
    EdgeRow,
    GroupRow,
    StateGroupStore,
    StoreSnapshot,
    create_store,
)
from .memory import InMemoryStateGroupStore
from .postgres import PostgresStateGroupStore

__all__ = [
    # Protocol and types
    "StateGroupStore",
    "StoreSnapshot",
    "EdgeRow",
    "GroupRow",
    "REQUIRED_COLUMNS",
    # Factory
    "create_store",
    # Implementations
    "PostgresStateGroupStore",
    "InMemoryStateGroupStore",
]
