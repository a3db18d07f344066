"""
Error types for the unreferenced state group finder.

This module defines every exception that can end a run:
- FinderError: Base exception
- ConfigurationError: Invalid settings or command-line values
- StoreConnectionError: Store unreachable or connection lost
- StoreQueryError: Query failed (timeout, serialization failure, bad SQL)
- SchemaMismatchError: Store schema does not match the expected tables
- FatalDataAnomalyError: A data anomaly whose policy is ABORT
- OutputError: Result could not be written

Invariants:
    - All errors inherit from FinderError
    - Each error carries the process exit code the CLI reports for it
    - Only errors flagged as transient are ever retried

How to change safely:
    - Never reuse an exit code for a different error class
    - Keep transient classification conservative; a retried query reopens
      a fresh snapshot, so retrying a deterministic failure only wastes time
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .graph.anomalies import DataAnomaly


class FinderError(Exception):
    """Base exception for all finder errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    exit_code = 1

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FINDER_ERROR"
        self.details = details or {}


class ConfigurationError(FinderError):
    """Settings or command-line values are invalid."""

    exit_code = 2

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"setting": setting})
        self.setting = setting


class StoreError(FinderError):
    """Base class for failures talking to the relational store.

    Attributes:
        transient: Whether a fresh attempt could succeed
    """

    def __init__(
        self,
        message: str,
        code: str = "STORE_ERROR",
        transient: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.transient = transient


class StoreConnectionError(StoreError):
    """Failed to connect to the store, or the connection was lost.

    Raised when:
    - Server is unreachable
    - Connection times out
    - Authentication fails (not transient)
    """

    exit_code = 3

    def __init__(self, message: str, transient: bool = True) -> None:
        super().__init__(message, code="CONNECTION_ERROR", transient=transient)


class StoreQueryError(StoreError):
    """A query against the store failed.

    Raised when:
    - Statement timeout is hit
    - Snapshot serialization fails
    - The query itself is invalid
    """

    exit_code = 4

    def __init__(
        self,
        message: str,
        sqlstate: Optional[str] = None,
        transient: bool = False,
        code: str = "QUERY_ERROR",
    ) -> None:
        super().__init__(message, code=code, transient=transient, details={"sqlstate": sqlstate})
        self.sqlstate = sqlstate


class SchemaMismatchError(StoreQueryError):
    """The store does not expose the tables and columns the finder reads.

    This is a fatal configuration error: the finder must never silently skip
    a table it cannot read.
    """

    exit_code = 2

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message, code="SCHEMA_MISMATCH")
        self.missing = missing or []
        self.details["missing"] = self.missing


class FatalDataAnomalyError(FinderError):
    """A structural anomaly was observed and the policy for its kind is ABORT."""

    exit_code = 5

    def __init__(self, anomaly: DataAnomaly) -> None:
        super().__init__(
            f"Fatal data anomaly ({anomaly.kind.value}): {anomaly.message}",
            code="DATA_ANOMALY",
            details=anomaly.to_dict(),
        )
        self.anomaly = anomaly


class OutputError(FinderError):
    """The result could not be written.

    Nothing is left behind when this is raised: partially written temporary
    files are removed before the error propagates.
    """

    exit_code = 6

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="OUTPUT_ERROR", details={"path": path})
        self.path = path
