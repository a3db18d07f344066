"""
Configuration management for the unreferenced state group finder.

Settings come from environment variables prefixed with ``SG_FINDER_`` and
can be overridden per run from the command line. The connection string is
never part of the settings object; it is passed explicitly so it cannot end
up in a log line by accident.

Invariants:
    - All settings have defaults suitable for a production-sized database
    - Page size, timeouts and retry bounds are always positive
    - The connection string is never stored here, so it is never logged

How to change safely:
    - Add new settings with defaults that keep existing runs unchanged
    - Every new anomaly kind needs an ``on_<kind>`` setting
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from .errors import ConfigurationError
from .graph.anomalies import AnomalyKind, AnomalyPolicy, Severity

logger = logging.getLogger(__name__)


class FinderSettings(BaseSettings):
    """Finder configuration loaded from environment."""

    # Loader paging
    page_size: int = Field(default=50_000, gt=0, description="Rows fetched per round trip")
    parallel_scans: bool = Field(
        default=True,
        description="Run the three scans on separate connections sharing one exported snapshot",
    )
    resolve_missing: bool = Field(
        default=True,
        description="Look up groups referenced from the scope but stored outside it",
    )
    max_resolve_rounds: int = Field(default=64, gt=0)

    # Timeouts
    connect_timeout_s: int = Field(default=10, gt=0, description="Connection timeout seconds")
    statement_timeout_ms: int = Field(default=300_000, gt=0, description="Per-statement timeout")

    # Retry of transient store failures
    max_attempts: int = Field(default=5, gt=0, description="Load attempts before giving up")
    retry_min_wait_s: float = Field(default=1.0, ge=0)
    retry_max_wait_s: float = Field(default=30.0, ge=0)

    # Anomaly policy
    on_cycle: Severity = Severity.WARN
    on_orphan_reference: Severity = Severity.WARN
    on_cross_room_edge: Severity = Severity.WARN
    on_room_mismatch: Severity = Severity.WARN
    on_multiple_parents: Severity = Severity.WARN
    anomaly_log_limit: int = Field(default=20, ge=0)

    # Observability
    log_level: str = Field(default="INFO")
    log_format: Literal["text", "json"] = Field(default="text")

    model_config = {"env_prefix": "SG_FINDER_"}

    @field_validator(
        "on_cycle",
        "on_orphan_reference",
        "on_cross_room_edge",
        "on_room_mismatch",
        "on_multiple_parents",
        mode="before",
    )
    @classmethod
    def _lower_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level '{value}'")
        return level

    @classmethod
    def load(cls) -> FinderSettings:
        """Load settings from the environment.

        Raises:
            ConfigurationError: If an environment value is invalid
        """
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(_describe(e)) from e

    def with_overrides(self, **overrides: Any) -> FinderSettings:
        """Return a copy with the non-None overrides applied and validated.

        Raises:
            ConfigurationError: If an override is invalid
        """
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        try:
            return type(self).model_validate({**self.model_dump(), **updates})
        except ValidationError as e:
            raise ConfigurationError(_describe(e)) from e

    def anomaly_policy(self) -> AnomalyPolicy:
        return AnomalyPolicy(
            {
                AnomalyKind.CYCLE: self.on_cycle,
                AnomalyKind.ORPHAN_REFERENCE: self.on_orphan_reference,
                AnomalyKind.CROSS_ROOM_EDGE: self.on_cross_room_edge,
                AnomalyKind.ROOM_MISMATCH: self.on_room_mismatch,
                AnomalyKind.MULTIPLE_PARENTS: self.on_multiple_parents,
            }
        )

    def with_strict_policy(self) -> FinderSettings:
        """Copy of these settings with every anomaly escalated to ABORT."""
        return self.with_overrides(
            **{f"on_{kind.value}": Severity.ABORT for kind in AnomalyKind}
        )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Finder configuration loaded",
            extra={
                "page_size": self.page_size,
                "parallel_scans": self.parallel_scans,
                "resolve_missing": self.resolve_missing,
                "statement_timeout_ms": self.statement_timeout_ms,
                "max_attempts": self.max_attempts,
                "anomaly_policy": self.anomaly_policy().to_dict(),
            },
        )


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "settings"
        parts.append(f"{loc}: {item['msg']}")
    return "Invalid configuration: " + "; ".join(parts)
