"""
Data anomalies and the policy that decides how serious each one is.

An anomaly is an observed violation of the invariants the state group graph
is expected to satisfy:
- CYCLE: the prev_state_group relation loops back on itself
- ORPHAN_REFERENCE: an edge or event points at a group that does not exist
- CROSS_ROOM_EDGE: a group's predecessor belongs to a different room
- ROOM_MISMATCH: a scoped run found a candidate outside its room
- MULTIPLE_PARENTS: a group has more than one predecessor

Invariants:
    - Anomalies are recorded, never corrected
    - An ABORT severity raises FatalDataAnomalyError at the moment the
      anomaly is recorded, so no later stage runs on suspect data
    - Recording is never retried

How to change safely:
    - New kinds default to WARN
    - Keep AnomalyKind values stable; they appear in JSON run reports
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import FatalDataAnomalyError

logger = logging.getLogger(__name__)


class AnomalyKind(Enum):
    """Kinds of structural anomaly."""

    CYCLE = "cycle"
    ORPHAN_REFERENCE = "orphan_reference"
    CROSS_ROOM_EDGE = "cross_room_edge"
    ROOM_MISMATCH = "room_mismatch"
    MULTIPLE_PARENTS = "multiple_parents"


class Severity(Enum):
    """What to do when an anomaly is recorded."""

    WARN = "warn"
    ABORT = "abort"


@dataclass(frozen=True)
class DataAnomaly:
    """One observed anomaly.

    Attributes:
        kind: Anomaly kind
        message: Human readable description
        group_ids: State groups involved, in a kind-specific order
            (cycle members in traversal order, edge as child then parent)
    """

    kind: AnomalyKind
    message: str
    group_ids: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "group_ids": list(self.group_ids),
        }


@dataclass(frozen=True)
class AnomalyPolicy:
    """Severity for each anomaly kind.

    Attributes:
        severities: Explicit severity per kind; missing kinds are WARN
    """

    severities: dict[AnomalyKind, Severity] = field(default_factory=dict)

    def severity(self, kind: AnomalyKind) -> Severity:
        return self.severities.get(kind, Severity.WARN)

    @classmethod
    def strict(cls) -> AnomalyPolicy:
        """Policy that aborts on every anomaly."""
        return cls({kind: Severity.ABORT for kind in AnomalyKind})

    def to_dict(self) -> dict[str, str]:
        return {kind.value: self.severity(kind).value for kind in AnomalyKind}


class Diagnostics:
    """Collects the anomalies observed during one run.

    The first ``log_limit`` anomalies of each kind are logged at WARNING,
    the rest are only counted so a badly damaged database does not flood
    the log. Every anomaly is kept for the run report.

    Example:
        >>> diagnostics = Diagnostics(AnomalyPolicy())
        >>> diagnostics.record(AnomalyKind.CYCLE, "cycle through 7", (7, 8))
        >>> diagnostics.counts()[AnomalyKind.CYCLE]
        1
    """

    def __init__(self, policy: AnomalyPolicy | None = None, log_limit: int = 20) -> None:
        self.policy = policy or AnomalyPolicy()
        self.log_limit = log_limit
        self.anomalies: list[DataAnomaly] = []
        self._counts: Counter[AnomalyKind] = Counter()

    def record(
        self,
        kind: AnomalyKind,
        message: str,
        group_ids: tuple[int, ...] = (),
    ) -> DataAnomaly:
        """Record an anomaly.

        Returns:
            The recorded anomaly

        Raises:
            FatalDataAnomalyError: If the policy for ``kind`` is ABORT
        """
        anomaly = DataAnomaly(kind=kind, message=message, group_ids=tuple(group_ids))
        self.anomalies.append(anomaly)
        self._counts[kind] += 1

        if self._counts[kind] <= self.log_limit:
            logger.warning(
                f"Data anomaly: {message}",
                extra={"anomaly": kind.value, "group_ids": list(anomaly.group_ids)},
            )
        elif self._counts[kind] == self.log_limit + 1:
            logger.warning(f"Further {kind.value} anomalies will only be counted")

        if self.policy.severity(kind) is Severity.ABORT:
            raise FatalDataAnomalyError(anomaly)

        return anomaly

    def counts(self) -> Counter[AnomalyKind]:
        return Counter(self._counts)

    def of_kind(self, kind: AnomalyKind) -> list[DataAnomaly]:
        return [a for a in self.anomalies if a.kind is kind]

    def __len__(self) -> int:
        return len(self.anomalies)

    def summary(self) -> dict[str, Any]:
        """Summary for logs and the JSON run report."""
        return {
            "total": len(self.anomalies),
            "by_kind": {kind.value: self._counts.get(kind, 0) for kind in AnomalyKind},
            "policy": self.policy.to_dict(),
            "anomalies": [a.to_dict() for a in self.anomalies],
        }
