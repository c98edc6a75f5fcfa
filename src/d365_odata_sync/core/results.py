# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Result types for sync passes.

- :class:`EntitySyncResult`: outcome of one entity's sync pass
- :class:`SyncReport`: outcome of a whole pass across entities
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"  # page budget reached, more changes pending
    FAILED = "failed"
    INVALIDATED = "invalidated"  # cursor expired; next pass runs a full load
    SKIPPED = "skipped"  # already in flight or still backing off
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class EntitySyncResult:
    """
    Outcome of one entity's sync pass.

    :param entity: Entity set name.
    :type entity: str
    :param status: Final status of the pass.
    :type status: SyncStatus
    :param mode: ``"full_load"`` or ``"delta"``; None when nothing ran.
    :type mode: str or None
    :param pages: Pages delivered to the sink.
    :type pages: int
    :param records: Records delivered to the sink.
    :type records: int
    :param warnings: Schema mismatch warnings raised while transforming.
    :type warnings: int
    :param attempts: Attempts made in this pass (1 without retries).
    :type attempts: int
    :param error: Structured ``{kind, message}`` for failed passes.
    :type error: dict or None
    """

    entity: str
    status: SyncStatus
    mode: Optional[str] = None
    pages: int = 0
    records: int = 0
    warnings: int = 0
    attempts: int = 0
    error: Optional[Dict[str, str]] = None

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.SUCCEEDED, SyncStatus.PARTIAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "status": self.status.value,
            "mode": self.mode,
            "pages": self.pages,
            "records": self.records,
            "warnings": self.warnings,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class SyncReport:
    """Results of a pass over all configured entities, in completion order."""

    results: List[EntitySyncResult] = field(default_factory=list)

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def get(self, entity: str) -> Optional[EntitySyncResult]:
        for result in self.results:
            if result.entity == entity:
                return result
        return None

    @property
    def failed(self) -> List[EntitySyncResult]:
        return [r for r in self.results if r.status == SyncStatus.FAILED]

    @property
    def total_records(self) -> int:
        return sum(r.records for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [r.to_dict() for r in self.results],
            "total_records": self.total_records,
            "failed": len(self.failed),
        }


__all__ = ["SyncStatus", "EntitySyncResult", "SyncReport"]
