# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Persisted per-entity sync state and the cursor variants it can hold.

A cursor is either a :class:`ChangeTokenCursor` (opaque, server-issued, only
for entities with change tracking) or a :class:`TimestampCursor` (high-water
last-modified value). The ``kind`` tag is stored alongside the value so a
cursor is never an untyped string with an implied format.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Union

from dateutil.parser import isoparse


class SyncMode(str, Enum):
    UNINITIALIZED = "uninitialized"
    FULL_LOAD = "full_load"
    DELTA = "delta"


@dataclass(frozen=True)
class ChangeTokenCursor:
    """Server-issued delta (or delta continuation) link, used verbatim."""

    token: str
    kind = "change_token"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "token": self.token}


@dataclass(frozen=True)
class TimestampCursor:
    """High-water last-modified value (timezone-aware UTC)."""

    value: _dt.datetime
    kind = "timestamp"

    def __post_init__(self) -> None:
        value = self.value
        if value.tzinfo is None:
            value = value.replace(tzinfo=_dt.timezone.utc)
        object.__setattr__(self, "value", value.astimezone(_dt.timezone.utc))

    def to_odata_literal(self) -> str:
        """Render as an OData ``DateTimeOffset`` literal (``2024-01-01T00:00:00Z``)."""
        text = self.value.isoformat()
        if text.endswith("+00:00"):
            text = text[: -len("+00:00")] + "Z"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "value": self.to_odata_literal()}


Cursor = Union[ChangeTokenCursor, TimestampCursor]


def cursor_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Cursor]:
    if not data:
        return None
    kind = data.get("kind")
    if kind == ChangeTokenCursor.kind:
        return ChangeTokenCursor(token=data["token"])
    if kind == TimestampCursor.kind:
        return TimestampCursor(value=isoparse(data["value"]))
    raise ValueError(f"Unknown cursor kind: {kind!r}")


@dataclass(frozen=True)
class SyncState:
    """
    Durable sync progress for one (environment, entity) pair.

    :param entity_name: Entity set name.
    :type entity_name: str
    :param mode: Current mode.
    :type mode: SyncMode
    :param cursor: Committed cursor, None until the first full load completes.
    :type cursor: ChangeTokenCursor or TimestampCursor or None
    :param last_success_at: Time of the last successful commit.
    :type last_success_at: datetime or None
    :param consecutive_failures: Failures since the last successful commit.
    :type consecutive_failures: int
    :param records_synced: Records committed since the last full load started.
    :type records_synced: int
    :param version: Store version used for optimistic concurrency; 0 when never stored.
    :type version: int
    """

    entity_name: str
    mode: SyncMode = SyncMode.UNINITIALIZED
    cursor: Optional[Cursor] = None
    last_success_at: Optional[_dt.datetime] = None
    consecutive_failures: int = 0
    records_synced: int = 0
    version: int = 0

    @classmethod
    def uninitialized(cls, entity_name: str) -> "SyncState":
        return cls(entity_name=entity_name)

    @property
    def needs_full_load(self) -> bool:
        return self.mode != SyncMode.DELTA or self.cursor is None

    def evolve(self, **changes: Any) -> "SyncState":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_name": self.entity_name,
            "mode": self.mode.value,
            "cursor": self.cursor.to_dict() if self.cursor is not None else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "consecutive_failures": self.consecutive_failures,
            "records_synced": self.records_synced,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        last = data.get("last_success_at")
        return cls(
            entity_name=data["entity_name"],
            mode=SyncMode(data.get("mode", SyncMode.UNINITIALIZED.value)),
            cursor=cursor_from_dict(data.get("cursor")),
            last_success_at=isoparse(last) if last else None,
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            records_synced=int(data.get("records_synced", 0)),
            version=int(data.get("version", 0)),
        )


__all__ = [
    "SyncMode",
    "ChangeTokenCursor",
    "TimestampCursor",
    "Cursor",
    "cursor_from_dict",
    "SyncState",
]
