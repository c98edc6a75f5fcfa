# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Per-entity sync state machine backed by a :class:`~d365_odata_sync.sync.store.StateStore`.

Every transition is written to the store before the method returns, so a
process restart resumes from the last committed page.
"""

from __future__ import annotations

import datetime as _dt
import logging
from typing import Callable, Optional

from ..core import _error_codes as ec
from ..core.errors import ValidationError
from ..models.sync_state import ChangeTokenCursor, Cursor, SyncMode, SyncState, TimestampCursor
from .store import StateStore, state_key

logger = logging.getLogger(__name__)


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class DeltaTracker:
    """
    Loads and advances :class:`SyncState` for one environment.

    :param store: Backing store.
    :type store: StateStore
    :param environment: Environment name; part of every store key.
    :type environment: str
    :param clock: Returns the current aware UTC time; used for ``last_success_at``.
    """

    def __init__(
        self,
        store: StateStore,
        environment: str,
        *,
        clock: Callable[[], _dt.datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.environment = environment
        self._clock = clock

    def key(self, entity: str) -> str:
        return state_key(self.environment, entity)

    def load(self, entity: str) -> SyncState:
        """Return the stored state, or a fresh Uninitialized state."""
        state = self.store.get(self.key(entity))
        return state if state is not None else SyncState.uninitialized(entity)

    def begin_full_load(self, entity: str) -> SyncState:
        """Durably mark ``entity`` as mid full load with no cursor."""
        state = self.load(entity)
        updated = self.store.put(
            self.key(entity),
            state.evolve(mode=SyncMode.FULL_LOAD, cursor=None, records_synced=0),
        )
        logger.info("Full load started for %s/%s", self.environment, entity)
        return updated

    def commit(
        self,
        entity: str,
        new_cursor: Cursor,
        page_record_count: int,
        *,
        change_tracking: Optional[bool] = None,
    ) -> SyncState:
        """
        Atomically advance the cursor after a page was delivered.

        Sets mode Delta, adds ``page_record_count`` to ``records_synced``,
        resets ``consecutive_failures`` and stamps ``last_success_at``.

        :param change_tracking: When False, a :class:`ChangeTokenCursor` is rejected.
        :raises ValidationError: For an unknown cursor type or a change token on a non-tracking entity.
        :raises StoreError: When the write fails or conflicts.
        """
        if not isinstance(new_cursor, (ChangeTokenCursor, TimestampCursor)):
            raise ValidationError(
                f"Unsupported cursor type: {type(new_cursor).__name__}",
                subcode=ec.VALIDATION_CURSOR_KIND,
                details={"entity": entity},
            )
        if change_tracking is False and isinstance(new_cursor, ChangeTokenCursor):
            raise ValidationError(
                f"Entity {entity} does not support change tracking; refusing change token cursor",
                subcode=ec.VALIDATION_CURSOR_KIND,
                details={"entity": entity},
            )
        if page_record_count < 0:
            raise ValidationError("page_record_count must be >= 0", subcode=ec.VALIDATION_INVALID_ARGUMENT)

        state = self.load(entity)
        return self.store.put(
            self.key(entity),
            state.evolve(
                mode=SyncMode.DELTA,
                cursor=new_cursor,
                records_synced=state.records_synced + page_record_count,
                consecutive_failures=0,
                last_success_at=self._clock(),
            ),
        )

    def invalidate(self, entity: str) -> SyncState:
        """Reset to Uninitialized so the next pass runs a full load."""
        state = self.load(entity)
        logger.warning("Sync state for %s/%s invalidated", self.environment, entity)
        return self.store.put(
            self.key(entity),
            SyncState.uninitialized(entity).evolve(version=state.version),
        )

    def record_failure(self, entity: str) -> SyncState:
        """Increment ``consecutive_failures`` and return the updated state."""
        state = self.load(entity)
        return self.store.put(
            self.key(entity),
            state.evolve(consecutive_failures=state.consecutive_failures + 1),
        )


__all__ = ["DeltaTracker"]
