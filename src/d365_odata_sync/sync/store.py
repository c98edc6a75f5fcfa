# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Durable storage for per-entity :class:`~d365_odata_sync.models.sync_state.SyncState`.

Keys are ``"<environment>/<entity>"``. Every write carries the version the
caller read; a store whose current version differs rejects the write with
``store_conflict``. Writes are serialized per key.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union
from urllib.parse import quote

from ..core import _error_codes as ec
from ..core.errors import StoreError
from ..models.sync_state import SyncState

logger = logging.getLogger(__name__)


def state_key(environment: str, entity: str) -> str:
    return f"{environment}/{entity}"


class _KeyLocks:
    """Lazily created lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class StateStore(ABC):
    """
    Abstract base class for sync state stores.

    Implementations must make :meth:`put` durable before returning and must
    serialize writes for the same key.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[SyncState]:
        """Return the stored state, or None when the key was never written."""

    @abstractmethod
    def put(self, key: str, state: SyncState) -> SyncState:
        """
        Replace the state stored under ``key``.

        ``state.version`` must equal the stored version (0 when absent).

        :return: The stored state with its version incremented.
        :raises StoreError: ``store_conflict`` on a stale version, ``store_unavailable`` on IO failure.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the state stored under ``key`` if present."""


class MemoryStateStore(StateStore):
    """Process-local store; state is lost when the process exits."""

    def __init__(self) -> None:
        self._data: Dict[str, SyncState] = {}
        self._locks = _KeyLocks()

    def get(self, key: str) -> Optional[SyncState]:
        return self._data.get(key)

    def put(self, key: str, state: SyncState) -> SyncState:
        with self._locks(key):
            current = self._data.get(key)
            _check_version(key, current, state)
            stored = state.evolve(version=state.version + 1)
            self._data[key] = stored
            return stored

    def delete(self, key: str) -> None:
        with self._locks(key):
            self._data.pop(key, None)


class JsonFileStateStore(StateStore):
    """
    One JSON document per key under ``directory``.

    Writes go to a temp file in the same directory, are fsynced and then
    renamed over the target with :func:`os.replace`, so a reader sees either
    the old or the new state, never a partial one.

    :param directory: Directory holding the state files; created if missing.
    :type directory: str or pathlib.Path
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)
        self._locks = _KeyLocks()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(
                f"Cannot create state directory {self.directory}: {exc}", subcode=ec.STORE_UNAVAILABLE
            ) from exc

    def path_for(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + ".json")

    def get(self, key: str) -> Optional[SyncState]:
        path = self.path_for(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise StoreError(f"Cannot read state for {key}: {exc}", subcode=ec.STORE_UNAVAILABLE, key=key) from exc
        try:
            return SyncState.from_dict(data)
        except (KeyError, ValueError, TypeError) as exc:
            raise StoreError(f"Corrupt state for {key}: {exc}", subcode=ec.STORE_UNAVAILABLE, key=key) from exc

    def put(self, key: str, state: SyncState) -> SyncState:
        with self._locks(key):
            current = self.get(key)
            _check_version(key, current, state)
            stored = state.evolve(version=state.version + 1)
            self._write(key, stored)
            return stored

    def delete(self, key: str) -> None:
        with self._locks(key):
            try:
                os.unlink(self.path_for(key))
            except FileNotFoundError:
                return
            except OSError as exc:
                raise StoreError(
                    f"Cannot delete state for {key}: {exc}", subcode=ec.STORE_UNAVAILABLE, key=key
                ) from exc

    def _write(self, key: str, state: SyncState) -> None:
        target = self.path_for(key)
        # Temp file in the target directory so the rename stays on one filesystem.
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        except OSError as exc:
            raise StoreError(f"Cannot write state for {key}: {exc}", subcode=ec.STORE_UNAVAILABLE, key=key) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoreError(f"Cannot write state for {key}: {exc}", subcode=ec.STORE_UNAVAILABLE, key=key) from exc
        logger.debug("State for %s written (version %d)", key, state.version)


def _check_version(key: str, current: Optional[SyncState], incoming: SyncState) -> None:
    current_version = current.version if current is not None else 0
    if incoming.version != current_version:
        raise StoreError(
            f"Stale write for {key}: expected version {current_version}, got {incoming.version}",
            subcode=ec.STORE_CONFLICT,
            key=key,
        )


__all__ = ["StateStore", "MemoryStateStore", "JsonFileStateStore", "state_key"]
