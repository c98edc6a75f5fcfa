# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Drives full loads and incremental pulls for the configured entities.

Each entity moves through :class:`EntityPhase`::

    UNINITIALIZED -> FULL_LOAD -> DELTA_IDLE <-> DELTA_IN_PROGRESS
    (any active phase) -> BACKOFF -> (the phase that failed)

A full load commits its cursor only after the last page was delivered, so an
interrupted full load restarts from the beginning. Delta passes commit after
every page, so an interrupted delta pass resumes at the first undelivered
page. Records are therefore delivered at least once.
"""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple, Union

from dateutil.parser import isoparse

from ..core.config import EntityConfig, SyncConfig
from ..core.errors import D365Error, QueryError
from ..core.results import EntitySyncResult, SyncReport, SyncStatus
from ..core.retry import RetryPolicy
from ..core.telemetry import NoOpTelemetryManager, SyncEvent, TelemetryManager
from ..data.odata import ODataClient
from ..models.entity import EntityDescriptor
from ..models.page import Page
from ..models.query import QueryOptions
from ..models.record import CanonicalRecord
from ..models.sync_state import ChangeTokenCursor, SyncMode, SyncState, TimestampCursor
from .delta import DeltaTracker
from .transform import to_canonical

logger = logging.getLogger(__name__)


class EntityPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    FULL_LOAD = "full_load"
    DELTA_IDLE = "delta_idle"
    DELTA_IN_PROGRESS = "delta_in_progress"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class Backoff:
    """An entity waiting out a retryable failure until ``resume_at``."""

    entity: str
    resume_at: _dt.datetime
    failed_phase: EntityPhase
    consecutive_failures: int

    def remaining(self, now: _dt.datetime) -> float:
        return max(0.0, (self.resume_at - now).total_seconds())


class RecordSink(Protocol):
    """Receives canonical records. Returning from :meth:`deliver` means the records are durably handed off."""

    def deliver(self, entity_name: str, records: Sequence[CanonicalRecord]) -> None:
        ...


class CollectingSink:
    """In-memory sink that keeps every delivered batch, in delivery order."""

    def __init__(self) -> None:
        self.batches: List[Sequence[CanonicalRecord]] = []
        self._lock = threading.Lock()

    def deliver(self, entity_name: str, records: Sequence[CanonicalRecord]) -> None:
        with self._lock:
            self.batches.append(list(records))

    def records_for(self, entity_name: str) -> List[CanonicalRecord]:
        with self._lock:
            return [r for batch in self.batches for r in batch if r.entity_name == entity_name]

    def clear(self) -> None:
        with self._lock:
            self.batches.clear()


class _Cancelled(Exception):
    pass


class _Progress:
    __slots__ = ("pages", "records", "warnings")

    def __init__(self) -> None:
        self.pages = 0
        self.records = 0
        self.warnings = 0


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class IngestOrchestrator:
    """
    Runs sync passes for one environment under bounded concurrency.

    :param client: OData client for the environment.
    :type client: ~d365_odata_sync.data.odata.ODataClient
    :param tracker: Sync state tracker for the environment.
    :type tracker: ~d365_odata_sync.sync.delta.DeltaTracker
    :param sink: Destination for canonical records.
    :type sink: RecordSink
    :param config: Entities, concurrency and backoff settings.
    :type config: ~d365_odata_sync.core.config.SyncConfig
    :param clock: Returns the current aware UTC time.
    :param telemetry: Receives :class:`~d365_odata_sync.core.telemetry.SyncEvent` notifications.
    :param waiter: Blocks for the given seconds and returns True when cancelled.
        Defaults to waiting on the orchestrator's cancellation event.

    Example::

        orchestrator = IngestOrchestrator(client, tracker, CollectingSink(), config)
        report = orchestrator.run_pass()
        for result in report:
            print(result.entity, result.status.value, result.records)
    """

    def __init__(
        self,
        client: ODataClient,
        tracker: DeltaTracker,
        sink: RecordSink,
        config: SyncConfig,
        *,
        clock: Callable[[], _dt.datetime] = _utcnow,
        telemetry: Optional[Union[TelemetryManager, NoOpTelemetryManager]] = None,
        waiter: Optional[Callable[[float], bool]] = None,
    ) -> None:
        self.client = client
        self.tracker = tracker
        self.sink = sink
        self.config = config
        self._clock = clock
        self._telemetry = telemetry or NoOpTelemetryManager()
        self._cancel = threading.Event()
        self._wait = waiter or self._cancel.wait
        self.backoff_policy = RetryPolicy(
            max_attempts=config.max_entity_retries + 1,
            base_delay=config.entity_backoff,
            max_backoff=config.entity_max_backoff,
            jitter=False,
        )
        self._lock = threading.Lock()
        self._inflight: Set[str] = set()
        self._phases: Dict[str, EntityPhase] = {}
        self._backoffs: Dict[str, Backoff] = {}

    # ------------------------------------------------------------------ control

    def cancel(self) -> None:
        """Stop all passes at the next page boundary or backoff wait. Cancellation is final for this instance."""
        logger.info("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def phase_of(self, entity: str) -> EntityPhase:
        """Current phase; before the first pass it is derived from persisted state."""
        with self._lock:
            phase = self._phases.get(entity)
        if phase is not None:
            return phase
        return _phase_for_state(self.tracker.load(entity))

    def backoff_of(self, entity: str) -> Optional[Backoff]:
        with self._lock:
            return self._backoffs.get(entity)

    # --------------------------------------------------------------------- runs

    def run_pass(self, entities: Optional[Iterable[str]] = None) -> SyncReport:
        """
        Sync each entity once on a worker pool sized ``max_concurrent_entities``.

        :param entities: Entity set names; defaults to the configured entities.
        :raises MetadataError: When ``$metadata`` cannot be loaded (fatal for the run).
        :raises AuthError: When no token can be acquired to load metadata.
        """
        self.client.fetch_metadata()
        requested = entities if entities is not None else (e.name for e in self.config.entities)
        names = list(dict.fromkeys(self._canonical_name(name) for name in requested))
        report = SyncReport()
        if not names:
            logger.warning("No entities to sync")
            return report

        workers = min(self.config.max_concurrent_entities, len(names))
        logger.info("Sync pass over %d entities with %d workers", len(names), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="d365-sync") as pool:
            futures = {pool.submit(self.sync_entity, name): name for name in names}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    report.results.append(future.result())
                except Exception as exc:
                    logger.exception("Sync of %s raised an unexpected error", name)
                    report.results.append(
                        EntitySyncResult(
                            entity=name,
                            status=SyncStatus.FAILED,
                            error={"kind": "internal_error", "message": str(exc)},
                        )
                    )
        logger.info(
            "Sync pass finished: %d records, %d failed entities", report.total_records, len(report.failed)
        )
        return report

    def sync_entity(self, entity: str) -> EntitySyncResult:
        """
        Run one pass for ``entity``: a full load or a delta pull, with entity backoff on retryable errors.

        Returns SKIPPED when a pass for the same entity is already running.
        Logical names and case variants count as the same entity.
        """
        try:
            descriptor = self.client.entity(entity)
        except D365Error as exc:
            logger.error("Cannot sync %s: %s", entity, exc.message)
            return EntitySyncResult(entity=entity, status=SyncStatus.FAILED, error=exc.to_structured())

        name = descriptor.entity_set_name
        with self._lock:
            if name in self._inflight:
                logger.info("Sync of %s already in flight; skipping", name)
                return EntitySyncResult(entity=name, status=SyncStatus.SKIPPED)
            self._inflight.add(name)
        try:
            return self._run_entity(descriptor)
        finally:
            with self._lock:
                self._inflight.discard(name)

    # ---------------------------------------------------------------- internals

    def _canonical_name(self, name: str) -> str:
        try:
            return self.client.entity(name).entity_set_name
        except D365Error:
            # sync_entity reports the failure for this name
            return name

    def _run_entity(self, descriptor: EntityDescriptor) -> EntitySyncResult:
        entity = descriptor.entity_set_name
        entity_cfg = self.config.entity_config(entity)
        progress = _Progress()
        attempts = 0
        mode: Optional[str] = None
        phase = EntityPhase.UNINITIALIZED

        while True:
            if self.cancelled:
                return self._result(entity, SyncStatus.CANCELLED, mode, progress, attempts)
            attempts += 1
            try:
                state = self.tracker.load(entity)
                full = self._needs_full_load(descriptor, entity_cfg, state)
                mode = SyncMode.FULL_LOAD.value if full else SyncMode.DELTA.value
                phase = EntityPhase.FULL_LOAD if full else EntityPhase.DELTA_IN_PROGRESS
                self._set_phase(entity, phase)

                if full:
                    complete = self._full_load(descriptor, entity_cfg, progress)
                else:
                    complete = self._delta(descriptor, entity_cfg, state, progress)
            except _Cancelled:
                logger.info("Sync of %s cancelled after %d pages", entity, progress.pages)
                self._settle_phase(entity, phase)
                return self._result(entity, SyncStatus.CANCELLED, mode, progress, attempts)
            except D365Error as exc:
                outcome = self._handle_failure(entity, phase, exc, attempts)
                if outcome is None:
                    continue
                status, cause = outcome
                return self._result(entity, status, mode, progress, attempts, error=cause.to_structured())

            self._set_phase(entity, EntityPhase.DELTA_IDLE)
            status = SyncStatus.SUCCEEDED if complete else SyncStatus.PARTIAL
            self._event(entity, "completed", status=status.value, records=progress.records)
            return self._result(entity, status, mode, progress, attempts)

    def _handle_failure(
        self, entity: str, phase: EntityPhase, exc: D365Error, attempts: int
    ) -> Optional[Tuple[SyncStatus, D365Error]]:
        """
        Classify a failure.

        :return: The final status and the error to report, or None to retry after backoff.
        """
        if isinstance(exc, QueryError) and exc.cursor_expired:
            logger.warning("Cursor for %s expired; next pass runs a full load", entity)
            try:
                self.tracker.invalidate(entity)
            except D365Error as store_exc:
                # The stale cursor is still stored; the next pass hits the same 410.
                logger.error("Cannot invalidate cursor for %s: %s", entity, store_exc.message)
                self._settle_phase(entity, phase)
                self._event(entity, "failed", kind=store_exc.kind)
                return SyncStatus.FAILED, store_exc
            self._set_phase(entity, EntityPhase.UNINITIALIZED)
            self._event(entity, "invalidated")
            return SyncStatus.INVALIDATED, exc

        if not exc.is_transient:
            logger.error("Sync of %s failed: %s", entity, exc.message)
            self._settle_phase(entity, phase)
            self._event(entity, "failed", kind=exc.kind)
            return SyncStatus.FAILED, exc

        try:
            failures = self.tracker.record_failure(entity).consecutive_failures
        except D365Error as store_exc:
            logger.error("Cannot record failure for %s: %s", entity, store_exc.message)
            failures = attempts

        if attempts > self.config.max_entity_retries:
            logger.error("Sync of %s failed after %d attempts: %s", entity, attempts, exc.message)
            self._settle_phase(entity, phase)
            self._event(entity, "failed", kind=exc.kind, attempts=attempts)
            return SyncStatus.FAILED, exc

        delay = self.backoff_policy.backoff_for_failures(failures)
        retry_after = exc.details.get("retry_after")
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        backoff = Backoff(
            entity=entity,
            resume_at=self._clock() + _dt.timedelta(seconds=delay),
            failed_phase=phase,
            consecutive_failures=failures,
        )
        with self._lock:
            self._backoffs[entity] = backoff
            self._phases[entity] = EntityPhase.BACKOFF
        logger.warning("Sync of %s hit %s; backing off %.1fs (failure %d)", entity, exc.kind, delay, failures)
        self._event(entity, "backoff", delay=delay, consecutive_failures=failures, kind=exc.kind)

        cancelled = self._wait(delay)
        with self._lock:
            self._backoffs.pop(entity, None)
            self._phases[entity] = phase
        if cancelled:
            return SyncStatus.CANCELLED, exc
        return None

    def _settle_phase(self, entity: str, fallback: EntityPhase) -> None:
        """Derive the idle phase from persisted state, or keep ``fallback`` when the store cannot be read."""
        try:
            phase = _phase_for_state(self.tracker.load(entity))
        except D365Error as exc:
            logger.warning("Cannot read sync state for %s: %s", entity, exc.message)
            phase = fallback
        self._set_phase(entity, phase)

    def _needs_full_load(self, descriptor: EntityDescriptor, cfg: EntityConfig, state: SyncState) -> bool:
        if state.needs_full_load:
            return True
        if isinstance(state.cursor, ChangeTokenCursor):
            return not self._use_change_tracking(descriptor, cfg)
        return self._timestamp_field(descriptor, cfg) is None

    def _use_change_tracking(self, descriptor: EntityDescriptor, cfg: EntityConfig) -> bool:
        # Change tracking requests reject $filter.
        return descriptor.supports_change_tracking and not cfg.filter

    @staticmethod
    def _timestamp_field(descriptor: EntityDescriptor, cfg: EntityConfig) -> Optional[str]:
        return cfg.timestamp_field or descriptor.modified_field

    def _base_options(self, descriptor: EntityDescriptor, cfg: EntityConfig, **overrides: Any) -> QueryOptions:
        select = cfg.select
        field_name = self._timestamp_field(descriptor, cfg)
        # A narrowed $select must still return the high-water field.
        if select and field_name and field_name not in select:
            select = tuple(select) + (field_name,)
        return QueryOptions(select=select, filter=cfg.filter, cross_company=cfg.cross_company, **overrides)

    def _full_load(self, descriptor: EntityDescriptor, cfg: EntityConfig, progress: _Progress) -> bool:
        entity = descriptor.entity_set_name
        tracking = self._use_change_tracking(descriptor, cfg)
        started = self._clock()
        self.tracker.begin_full_load(entity)
        self._event(entity, "full_load_started", change_tracking=tracking)

        loaded = 0
        delta_link: Optional[str] = None
        page = self.client.query(entity, self._base_options(descriptor, cfg, track_changes=tracking))
        while True:
            loaded += self._deliver(descriptor, page, progress)
            if page.delta_link:
                delta_link = page.delta_link
            if not page.next_link:
                break
            self._check_cancelled()
            page = self.client.follow(page.next_link, entity=entity, track_changes=tracking)

        if tracking and delta_link:
            cursor: Union[ChangeTokenCursor, TimestampCursor] = ChangeTokenCursor(delta_link)
        else:
            cursor = TimestampCursor(started - _dt.timedelta(seconds=self.config.timestamp_overlap))
        self.tracker.commit(entity, cursor, loaded, change_tracking=descriptor.supports_change_tracking)
        logger.info("Full load of %s committed: %d records, cursor %s", entity, loaded, cursor.kind)
        return True

    def _delta(self, descriptor: EntityDescriptor, cfg: EntityConfig, state: SyncState, progress: _Progress) -> bool:
        if isinstance(state.cursor, ChangeTokenCursor):
            return self._delta_change_tracking(descriptor, state.cursor, progress)
        return self._delta_timestamp(descriptor, cfg, state.cursor, progress)

    def _delta_change_tracking(
        self, descriptor: EntityDescriptor, cursor: ChangeTokenCursor, progress: _Progress
    ) -> bool:
        entity = descriptor.entity_set_name
        limit = self.config.max_pages_per_pass
        link = cursor.token
        pages = 0
        while True:
            page = self.client.follow(link, entity=entity, track_changes=True)
            count = self._deliver(descriptor, page, progress)
            next_token = page.delta_link or page.next_link or link
            self.tracker.commit(entity, ChangeTokenCursor(next_token), count, change_tracking=True)
            pages += 1
            self._event(entity, "page_committed", records=count, cursor="change_token")
            if not page.next_link:
                return True
            if limit is not None and pages >= limit:
                logger.info("Delta of %s stopped after %d pages; more changes pending", entity, pages)
                return False
            self._check_cancelled()
            link = page.next_link

    def _delta_timestamp(
        self, descriptor: EntityDescriptor, cfg: EntityConfig, cursor: TimestampCursor, progress: _Progress
    ) -> bool:
        entity = descriptor.entity_set_name
        field_name = self._timestamp_field(descriptor, cfg)
        limit = self.config.max_pages_per_pass
        options = self._base_options(descriptor, cfg, orderby=f"{field_name} asc").with_filter(
            f"{field_name} ge {cursor.to_odata_literal()}"
        )
        high_water = cursor.value
        pages = 0
        page = self.client.query(entity, options)
        while True:
            count = self._deliver(descriptor, page, progress)
            high_water = _max_modified(page, field_name, high_water)
            self.tracker.commit(
                entity, TimestampCursor(high_water), count, change_tracking=descriptor.supports_change_tracking
            )
            pages += 1
            self._event(entity, "page_committed", records=count, cursor="timestamp")
            if not page.next_link:
                return True
            if limit is not None and pages >= limit:
                logger.info("Delta of %s stopped after %d pages; more changes pending", entity, pages)
                return False
            self._check_cancelled()
            page = self.client.follow(page.next_link, entity=entity)

    def _deliver(self, descriptor: EntityDescriptor, page: Page, progress: _Progress) -> int:
        records = [to_canonical(descriptor, raw) for raw in page.records]
        if records:
            self.sink.deliver(descriptor.entity_set_name, records)
        progress.pages += 1
        progress.records += len(records)
        progress.warnings += sum(1 for r in records if r.warnings)
        logger.debug("Delivered %d %s records", len(records), descriptor.entity_set_name)
        return len(records)

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise _Cancelled()

    def _set_phase(self, entity: str, phase: EntityPhase) -> None:
        with self._lock:
            self._phases[entity] = phase

    def _event(self, entity: str, kind: str, /, **details: Any) -> None:
        self._telemetry.record_sync_event(SyncEvent(entity=entity, kind=kind, details=details))

    @staticmethod
    def _result(
        entity: str,
        status: SyncStatus,
        mode: Optional[str],
        progress: _Progress,
        attempts: int,
        error: Optional[Dict[str, str]] = None,
    ) -> EntitySyncResult:
        return EntitySyncResult(
            entity=entity,
            status=status,
            mode=mode,
            pages=progress.pages,
            records=progress.records,
            warnings=progress.warnings,
            attempts=attempts,
            error=error,
        )


def _phase_for_state(state: SyncState) -> EntityPhase:
    if state.mode == SyncMode.DELTA and state.cursor is not None:
        return EntityPhase.DELTA_IDLE
    if state.mode == SyncMode.FULL_LOAD:
        return EntityPhase.FULL_LOAD
    return EntityPhase.UNINITIALIZED


def _max_modified(page: Page, field_name: str, current: _dt.datetime) -> _dt.datetime:
    high = current
    for raw in page.records:
        value = raw.get(field_name)
        if not isinstance(value, str):
            continue
        try:
            parsed = isoparse(value)
        except ValueError:
            logger.warning("Ignoring unparseable %s value %r", field_name, value)
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=_dt.timezone.utc)
        if parsed > high:
            high = parsed
    return high


__all__ = [
    "EntityPhase",
    "Backoff",
    "RecordSink",
    "CollectingSink",
    "IngestOrchestrator",
]
