# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Telemetry infrastructure for the sync engine.

Provides optional OpenTelemetry tracing and metrics, standard-library logging,
and an extensible hook system through which retries and sync progress are
exposed to an external observability collaborator.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Generator,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

# Optional OpenTelemetry imports
try:
    from opentelemetry import trace, metrics
    from opentelemetry.trace import Status, StatusCode

    _OTEL_AVAILABLE = True
except ImportError:
    _OTEL_AVAILABLE = False
    trace = None  # type: ignore
    metrics = None  # type: ignore
    Status = None  # type: ignore
    StatusCode = None  # type: ignore

_INSTRUMENTATION_NAME = "d365_odata_sync"


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class TelemetryConfig:
    """Configuration for engine telemetry.

    Telemetry is opt-in. Retry and sync events are always logged through the
    ``d365_odata_sync`` logger hierarchy; this config adds spans, metrics and
    custom hooks on top.

    Example:
        Forward retry events to a custom collector::

            config = SyncConfig(
                ...,
                telemetry=TelemetryConfig(hooks=[MyRetryCollector()]),
            )
    """

    enable_tracing: bool = False
    enable_metrics: bool = False
    enable_logging: bool = False

    service_name: Optional[str] = None

    log_level: str = "WARNING"
    logger_name: str = "d365_odata_sync.telemetry"

    hooks: List["TelemetryHook"] = field(default_factory=list)


# ============================================================================
# Context Objects
# ============================================================================


@dataclass
class RequestContext:
    """Context passed to telemetry hooks for each HTTP request."""

    client_request_id: str
    method: str
    url: str
    operation: str  # e.g. "odata.query", "odata.metadata", "odata.batch"
    entity: Optional[str] = None

    start_time: float = field(default_factory=time.perf_counter)
    custom_data: Dict[str, Any] = field(default_factory=dict)

    _span: Any = field(default=None, repr=False)


@dataclass
class ResponseContext:
    """Response information passed to telemetry hooks."""

    status_code: int
    duration_ms: float
    error: Optional[Exception] = None
    retry_count: int = 0


@dataclass(frozen=True)
class RetryEvent:
    """A single retry decision made by the HTTP client or token provider."""

    source: str  # "http" or "token"
    attempt: int
    delay: float
    url: Optional[str] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class SyncEvent:
    """Progress notification from the orchestrator (page committed, backoff, ...)."""

    entity: str
    kind: str
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Hook Protocol
# ============================================================================


@runtime_checkable
class TelemetryHook(Protocol):
    """Protocol for custom telemetry hooks.

    All methods are optional - implement only what you need.
    """

    def on_request_start(self, context: RequestContext) -> None:
        ...

    def on_request_end(self, request: RequestContext, response: ResponseContext) -> None:
        ...

    def on_request_error(self, request: RequestContext, error: Exception) -> None:
        ...

    def on_retry(self, event: RetryEvent) -> None:
        ...

    def on_sync_event(self, event: SyncEvent) -> None:
        ...


# ============================================================================
# Telemetry Manager
# ============================================================================


class TelemetryManager:
    """Dispatches telemetry to OpenTelemetry, logging and registered hooks.

    This class is internal and not part of the public API.
    """

    def __init__(self, config: Optional[TelemetryConfig] = None) -> None:
        self._config = config or TelemetryConfig()
        self._tracer: Optional[Any] = None
        self._meter: Optional[Any] = None
        self._logger: Optional[logging.Logger] = None
        self._hooks = list(self._config.hooks)

        self._request_duration: Optional[Any] = None
        self._request_count: Optional[Any] = None
        self._retry_count: Optional[Any] = None

        self._initialize()

    @property
    def is_tracing_enabled(self) -> bool:
        return self._config.enable_tracing and _OTEL_AVAILABLE

    @property
    def is_metrics_enabled(self) -> bool:
        return self._config.enable_metrics and _OTEL_AVAILABLE

    def _initialize(self) -> None:
        if self._config.enable_tracing and _OTEL_AVAILABLE:
            self._tracer = trace.get_tracer(_INSTRUMENTATION_NAME)

        if self._config.enable_metrics and _OTEL_AVAILABLE:
            self._meter = metrics.get_meter(_INSTRUMENTATION_NAME)
            self._request_duration = self._meter.create_histogram(
                name="d365.sync.request.duration",
                description="Duration of OData requests",
                unit="ms",
            )
            self._request_count = self._meter.create_counter(
                name="d365.sync.request.count",
                description="Number of OData requests",
                unit="1",
            )
            self._retry_count = self._meter.create_counter(
                name="d365.sync.retry.count",
                description="Number of request retries",
                unit="1",
            )

        if self._config.enable_logging:
            self._logger = logging.getLogger(self._config.logger_name)
            self._logger.setLevel(getattr(logging, self._config.log_level.upper()))

    @contextmanager
    def trace_request(
        self,
        operation: str,
        method: str,
        url: str,
        client_request_id: str,
        entity: Optional[str] = None,
    ) -> Generator[RequestContext, None, None]:
        """Create a traced request context.

        Usage:
            with telemetry.trace_request("odata.query", "GET", url, req_id) as ctx:
                response = self._http.request(...)
                telemetry.record_response(ctx, response.status_code)
        """
        ctx = RequestContext(
            client_request_id=client_request_id,
            method=method,
            url=url,
            operation=operation,
            entity=entity,
        )
        self._dispatch("on_request_start", ctx)

        span = None
        if self._tracer:
            span_name = f"D365 {operation}"
            if entity:
                span_name = f"{span_name} {entity}"
            span = self._tracer.start_span(
                span_name,
                kind=trace.SpanKind.CLIENT,
                attributes={
                    "http.method": method,
                    "http.url": url,
                    "d365.operation": operation,
                    "d365.client_request_id": client_request_id,
                    **({"d365.entity": entity} if entity else {}),
                },
            )
            ctx._span = span

        try:
            yield ctx
        except Exception as e:
            if span:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
            self._dispatch("on_request_error", ctx, e)
            raise
        finally:
            if span:
                span.end()

    def record_response(
        self,
        ctx: RequestContext,
        status_code: int,
        error: Optional[Exception] = None,
        retry_count: int = 0,
    ) -> None:
        """Record response metrics and dispatch to hooks."""
        duration_ms = (time.perf_counter() - ctx.start_time) * 1000
        response = ResponseContext(
            status_code=status_code,
            duration_ms=duration_ms,
            error=error,
            retry_count=retry_count,
        )

        if ctx._span:
            ctx._span.set_attribute("http.status_code", status_code)

        if self._request_duration:
            attributes = {"operation": ctx.operation, "status_code": status_code}
            if ctx.entity:
                attributes["entity"] = ctx.entity
            self._request_duration.record(duration_ms, attributes)
            self._request_count.add(1, attributes)

        if self._logger:
            level = logging.WARNING if status_code >= 400 else logging.DEBUG
            self._logger.log(
                level,
                "%s %s %s %.1fms",
                ctx.operation,
                ctx.method,
                status_code,
                duration_ms,
                extra={"client_request_id": ctx.client_request_id},
            )

        self._dispatch("on_request_end", ctx, response)

    def record_retry(self, event: RetryEvent) -> None:
        if self._retry_count:
            self._retry_count.add(1, {"source": event.source})
        self._dispatch("on_retry", event)

    def record_sync_event(self, event: SyncEvent) -> None:
        self._dispatch("on_sync_event", event)

    def _dispatch(self, method: str, *args: Any) -> None:
        for hook in self._hooks:
            callback = getattr(hook, method, None)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                pass  # Hooks should not break requests


# ============================================================================
# No-op Manager for when telemetry is disabled
# ============================================================================


class NoOpTelemetryManager:
    """No-op telemetry manager when telemetry is disabled."""

    @contextmanager
    def trace_request(
        self,
        operation: str,
        method: str,
        url: str,
        client_request_id: str,
        entity: Optional[str] = None,
    ) -> Generator[RequestContext, None, None]:
        yield RequestContext(
            client_request_id=client_request_id,
            method=method,
            url=url,
            operation=operation,
            entity=entity,
        )

    def record_response(self, *args: Any, **kwargs: Any) -> None:
        pass

    def record_retry(self, event: RetryEvent) -> None:
        pass

    def record_sync_event(self, event: SyncEvent) -> None:
        pass


def create_telemetry_manager(
    config: Optional[TelemetryConfig],
) -> Union[TelemetryManager, NoOpTelemetryManager]:
    """Factory to create appropriate telemetry manager."""
    if config is None:
        return NoOpTelemetryManager()

    has_any_enabled = (
        config.enable_tracing
        or config.enable_metrics
        or config.enable_logging
        or config.hooks
    )
    if not has_any_enabled:
        return NoOpTelemetryManager()

    return TelemetryManager(config)


__all__ = [
    "TelemetryConfig",
    "TelemetryHook",
    "TelemetryManager",
    "NoOpTelemetryManager",
    "RequestContext",
    "ResponseContext",
    "RetryEvent",
    "SyncEvent",
    "create_telemetry_manager",
]
