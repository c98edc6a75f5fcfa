# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from __future__ import annotations

import logging
from typing import Iterable, Optional

import requests

from azure.core.credentials import TokenCredential

from .core.auth import Credential, TokenProvider, build_credential
from .core.config import SyncConfig
from .core.http import HttpClient
from .core.results import SyncReport
from .core.retry import RetryPolicy
from .core.telemetry import create_telemetry_manager
from .data.odata import ODataClient
from .operations.tools import ToolOperations
from .sync.delta import DeltaTracker
from .sync.orchestrator import CollectingSink, IngestOrchestrator, RecordSink
from .sync.store import JsonFileStateStore, MemoryStateStore, StateStore

logger = logging.getLogger(__name__)


class D365Client:
    """
    High-level entry point wiring the sync engine for one Dynamics 365 environment.

    Components are created lazily on first use, so constructing the client
    performs no network calls. Using the client as a context manager creates
    an HTTP session for connection pooling and closes everything on exit::

        config = SyncConfig.from_env()
        with D365Client(config, sink=my_sink) as client:
            report = client.sync()
            print(report.to_dict())

    The boundary operations are available as ``client.tools``::

        with D365Client(config) as client:
            print(client.tools.list_entities())

    :param config: Environment configuration.
    :type config: ~d365_odata_sync.core.config.SyncConfig
    :param credential: Azure Identity credential. Defaults to one built from
        ``config.tenant_id``, ``config.client_id`` and ``config.client_credential``.
    :type credential: ~azure.core.credentials.TokenCredential or None
    :param store: Sync state store. Defaults to a :class:`JsonFileStateStore` under
        ``config.state_dir``, or a :class:`MemoryStateStore` when no directory is set.
    :type store: StateStore or None
    :param sink: Destination for synchronized records. Defaults to a :class:`CollectingSink`.
    :type sink: RecordSink or None
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        credential: Optional[TokenCredential] = None,
        store: Optional[StateStore] = None,
        sink: Optional[RecordSink] = None,
    ) -> None:
        self.config = config
        self._credential = credential
        self._store = store
        self.sink: RecordSink = sink if sink is not None else CollectingSink()
        self.telemetry = create_telemetry_manager(config.telemetry)
        self._session: Optional[requests.Session] = None
        self._owns_session = False
        self._tokens: Optional[TokenProvider] = None
        self._odata: Optional[ODataClient] = None
        self._tracker: Optional[DeltaTracker] = None
        self._orchestrator: Optional[IngestOrchestrator] = None
        self._tools: Optional[ToolOperations] = None

    @classmethod
    def from_env(cls, **kwargs) -> "D365Client":
        """Create a client from ``D365_*`` environment variables (see :meth:`SyncConfig.from_env`)."""
        return cls(SyncConfig.from_env(), **kwargs)

    def __enter__(self) -> "D365Client":
        if self._session is None:
            self._session = requests.Session()
            self._owns_session = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """
        Release the HTTP session, the OData client and the credential.

        Safe to call multiple times.
        """
        if self._orchestrator is not None:
            self._orchestrator.cancel()
            self._orchestrator = None
        if self._odata is not None:
            self._odata.close()
            self._odata = None
        if self._tokens is not None:
            self._tokens.close()
            self._tokens = None
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None
            self._owns_session = False
        self._tools = None

    # ------------------------------------------------------------ components

    @property
    def token_provider(self) -> TokenProvider:
        if self._tokens is None:
            credential = self._credential or build_credential(
                Credential(self.config.tenant_id, self.config.client_id, self.config.client_credential)
            )
            self._tokens = TokenProvider(
                credential,
                self.config.resource,
                refresh_margin=self.config.token_refresh_margin,
                retry_policy=RetryPolicy(
                    max_attempts=3,
                    base_delay=self.config.http_backoff if self.config.http_backoff is not None else 0.5,
                    max_backoff=self.config.http_max_backoff if self.config.http_max_backoff is not None else 60.0,
                ),
                on_retry=self.telemetry.record_retry,
            )
        return self._tokens

    @property
    def odata(self) -> ODataClient:
        if self._odata is None:
            http = HttpClient(
                retries=self.config.http_retries,
                backoff=self.config.http_backoff,
                timeout=self.config.http_timeout,
                max_backoff=self.config.http_max_backoff,
                jitter=self.config.http_jitter,
                session=self._session,
                on_retry=self.telemetry.record_retry,
            )
            self._odata = ODataClient(self.token_provider, self.config, telemetry=self.telemetry, http=http)
        return self._odata

    @property
    def store(self) -> StateStore:
        if self._store is None:
            if self.config.state_dir:
                self._store = JsonFileStateStore(self.config.state_dir)
            else:
                logger.warning("No state_dir configured; sync state is kept in memory only")
                self._store = MemoryStateStore()
        return self._store

    @property
    def tracker(self) -> DeltaTracker:
        if self._tracker is None:
            self._tracker = DeltaTracker(self.store, self.config.environment_name)
        return self._tracker

    @property
    def orchestrator(self) -> IngestOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = IngestOrchestrator(
                self.odata, self.tracker, self.sink, self.config, telemetry=self.telemetry
            )
        return self._orchestrator

    @property
    def tools(self) -> ToolOperations:
        if self._tools is None:
            self._tools = ToolOperations(self.odata)
        return self._tools

    # ----------------------------------------------------------------- actions

    def sync(self, entities: Optional[Iterable[str]] = None) -> SyncReport:
        """Run one sync pass over ``entities`` (default: the configured entities)."""
        return self.orchestrator.run_pass(entities)

    def cancel(self) -> None:
        """Cancel running passes at the next page boundary."""
        if self._orchestrator is not None:
            self._orchestrator.cancel()


__all__ = ["D365Client"]
