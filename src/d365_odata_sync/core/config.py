# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple
from urllib.parse import urlparse

from .telemetry import TelemetryConfig


class ProductType(str, Enum):
    """Target Dynamics 365 product variant."""

    DATAVERSE = "dataverse"
    FINOPS = "finops"

    @classmethod
    def parse(cls, value: "str | ProductType") -> "ProductType":
        if isinstance(value, ProductType):
            return value
        normalized = (value or "").strip().lower().replace("&", "").replace("_", "").replace("-", "")
        if normalized in ("dataverse", "crm", "ce"):
            return cls.DATAVERSE
        if normalized in ("finops", "fo", "fno", "finance", "financeoperations"):
            return cls.FINOPS
        raise ValueError(f"Unknown product type: {value!r} (expected 'dataverse' or 'finops')")


_DEFAULT_SERVICE_PATHS = {
    ProductType.DATAVERSE: "/api/data/v9.2/",
    ProductType.FINOPS: "/data/",
}


@dataclass(frozen=True)
class EntityConfig:
    """
    Per-entity sync settings.

    :param name: Entity set name (e.g. ``"accounts"``, ``"CustomersV3"``).
    :type name: str
    :param select: Optional columns to restrict the sync to.
    :type select: tuple[str, ...]
    :param filter: Optional OData filter ANDed onto every sync request.
    :type filter: str or None
    :param timestamp_field: Last-modified field overriding the one detected from metadata.
    :type timestamp_field: str or None
    :param cross_company: F&O only; query across all legal entities.
    :type cross_company: bool
    """

    name: str
    select: Tuple[str, ...] = ()
    filter: Optional[str] = None
    timestamp_field: Optional[str] = None
    cross_company: bool = False


@dataclass(frozen=True)
class SyncConfig:
    """
    Configuration settings for the sync engine.

    :param tenant_id: Azure AD tenant ID.
    :type tenant_id: str
    :param client_id: App registration client ID.
    :type client_id: str
    :param client_credential: Client secret, or ``"cert:<path>"`` for a PEM certificate.
    :type client_credential: str
    :param endpoint: Environment URL or full service root.
    :type endpoint: str
    :param product: ``dataverse`` or ``finops``.
    :type product: ProductType
    :param environment: Stable environment name used to key persisted sync state.
        Defaults to the endpoint host.
    :type environment: str or None
    :param entities: Entities driven by the orchestrator.
    :type entities: tuple[EntityConfig, ...]
    :param max_concurrent_entities: Worker pool size for simultaneous entity syncs (default: 4).
    :type max_concurrent_entities: int
    :param http_retries: Maximum attempts per HTTP request (default: 5).
    :type http_retries: int or None
    :param http_backoff: Base delay in seconds for HTTP and token retries (default: 0.5).
    :type http_backoff: float or None
    :param http_max_backoff: Cap for a single HTTP retry delay in seconds (default: 60.0).
    :type http_max_backoff: float or None
    :param http_timeout: Request timeout in seconds (default: method-dependent).
    :type http_timeout: float or None
    :param http_jitter: Whether to add jitter to HTTP retry delays (default: True).
    :type http_jitter: bool
    :param entity_backoff: Base delay in seconds for entity-level backoff (default: 5.0).
    :type entity_backoff: float
    :param entity_max_backoff: Cap for entity-level backoff in seconds (default: 300.0).
    :type entity_max_backoff: float
    :param max_entity_retries: Consecutive failures after which a pass reports the entity failed (default: 3).
    :type max_entity_retries: int
    :param token_refresh_margin: Seconds before expiry at which the token is refreshed (default: 300).
    :type token_refresh_margin: float
    :param page_size: ``odata.maxpagesize`` preference (default: 5000).
    :type page_size: int or None
    :param max_pages_per_pass: Bound on delta pages processed per entity pass (default: unbounded).
    :type max_pages_per_pass: int or None
    :param timestamp_overlap: Seconds subtracted from a full-load start time when it becomes
        the first high-water timestamp (default: 300).
    :type timestamp_overlap: float
    :param state_dir: Directory for the JSON file state store; None keeps state in memory.
    :type state_dir: str or None
    :param telemetry: Optional telemetry configuration.
    :type telemetry: TelemetryConfig or None
    """

    tenant_id: str
    client_id: str
    client_credential: str
    endpoint: str
    product: ProductType = ProductType.DATAVERSE
    environment: Optional[str] = None
    entities: Tuple[EntityConfig, ...] = ()

    max_concurrent_entities: int = 4

    # HTTP retry and resilience configuration
    http_retries: Optional[int] = None
    http_backoff: Optional[float] = None
    http_max_backoff: Optional[float] = None
    http_timeout: Optional[float] = None
    http_jitter: bool = True

    # Entity-level backoff
    entity_backoff: float = 5.0
    entity_max_backoff: float = 300.0
    max_entity_retries: int = 3

    token_refresh_margin: float = 300.0
    page_size: Optional[int] = 5000
    max_pages_per_pass: Optional[int] = None
    timestamp_overlap: float = 300.0
    state_dir: Optional[str] = None

    telemetry: Optional[TelemetryConfig] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "product", ProductType.parse(self.product))
        object.__setattr__(self, "entities", tuple(self.entities))
        if not (self.endpoint or "").strip():
            raise ValueError("endpoint is required.")
        if self.max_concurrent_entities < 1:
            raise ValueError("max_concurrent_entities must be >= 1")

    @property
    def service_root(self) -> str:
        """Service root URL, always ending with ``/``."""
        endpoint = self.endpoint.strip()
        parsed = urlparse(endpoint)
        if parsed.path in ("", "/"):
            return endpoint.rstrip("/") + _DEFAULT_SERVICE_PATHS[self.product]
        return endpoint if endpoint.endswith("/") else endpoint + "/"

    @property
    def resource(self) -> str:
        """Token audience: ``scheme://host`` of the endpoint."""
        parsed = urlparse(self.endpoint.strip())
        if parsed.scheme and parsed.netloc:
            return f"{parsed.scheme}://{parsed.netloc}"
        return "/".join(self.endpoint.split("/")[:3])

    @property
    def environment_name(self) -> str:
        return self.environment or urlparse(self.endpoint).netloc or self.endpoint

    def entity_config(self, name: str) -> EntityConfig:
        for entity in self.entities:
            if entity.name == name:
                return entity
        return EntityConfig(name=name)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        """
        Create a configuration from ``D365_*`` environment variables.

        Required: ``D365_TENANT_ID``, ``D365_CLIENT_ID``, ``D365_CLIENT_SECRET``
        and ``D365_ENDPOINT``. Optional: ``D365_PRODUCT``, ``D365_ENVIRONMENT``,
        ``D365_ENTITIES`` (comma separated), ``D365_MAX_CONCURRENCY``,
        ``D365_MAX_RETRIES``, ``D365_RETRY_BACKOFF``, ``D365_PAGE_SIZE``,
        ``D365_STATE_DIR``.

        :return: Configuration instance.
        :rtype: SyncConfig
        :raises ValueError: If a required variable is missing.
        """
        env = os.environ if environ is None else environ
        missing = [
            name
            for name in ("D365_TENANT_ID", "D365_CLIENT_ID", "D365_CLIENT_SECRET", "D365_ENDPOINT")
            if not env.get(name)
        ]
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        entities = tuple(
            EntityConfig(name=name.strip())
            for name in env.get("D365_ENTITIES", "").split(",")
            if name.strip()
        )
        return cls(
            tenant_id=env["D365_TENANT_ID"],
            client_id=env["D365_CLIENT_ID"],
            client_credential=env["D365_CLIENT_SECRET"],
            endpoint=env["D365_ENDPOINT"],
            product=ProductType.parse(env.get("D365_PRODUCT", "dataverse")),
            environment=env.get("D365_ENVIRONMENT") or None,
            entities=entities,
            max_concurrent_entities=int(env.get("D365_MAX_CONCURRENCY", "4")),
            http_retries=_optional_int(env.get("D365_MAX_RETRIES")),
            http_backoff=_optional_float(env.get("D365_RETRY_BACKOFF")),
            page_size=_optional_int(env.get("D365_PAGE_SIZE")) or 5000,
            state_dir=env.get("D365_STATE_DIR") or None,
        )


def _optional_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


def _optional_float(value: Optional[str]) -> Optional[float]:
    return float(value) if value not in (None, "") else None
