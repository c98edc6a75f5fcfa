# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
OData v4 client for Dataverse and Finance & Operations.

:class:`ODataClient` issues single requests against the service root: it
never follows ``@odata.nextLink`` on its own, so paging, cursor commits and
cancellation stay with the caller. Throttling and transient failures are
retried by :class:`~d365_odata_sync.core.http.HttpClient`; whatever is left is
classified into :class:`~d365_odata_sync.core.errors.QueryError` subcodes.
"""

from __future__ import annotations

import datetime as _dt
import logging
import re
import threading
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Union

import requests

from ..core import _error_codes as ec
from ..core.auth import TokenProvider
from ..core.config import SyncConfig
from ..core.errors import MetadataError, QueryError
from ..core.http import HttpClient
from ..core.retry import parse_retry_after
from ..core.telemetry import NoOpTelemetryManager, TelemetryManager
from ..models.entity import EntityDescriptor
from ..models.page import BatchRequest, BatchResponse, Page
from ..models.query import QueryOptions
from .batch import boundary_from_content_type, decode_batch, encode_batch, new_boundary
from .metadata import parse_metadata

logger = logging.getLogger(__name__)

_GUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

_BODY_EXCERPT = 500


def format_key(key: Union[str, int]) -> str:
    """
    Build the key predicate placed inside ``entity(...)``.

    GUIDs and integers are unquoted, other strings are quoted with single quotes
    doubled, and a predicate that already contains ``=`` (composite or
    alternate keys such as ``dataAreaId='usmf',CustomerAccount='US-001'``) is
    used verbatim.
    """
    if isinstance(key, bool):
        raise ValueError("key must be a string or integer")
    if isinstance(key, int):
        return str(key)
    text = str(key).strip()
    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()
    if not text:
        raise ValueError("key is required")
    if "=" in text:
        return text
    if _GUID_RE.match(text):
        return text
    if text.startswith("'") and text.endswith("'") and len(text) >= 2:
        return text
    return "'" + text.replace("'", "''") + "'"


class ODataClient:
    """
    Request, paging and metadata client for one Dynamics 365 environment.

    :param token_provider: Source of bearer tokens.
    :type token_provider: ~d365_odata_sync.core.auth.TokenProvider
    :param config: Environment configuration (service root, product, retry settings).
    :type config: ~d365_odata_sync.core.config.SyncConfig
    :param session: Optional ``requests.Session`` for connection pooling.
    :param telemetry: Telemetry manager; defaults to a no-op manager.
    :param http: Pre-built HTTP client, mainly for tests.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        config: SyncConfig,
        *,
        session: Optional[requests.Session] = None,
        telemetry: Optional[Union[TelemetryManager, NoOpTelemetryManager]] = None,
        http: Optional[HttpClient] = None,
    ) -> None:
        self.config = config
        self.product = config.product
        self.service_root = config.service_root
        self._tokens = token_provider
        self._telemetry = telemetry or NoOpTelemetryManager()
        self._http = http or HttpClient(
            retries=config.http_retries,
            backoff=config.http_backoff,
            timeout=config.http_timeout,
            max_backoff=config.http_max_backoff,
            jitter=config.http_jitter,
            session=session,
            on_retry=self._telemetry.record_retry,
        )
        self._metadata: Optional[Dict[str, EntityDescriptor]] = None
        self._metadata_loaded_at: Optional[_dt.datetime] = None
        self._metadata_lock = threading.Lock()

    # ------------------------------------------------------------------ metadata

    def fetch_metadata(self, force: bool = False) -> Dict[str, EntityDescriptor]:
        """
        Return entity descriptors keyed by entity set name, fetching ``$metadata`` once.

        :param force: Refetch even when cached.
        :raises MetadataError: ``metadata_unreachable`` or ``metadata_unparseable``.
        """
        cached = self._metadata
        if cached is not None and not force:
            return cached

        with self._metadata_lock:
            if self._metadata is not None and not force:
                return self._metadata
            url = f"{self.service_root}$metadata"
            try:
                response = self._request("get", url, operation="odata.metadata", accept="application/xml")
            except QueryError as exc:
                raise MetadataError(
                    f"$metadata could not be retrieved: {exc.message}",
                    subcode=ec.METADATA_UNREACHABLE,
                    status_code=exc.status_code,
                    details={"url": url},
                ) from exc
            descriptors = parse_metadata(response.content)
            self._metadata = descriptors
            self._metadata_loaded_at = _dt.datetime.now(_dt.timezone.utc)
            return descriptors

    def refresh_metadata(self) -> Dict[str, EntityDescriptor]:
        """Drop the cached metadata and fetch it again."""
        with self._metadata_lock:
            self._metadata = None
            self._metadata_loaded_at = None
        logger.info("Metadata cache cleared for %s", self.service_root)
        return self.fetch_metadata(force=True)

    def metadata_status(self) -> Dict[str, Any]:
        metadata = self._metadata
        loaded_at = self._metadata_loaded_at
        return {
            "loaded": metadata is not None,
            "entity_count": len(metadata) if metadata is not None else 0,
            "loaded_at": loaded_at.isoformat().replace("+00:00", "Z") if loaded_at else None,
        }

    def entity(self, name: str) -> EntityDescriptor:
        """
        Resolve an entity by entity set name, then by entity type name.

        Exact matches win; a case-insensitive match is the fallback.

        :raises MetadataError: ``metadata_entity_not_found``.
        """
        metadata = self.fetch_metadata()
        descriptor = metadata.get(name)
        if descriptor is not None:
            return descriptor
        for candidate in metadata.values():
            if candidate.logical_name == name:
                return candidate
        lowered = (name or "").lower()
        for candidate in metadata.values():
            if candidate.entity_set_name.lower() == lowered or candidate.logical_name.lower() == lowered:
                return candidate
        raise MetadataError(
            f"Entity '{name}' not found in $metadata",
            subcode=ec.METADATA_ENTITY_NOT_FOUND,
            details={"entity": name},
        )

    # --------------------------------------------------------------------- reads

    def query(self, entity: str, options: Optional[QueryOptions] = None, **params: Any) -> Page:
        """
        Issue one query request and return its page. Never follows ``next_link``.

        :param entity: Entity set name.
        :param options: Query options; keyword ``params`` override individual fields.
        :raises QueryError: When the request fails after retries or is not retryable.
        """
        if options is None:
            options = QueryOptions.build(**params)
        elif params:
            options = replace(options, **{k: v for k, v in params.items() if v is not None})
        url = f"{self.service_root}{entity}"
        response = self._request(
            "get",
            url,
            operation="odata.query",
            entity=entity,
            params=options.to_params(self.product),
            track_changes=options.track_changes,
        )
        page = self._page(response, url)
        logger.debug("Query %s returned %d records (more=%s)", entity, len(page), page.has_more)
        return page

    def follow(self, link: str, *, entity: Optional[str] = None, track_changes: bool = False) -> Page:
        """Request a server-issued next or delta link verbatim."""
        response = self._request("get", link, operation="odata.follow", entity=entity, track_changes=track_changes)
        return self._page(response, link)

    def get_record(
        self, entity: str, key: Union[str, int], *, select: Optional[Sequence[str]] = None
    ) -> Dict[str, Any]:
        """Fetch a single entity by key predicate."""
        url = f"{self.service_root}{entity}({format_key(key)})"
        params = {"$select": ",".join(select)} if select else None
        response = self._request("get", url, operation="odata.get", entity=entity, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise QueryError(
                "Entity response is not valid JSON",
                subcode=ec.QUERY_FAILED,
                status_code=response.status_code,
                body_excerpt=_excerpt(response),
                url=url,
            ) from exc
        if not isinstance(payload, dict):
            raise QueryError("Entity response is not a JSON object", subcode=ec.QUERY_FAILED, url=url)
        return payload

    def batch(self, requests_: Sequence[BatchRequest]) -> List[BatchResponse]:
        """
        Execute several reads in one ``$batch`` round trip.

        Sub-responses come back in request order, each with its own status;
        a failed sub-request does not fail the batch.
        """
        if not requests_:
            return []
        boundary = new_boundary()
        body = encode_batch(requests_, self.service_root, boundary)
        url = f"{self.service_root}$batch"
        response = self._request(
            "post",
            url,
            operation="odata.batch",
            content_type=f"multipart/mixed;boundary={boundary}",
            data=body.encode("utf-8"),
        )
        response_boundary = boundary_from_content_type(response.headers.get("Content-Type"))
        if not response_boundary:
            raise QueryError(
                "$batch response is not multipart",
                subcode=ec.QUERY_FAILED,
                status_code=response.status_code,
                body_excerpt=_excerpt(response),
                url=url,
            )
        try:
            results = decode_batch(response.text, response_boundary)
        except ValueError as exc:
            raise QueryError(str(exc), subcode=ec.QUERY_FAILED, status_code=response.status_code, url=url) from exc
        if len(results) != len(requests_):
            logger.warning("$batch returned %d responses for %d requests", len(results), len(requests_))
        return results

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------ internals

    def _headers(self, *, track_changes: bool = False, accept: str = "application/json") -> Dict[str, str]:
        """Build standard OData headers with bearer auth."""
        token = self._tokens.get_token()
        prefer = ["odata.include-annotations=*"]
        if self.config.page_size:
            prefer.append(f"odata.maxpagesize={int(self.config.page_size)}")
        if track_changes:
            prefer.append("odata.track-changes")
        return {
            "Authorization": f"Bearer {token.value}",
            "Accept": accept,
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
            "Prefer": ",".join(prefer),
        }

    def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        entity: Optional[str] = None,
        track_changes: bool = False,
        accept: str = "application/json",
        content_type: Optional[str] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send one logical request; a 401 invalidates the token and re-sends exactly once."""
        for attempt in range(2):
            headers = self._headers(track_changes=track_changes, accept=accept)
            if content_type:
                headers["Content-Type"] = content_type
            request_id = str(uuid.uuid4())
            headers["x-ms-client-request-id"] = request_id

            with self._telemetry.trace_request(operation, method.upper(), url, request_id, entity=entity) as ctx:
                try:
                    response = self._http.request(method, url, headers=headers, **kwargs)
                except requests.exceptions.RequestException as exc:
                    raise QueryError(
                        f"Network failure calling {url}: {exc}",
                        subcode=ec.QUERY_UNAVAILABLE,
                        url=url,
                        details={"client_request_id": request_id},
                    ) from exc
                self._telemetry.record_response(ctx, response.status_code)

            if response.status_code == 401 and attempt == 0:
                logger.warning("401 from %s; invalidating token and retrying once", url)
                self._tokens.invalidate()
                continue
            if not 200 <= response.status_code < 300:
                raise _query_error(response, url, request_id)
            return response

        # This should never be reached due to the logic above
        raise RuntimeError("Unexpected end of request loop")

    def _page(self, response: requests.Response, url: str) -> Page:
        try:
            return Page.from_payload(response.json())
        except (ValueError, AttributeError) as exc:
            raise QueryError(
                f"Unparseable OData response: {exc}",
                subcode=ec.QUERY_FAILED,
                status_code=response.status_code,
                body_excerpt=_excerpt(response),
                url=url,
            ) from exc


def _excerpt(response: requests.Response) -> str:
    text = getattr(response, "text", None)
    return text[:_BODY_EXCERPT] if isinstance(text, str) else ""


def _query_error(response: requests.Response, url: str, request_id: str) -> QueryError:
    status = response.status_code
    subcode = ec._query_subcode(status)
    body = _excerpt(response)
    message = f"HTTP {status}"
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        detail = payload["error"].get("message")
        if detail:
            message = f"HTTP {status}: {detail}"
    headers = getattr(response, "headers", None) or {}
    retry_after = parse_retry_after(headers.get("Retry-After")) if status == 429 else None
    logger.error("%s failed with %s (%s)", url, status, subcode)
    return QueryError(
        message,
        subcode=subcode,
        status_code=status,
        body_excerpt=body,
        retry_after=retry_after,
        url=url,
        details={"client_request_id": request_id},
    )


__all__ = ["ODataClient", "format_key"]
