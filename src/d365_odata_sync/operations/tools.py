# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Boundary operations for external tool frontends.

Every method takes primitive or string arguments and returns a
JSON-serializable envelope::

    {"ok": True, "data": ...}
    {"ok": False, "error": {"kind": "...", "message": "..."}}

Engine errors never escape as exceptions; they are rendered with
:meth:`~d365_odata_sync.core.errors.D365Error.to_structured`.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Optional, Sequence, Union

from ..core import _error_codes as ec
from ..core.errors import D365Error, ValidationError
from ..data.odata import ODataClient
from ..models.query import QueryOptions
from ..models.record import canonical_json
from ..sync.transform import to_canonical

logger = logging.getLogger(__name__)

DEFAULT_TOP = 50
MAX_TOP = 1000

Envelope = Dict[str, Any]


def _envelope(func: Callable[..., Any]) -> Callable[..., Envelope]:
    @functools.wraps(func)
    def wrapper(self: "ToolOperations", *args: Any, **kwargs: Any) -> Envelope:
        try:
            return {"ok": True, "data": func(self, *args, **kwargs)}
        except D365Error as exc:
            logger.info("%s failed: %s (%s)", func.__name__, exc.message, exc.kind)
            return {"ok": False, "error": exc.to_structured()}

    return wrapper


def dumps(envelope: Envelope) -> str:
    """Serialize an envelope deterministically (sorted keys, compact)."""
    return canonical_json(envelope)


def _require(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"'{name}' is required", subcode=ec.VALIDATION_MISSING_ARGUMENT)
    return str(value).strip()


def _parse_int(value: Union[None, int, str], name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"'{name}' must be an integer", subcode=ec.VALIDATION_INVALID_ARGUMENT)
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"'{name}' must be an integer, got {value!r}", subcode=ec.VALIDATION_INVALID_ARGUMENT
        ) from None
    if result < 0:
        raise ValidationError(f"'{name}' must be >= 0", subcode=ec.VALIDATION_INVALID_ARGUMENT)
    return result


def _parse_bool(value: Union[None, bool, str], name: str) -> bool:
    if value is None or value == "":
        return False
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValidationError(f"'{name}' must be true or false, got {value!r}", subcode=ec.VALIDATION_INVALID_ARGUMENT)


def _parse_list(value: Union[None, str, Sequence[str]]) -> Sequence[str]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(part).strip() for part in value if str(part).strip())


class ToolOperations:
    """
    Synchronous operations exposed to tool frontends.

    :param client: OData client for the environment.
    :type client: ~d365_odata_sync.data.odata.ODataClient

    Example::

        tools = ToolOperations(client.odata)
        result = tools.query("CustomersV3", top="10", filter="dataAreaId eq 'usmf'")
        if result["ok"]:
            for record in result["data"]["records"]:
                print(record["key"])
        else:
            print(result["error"]["kind"], result["error"]["message"])
    """

    def __init__(self, client: ODataClient) -> None:
        self._client = client

    @_envelope
    def list_entities(self) -> Dict[str, Any]:
        metadata = self._client.fetch_metadata()
        entities = [
            {
                "name": d.entity_set_name,
                "logical_name": d.logical_name,
                "key_fields": list(d.key_fields),
                "supports_change_tracking": d.supports_change_tracking,
            }
            for d in sorted(metadata.values(), key=lambda d: d.entity_set_name.lower())
        ]
        return {"count": len(entities), "entities": entities}

    @_envelope
    def get_schema(self, entity: str) -> Dict[str, Any]:
        return self._client.entity(_require(entity, "entity")).to_dict()

    @_envelope
    def get_metadata(self, entity: str) -> Dict[str, Any]:
        descriptor = self._client.entity(_require(entity, "entity"))
        return {
            "entity": descriptor.entity_set_name,
            "keys": list(descriptor.key_fields),
            "properties": [f"{f.name}: {f.short_type}" for f in descriptor.fields],
            "navigation_properties": [n.describe() for n in descriptor.navigation_properties],
        }

    @_envelope
    def refresh_metadata(self) -> Dict[str, Any]:
        self._client.refresh_metadata()
        return self._client.metadata_status()

    @_envelope
    def query(
        self,
        entity: str,
        select: Union[None, str, Sequence[str]] = None,
        filter: Optional[str] = None,
        orderby: Optional[str] = None,
        top: Union[None, int, str] = None,
        skip: Union[None, int, str] = None,
        expand: Union[None, str, Sequence[str]] = None,
        cross_company: Union[None, bool, str] = None,
        count: Union[None, bool, str] = None,
    ) -> Dict[str, Any]:
        """Run one query page; ``next_link`` is reported, never followed."""
        descriptor = self._client.entity(_require(entity, "entity"))
        requested_top = _parse_int(top, "top")
        effective_top = DEFAULT_TOP if requested_top is None else min(requested_top, MAX_TOP)
        options = QueryOptions(
            select=_parse_list(select),
            filter=filter or None,
            orderby=orderby or None,
            top=effective_top,
            skip=_parse_int(skip, "skip"),
            expand=_parse_list(expand),
            cross_company=_parse_bool(cross_company, "cross_company"),
            count=_parse_bool(count, "count"),
        )
        page = self._client.query(descriptor.entity_set_name, options)
        records = [to_canonical(descriptor, raw) for raw in page.records]
        return {
            "entity": descriptor.entity_set_name,
            "records": [r.to_dict() for r in records],
            "count": len(records),
            "total_count": page.count,
            "has_more": page.has_more,
            "next_link": page.next_link,
            "warning_count": sum(len(r.warnings) for r in records),
        }

    @_envelope
    def get_record(self, entity: str, id: Union[str, int]) -> Dict[str, Any]:
        descriptor = self._client.entity(_require(entity, "entity"))
        if id is None or (isinstance(id, str) and not id.strip()):
            raise ValidationError("'id' is required", subcode=ec.VALIDATION_MISSING_ARGUMENT)
        try:
            raw = self._client.get_record(descriptor.entity_set_name, id)
        except ValueError as exc:
            raise ValidationError(str(exc), subcode=ec.VALIDATION_INVALID_ARGUMENT) from exc
        return to_canonical(descriptor, raw).to_dict()

    @_envelope
    def get_environment_info(self) -> Dict[str, Any]:
        config = self._client.config
        return {
            "environment": config.environment_name,
            "endpoint": config.endpoint,
            "service_root": config.service_root,
            "product": config.product.value,
            "metadata": self._client.metadata_status(),
            "entities": [e.name for e in config.entities],
        }


__all__ = ["ToolOperations", "dumps", "DEFAULT_TOP", "MAX_TOP"]
