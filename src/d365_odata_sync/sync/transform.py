# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
EDM-to-canonical record mapping.

:func:`to_canonical` is a pure function of an
:class:`~d365_odata_sync.models.entity.EntityDescriptor` and one raw payload.
Values are coerced to Python types according to their declared EDM type. A
value that does not fit its declared type does not fail the record: the field
is set to ``None``, a warning is logged and the field name is listed in
:attr:`CanonicalRecord.warnings`.
"""

from __future__ import annotations

import base64
import binascii
import datetime as _dt
import decimal
import logging
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from dateutil.parser import isoparse, isoparser

from ..core.errors import SchemaMismatch
from ..models.entity import EntityDescriptor, FieldDescriptor
from ..models.query import format_literal
from ..models.record import CanonicalRecord

logger = logging.getLogger(__name__)

_ISO = isoparser()

_INT_RANGES = {
    "Edm.Byte": (0, 255),
    "Edm.SByte": (-128, 127),
    "Edm.Int16": (-(2**15), 2**15 - 1),
    "Edm.Int32": (-(2**31), 2**31 - 1),
    "Edm.Int64": (-(2**63), 2**63 - 1),
}

_SPECIAL_FLOATS = {"INF": float("inf"), "-INF": float("-inf"), "NaN": float("nan")}


def _mismatch(f: FieldDescriptor, value: Any, reason: str) -> SchemaMismatch:
    return SchemaMismatch(
        f"{f.name}: {reason} for {f.edm_type}",
        field=f.name,
        edm_type=f.edm_type,
        value=value,
    )


def _to_string(f: FieldDescriptor, value: Any) -> Any:
    if not isinstance(value, str):
        raise _mismatch(f, value, f"expected string, got {type(value).__name__}")
    return value


def _to_guid(f: FieldDescriptor, value: Any) -> Any:
    if not isinstance(value, str):
        raise _mismatch(f, value, "expected GUID string")
    try:
        return str(uuid.UUID(value))
    except ValueError as exc:
        raise _mismatch(f, value, "invalid GUID") from exc


def _to_int(f: FieldDescriptor, value: Any) -> Any:
    if isinstance(value, bool):
        raise _mismatch(f, value, "boolean is not an integer")
    if isinstance(value, str):
        # IEEE754Compatible payloads send Int64 as strings
        try:
            value = int(value.strip())
        except ValueError as exc:
            raise _mismatch(f, value, "non-numeric string") from exc
    elif isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise _mismatch(f, value, f"expected integer, got {type(value).__name__}")
    low, high = _INT_RANGES[f.edm_type]
    if not low <= value <= high:
        raise _mismatch(f, value, "out of range")
    return value


def _to_bool(f: FieldDescriptor, value: Any) -> Any:
    if not isinstance(value, bool):
        raise _mismatch(f, value, f"expected boolean, got {type(value).__name__}")
    return value


def _to_decimal(f: FieldDescriptor, value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise _mismatch(f, value, f"expected decimal, got {type(value).__name__}")
    try:
        result = decimal.Decimal(str(value))
    except decimal.InvalidOperation as exc:
        raise _mismatch(f, value, "invalid decimal") from exc
    if not result.is_finite():
        raise _mismatch(f, value, "non-finite decimal")
    return result


def _to_float(f: FieldDescriptor, value: Any) -> Any:
    if isinstance(value, bool):
        raise _mismatch(f, value, "boolean is not a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value in _SPECIAL_FLOATS:
            return _SPECIAL_FLOATS[value]
        try:
            return float(value)
        except ValueError as exc:
            raise _mismatch(f, value, "non-numeric string") from exc
    raise _mismatch(f, value, f"expected number, got {type(value).__name__}")


def _to_datetime(f: FieldDescriptor, value: Any) -> Any:
    if not isinstance(value, str):
        raise _mismatch(f, value, "expected ISO-8601 string")
    try:
        parsed = isoparse(value)
    except ValueError as exc:
        raise _mismatch(f, value, "invalid timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed.astimezone(_dt.timezone.utc)


def _to_date(f: FieldDescriptor, value: Any) -> Any:
    if not isinstance(value, str):
        raise _mismatch(f, value, "expected ISO-8601 date string")
    try:
        return _ISO.parse_isodate(value)
    except ValueError as exc:
        raise _mismatch(f, value, "invalid date") from exc


def _to_time(f: FieldDescriptor, value: Any) -> Any:
    if not isinstance(value, str):
        raise _mismatch(f, value, "expected ISO-8601 time string")
    try:
        return _ISO.parse_isotime(value)
    except ValueError as exc:
        raise _mismatch(f, value, "invalid time of day") from exc


def _to_binary(f: FieldDescriptor, value: Any) -> Any:
    if not isinstance(value, str):
        raise _mismatch(f, value, "expected base64 string")
    try:
        padded = value + "=" * (-len(value) % 4)
        if "-" in value or "_" in value:
            return base64.urlsafe_b64decode(padded)
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise _mismatch(f, value, "invalid base64") from exc


_COERCERS: Dict[str, Callable[[FieldDescriptor, Any], Any]] = {
    "Edm.String": _to_string,
    "Edm.Guid": _to_guid,
    "Edm.Byte": _to_int,
    "Edm.SByte": _to_int,
    "Edm.Int16": _to_int,
    "Edm.Int32": _to_int,
    "Edm.Int64": _to_int,
    "Edm.Boolean": _to_bool,
    "Edm.Decimal": _to_decimal,
    "Edm.Double": _to_float,
    "Edm.Single": _to_float,
    "Edm.DateTimeOffset": _to_datetime,
    "Edm.Date": _to_date,
    "Edm.TimeOfDay": _to_time,
    "Edm.Duration": _to_string,
    "Edm.Binary": _to_binary,
}


def _is_annotation(name: str) -> bool:
    return "@" in name


def strip_annotations(value: Any) -> Any:
    """Remove OData instance annotations from nested payload values."""
    if isinstance(value, Mapping):
        return {k: strip_annotations(v) for k, v in value.items() if not _is_annotation(k)}
    if isinstance(value, list):
        return [strip_annotations(v) for v in value]
    return value


def coerce_value(f: FieldDescriptor, value: Any) -> Any:
    """
    Convert one payload value to its canonical Python type.

    :raises SchemaMismatch: When the value does not fit ``f.edm_type``.
    """
    if value is None:
        return None
    if f.is_collection:
        if not isinstance(value, list):
            raise _mismatch(f, value, "expected array")
        inner = FieldDescriptor(f.name, f.edm_type[len("Collection("):-1], f.nullable)
        return [coerce_value(inner, item) for item in value]
    coercer = _COERCERS.get(f.edm_type)
    if coercer is None:
        # Enum and complex types
        return strip_annotations(value)
    return coercer(f, value)


def is_tombstone(raw: Mapping[str, Any]) -> bool:
    context = raw.get("@odata.context") or raw.get("@context") or ""
    if str(context).endswith("$deletedEntity"):
        return True
    return raw.get("reason") == "deleted" and "id" in raw


def record_key(descriptor: EntityDescriptor, raw: Mapping[str, Any]) -> Optional[str]:
    """Render the record key; composite keys become an OData key predicate."""
    keys = descriptor.key_fields or ((descriptor.primary_key_field,) if descriptor.primary_key_field else ())
    if not keys:
        return None
    if len(keys) == 1:
        value = raw.get(keys[0])
        return None if value is None else str(value)
    if any(raw.get(k) is None for k in keys):
        return None
    return ",".join(f"{k}={format_literal(raw.get(k))}" for k in keys)


def to_canonical(descriptor: EntityDescriptor, raw: Mapping[str, Any]) -> CanonicalRecord:
    """
    Map one raw payload to a :class:`CanonicalRecord`.

    :param descriptor: Entity the payload belongs to.
    :param raw: Decoded JSON object from an OData response.
    :return: Typed record; never raises for value-level mismatches.
    """
    entity_name = descriptor.entity_set_name
    if is_tombstone(raw):
        key = raw.get("id")
        return CanonicalRecord(
            entity_name=entity_name,
            key=None if key is None else str(key),
            fields={},
            deleted=True,
        )

    fields: Dict[str, Any] = {}
    warnings = []
    for name, value in raw.items():
        if _is_annotation(name):
            continue
        f = descriptor.get_field(name)
        if f is None:
            fields[name] = strip_annotations(value)
            continue
        try:
            fields[name] = coerce_value(f, value)
        except SchemaMismatch as exc:
            logger.warning("Schema mismatch in %s: %s", entity_name, exc.message)
            fields[name] = None
            warnings.append(name)

    return CanonicalRecord(
        entity_name=entity_name,
        key=record_key(descriptor, raw),
        fields=fields,
        etag=raw.get("@odata.etag"),
        warnings=warnings,
    )


__all__ = ["to_canonical", "coerce_value", "strip_annotations", "record_key", "is_tombstone"]
