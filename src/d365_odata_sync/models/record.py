# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Canonical record representation emitted by the transform step.
"""

from __future__ import annotations

import base64
import datetime as _dt
import decimal
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional


@dataclass(frozen=True)
class CanonicalRecord:
    """
    Typed, annotation-free representation of one entity payload.

    Supports read-only dict-like access to ``fields``.

    :param entity_name: Entity set name.
    :type entity_name: str
    :param key: Primary key value; composite keys render as ``A='x',B=1``.
    :type key: str or None
    :param fields: Field name to typed value.
    :type fields: dict[str, Any]
    :param etag: ``@odata.etag`` of the payload, if present.
    :type etag: str or None
    :param deleted: True for change-tracking tombstones.
    :type deleted: bool
    :param warnings: Fields replaced with None because their value did not match the schema.
    :type warnings: list[str]

    Example::

        record = to_canonical(descriptor, payload)
        print(record.key, record["name"])
        if record.warnings:
            print("nulled fields:", record.warnings)
    """

    entity_name: str
    key: Optional[str]
    fields: Dict[str, Any] = field(default_factory=dict)
    etag: Optional[str] = None
    deleted: bool = False
    warnings: List[str] = field(default_factory=list)

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable form (temporal, decimal and binary values rendered as strings)."""
        result: Dict[str, Any] = {
            "entity": self.entity_name,
            "key": self.key,
            "fields": {name: to_json_value(value) for name, value in self.fields.items()},
        }
        if self.etag is not None:
            result["etag"] = self.etag
        if self.deleted:
            result["deleted"] = True
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


def to_json_value(value: Any) -> Any:
    """Convert a canonical field value into a JSON-compatible value."""
    if isinstance(value, _dt.datetime):
        text = value.isoformat()
        return text[:-6] + "Z" if text.endswith("+00:00") else text
    if isinstance(value, (_dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, float) and not math.isfinite(value):
        # OData spelling; JSON has no literal for these
        if math.isnan(value):
            return "NaN"
        return "INF" if value > 0 else "-INF"
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {k: to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """Deterministic JSON text: sorted keys, compact separators, non-ASCII kept."""
    if isinstance(value, CanonicalRecord):
        value = value.to_dict()
    return json.dumps(
        to_json_value(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )


__all__ = ["CanonicalRecord", "canonical_json", "to_json_value"]
