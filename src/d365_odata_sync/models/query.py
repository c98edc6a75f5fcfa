# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
OData query options.

Provides :class:`QueryOptions`, the set of system query options accepted by
:meth:`~d365_odata_sync.data.odata.ODataClient.query`, and helpers to build
filter expressions.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from ..core.config import ProductType


def _as_tuple(value: Union[None, str, Iterable[str]]) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(part).strip() for part in value if str(part).strip())


@dataclass(frozen=True)
class QueryOptions:
    """
    OData system query options for one request.

    :param select: Columns for ``$select``.
    :type select: tuple[str, ...]
    :param filter: ``$filter`` expression.
    :type filter: str or None
    :param orderby: ``$orderby`` expression, e.g. ``"modifiedon asc"``.
    :type orderby: str or None
    :param top: ``$top``.
    :type top: int or None
    :param skip: ``$skip``.
    :type skip: int or None
    :param expand: Navigation properties for ``$expand``.
    :type expand: tuple[str, ...]
    :param cross_company: F&O only; adds ``cross-company=true``.
    :type cross_company: bool
    :param count: Adds ``$count=true``.
    :type count: bool
    :param track_changes: Requests a delta link with ``Prefer: odata.track-changes``.
    :type track_changes: bool

    Example::

        options = QueryOptions(select=("name", "revenue"), filter="statecode eq 0", top=10)
        params = options.to_params(ProductType.DATAVERSE)
    """

    select: Tuple[str, ...] = ()
    filter: Optional[str] = None
    orderby: Optional[str] = None
    top: Optional[int] = None
    skip: Optional[int] = None
    expand: Tuple[str, ...] = ()
    cross_company: bool = False
    count: bool = False
    track_changes: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "select", _as_tuple(self.select))
        object.__setattr__(self, "expand", _as_tuple(self.expand))
        if self.top is not None and int(self.top) < 0:
            raise ValueError("top must be >= 0")
        if self.skip is not None and int(self.skip) < 0:
            raise ValueError("skip must be >= 0")

    @classmethod
    def build(cls, **params: Any) -> "QueryOptions":
        """Create options from keyword arguments, ignoring ``None`` values."""
        return cls(**{k: v for k, v in params.items() if v is not None})

    def with_filter(self, expression: Optional[str]) -> "QueryOptions":
        """Return a copy with ``expression`` ANDed onto the existing filter."""
        return replace(self, filter=and_filters(self.filter, expression))

    def to_params(self, product: ProductType) -> Dict[str, str]:
        """Render as query string parameters (insertion ordered)."""
        params: Dict[str, str] = {}
        if self.select:
            params["$select"] = ",".join(self.select)
        if self.filter:
            params["$filter"] = self.filter
        if self.top is not None:
            params["$top"] = str(int(self.top))
        if self.skip is not None:
            params["$skip"] = str(int(self.skip))
        if self.orderby:
            params["$orderby"] = self.orderby
        if self.expand:
            params["$expand"] = ",".join(self.expand)
        if self.count:
            params["$count"] = "true"
        if self.cross_company and product == ProductType.FINOPS:
            params["cross-company"] = "true"
        return params


def and_filters(*expressions: Optional[str]) -> Optional[str]:
    """Combine filter expressions with ``and``, parenthesizing each part."""
    parts = [e.strip() for e in expressions if e and e.strip()]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return " and ".join(f"({p})" for p in parts)


def format_literal(value: Any) -> str:
    """Format a Python value as an OData literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, _dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=_dt.timezone.utc)
        return value.astimezone(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, _dt.date):
        return value.isoformat()
    return "'" + str(value).replace("'", "''") + "'"


__all__ = ["QueryOptions", "and_filters", "format_literal"]
