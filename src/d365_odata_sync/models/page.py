# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Page and batch exchange types returned by the OData client."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Page:
    """
    One server page of entity payloads.

    :param records: Raw entity payloads in server order.
    :type records: list[dict]
    :param next_link: ``@odata.nextLink`` when more pages follow.
    :type next_link: str or None
    :param delta_link: ``@odata.deltaLink`` issued on the last page of a change-tracked read.
    :type delta_link: str or None
    :param count: ``@odata.count`` when requested.
    :type count: int or None
    """

    records: List[Dict[str, Any]] = field(default_factory=list)
    next_link: Optional[str] = None
    delta_link: Optional[str] = None
    count: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.next_link is not None

    def __len__(self) -> int:
        return len(self.records)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Page":
        value = payload.get("value")
        if value is None:
            records: List[Dict[str, Any]] = []
        elif isinstance(value, list):
            records = value
        else:
            raise ValueError("OData response 'value' is not an array")
        count = payload.get("@odata.count")
        return cls(
            records=records,
            next_link=payload.get("@odata.nextLink"),
            delta_link=payload.get("@odata.deltaLink"),
            count=int(count) if count is not None else None,
        )


@dataclass(frozen=True)
class BatchRequest:
    """A read inside a ``$batch`` call. ``url`` is relative to the service root or absolute."""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchResponse:
    """Per-request outcome of a ``$batch`` call."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


__all__ = ["Page", "BatchRequest", "BatchResponse"]
