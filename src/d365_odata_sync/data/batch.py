# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
OData ``$batch`` multipart/mixed encoding and decoding.

Only reads are batched, so requests are never wrapped in change sets. Response
change sets are still flattened in order when a server returns them.
"""

from __future__ import annotations

import json
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.page import BatchRequest, BatchResponse

_BOUNDARY_RE = re.compile(r'boundary="?([^";]+)"?', re.IGNORECASE)
_STATUS_RE = re.compile(r"^HTTP/\d\.\d\s+(\d{3})")

CRLF = "\r\n"


def new_boundary() -> str:
    return f"batch_{uuid.uuid4()}"


def encode_batch(requests: Sequence[BatchRequest], service_root: str, boundary: str) -> str:
    """
    Render read requests as a ``multipart/mixed`` body.

    Relative URLs are resolved against ``service_root``; absolute URLs are used verbatim.
    """
    root = service_root if service_root.endswith("/") else service_root + "/"
    lines: List[str] = []
    for req in requests:
        url = req.url if req.url.lower().startswith(("http://", "https://")) else root + req.url.lstrip("/")
        lines.append(f"--{boundary}")
        lines.append("Content-Type: application/http")
        lines.append("Content-Transfer-Encoding: binary")
        lines.append("")
        lines.append(f"{req.method.upper()} {url} HTTP/1.1")
        headers = {"Accept": "application/json"}
        headers.update(req.headers)
        for name, value in headers.items():
            lines.append(f"{name}: {value}")
        lines.append("")
    lines.append(f"--{boundary}--")
    lines.append("")
    return CRLF.join(lines)


def boundary_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = _BOUNDARY_RE.search(content_type)
    return m.group(1) if m else None


def _split_head(block: str) -> Tuple[Dict[str, str], str]:
    """Split ``headers CRLF CRLF body`` into a header dict and the remaining text."""
    normalized = block.replace("\r\n", "\n")
    head, sep, rest = normalized.partition("\n\n")
    if not sep:
        head, rest = normalized, ""
    headers: Dict[str, str] = {}
    for line in head.split("\n"):
        name, colon, value = line.partition(":")
        if colon:
            headers[name.strip()] = value.strip()
    return headers, rest


def _get(headers: Dict[str, str], name: str) -> Optional[str]:
    lower = name.lower()
    for key, value in headers.items():
        if key.lower() == lower:
            return value
    return None


def _parse_body(text: str, content_type: Optional[str]) -> Any:
    text = text.strip()
    if not text:
        return None
    if content_type and "json" in content_type.lower():
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


def _parse_part(block: str) -> List[BatchResponse]:
    mime_headers, payload = _split_head(block.strip("\r\n"))
    mime_type = _get(mime_headers, "Content-Type") or ""
    if mime_type.lower().startswith("multipart/mixed"):
        nested = boundary_from_content_type(mime_type)
        return decode_batch(payload, nested) if nested else []

    payload = payload.lstrip("\r\n")
    status_line, _, remainder = payload.replace("\r\n", "\n").partition("\n")
    m = _STATUS_RE.match(status_line.strip())
    if not m:
        raise ValueError(f"Malformed batch part status line: {status_line[:80]!r}")
    headers, body = _split_head(remainder)
    return [
        BatchResponse(
            status=int(m.group(1)),
            headers=headers,
            body=_parse_body(body, _get(headers, "Content-Type")),
        )
    ]


def decode_batch(body: str, boundary: str) -> List[BatchResponse]:
    """
    Parse a ``multipart/mixed`` batch response into sub-responses in server order.

    :raises ValueError: When a part does not contain an HTTP status line.
    """
    delimiter = f"--{boundary}"
    responses: List[BatchResponse] = []
    for chunk in body.split(delimiter)[1:]:
        if chunk.startswith("--"):
            break
        responses.extend(_parse_part(chunk))
    return responses


__all__ = ["encode_batch", "decode_batch", "new_boundary", "boundary_from_content_type"]
