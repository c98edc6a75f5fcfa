# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Structured error taxonomy for the sync engine.

Every error raised by the engine derives from :class:`D365Error` and carries a
stable ``code`` (error family) and ``subcode`` (specific condition), an
``is_transient`` flag used by the orchestrator to decide between entity
backoff and failure, and a :meth:`D365Error.to_structured` rendering used by
the external tool boundary.
"""

from __future__ import annotations

import datetime as _dt
from typing import Any, Dict, Optional

from . import _error_codes as ec


class D365Error(Exception):
    """Base structured error for the sync engine."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        subcode: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        is_transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.status_code = status_code
        self.details = details or {}
        self.source = source or "client"
        self.is_transient = is_transient
        self.timestamp = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")

    @property
    def kind(self) -> str:
        """Most specific classification available (subcode, else code)."""
        return self.subcode or self.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "subcode": self.subcode,
            "status_code": self.status_code,
            "details": self.details,
            "source": self.source,
            "is_transient": self.is_transient,
            "timestamp": self.timestamp,
        }

    def to_structured(self) -> Dict[str, str]:
        """Return the ``{kind, message}`` shape exposed at the tool boundary."""
        return {"kind": self.kind, "message": self.message}

    def __repr__(self) -> str:  # pragma: no cover
        return f"{self.__class__.__name__}(code={self.code!r}, subcode={self.subcode!r}, message={self.message!r})"


class ValidationError(D365Error):
    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="validation_error", subcode=subcode, details=details, source="client")


class AuthError(D365Error):
    """Token acquisition failed.

    ``auth_rejected`` means Azure AD refused the credential and retrying is
    pointless; ``auth_transient`` means acquisition kept failing on network or
    service errors until the retry budget ran out.
    """

    def __init__(self, message: str, *, subcode: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="auth_error",
            subcode=subcode,
            details=details,
            source="identity",
            is_transient=subcode == ec.AUTH_TRANSIENT,
        )

    @property
    def rejected(self) -> bool:
        return self.subcode == ec.AUTH_REJECTED


class MetadataError(D365Error):
    def __init__(
        self,
        message: str,
        *,
        subcode: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            code="metadata_error",
            subcode=subcode,
            status_code=status_code,
            details=details,
            source="server" if subcode == ec.METADATA_UNREACHABLE else "client",
            is_transient=subcode == ec.METADATA_UNREACHABLE,
        )


class QueryError(D365Error):
    """A data request failed after the retry budget was spent (or was not retryable)."""

    _TRANSIENT = frozenset({ec.QUERY_RATE_LIMITED, ec.QUERY_UNAVAILABLE})

    def __init__(
        self,
        message: str,
        *,
        subcode: str,
        status_code: Optional[int] = None,
        body_excerpt: Optional[str] = None,
        retry_after: Optional[float] = None,
        url: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        d = details or {}
        if body_excerpt is not None:
            d["body_excerpt"] = body_excerpt
        if retry_after is not None:
            d["retry_after"] = retry_after
        if url is not None:
            d["url"] = url
        super().__init__(
            message,
            code="query_error",
            subcode=subcode,
            status_code=status_code,
            details=d,
            source="server",
            is_transient=subcode in self._TRANSIENT,
        )

    @property
    def body(self) -> Optional[str]:
        return self.details.get("body_excerpt")

    @property
    def cursor_expired(self) -> bool:
        return self.subcode == ec.QUERY_CURSOR_EXPIRED


class SchemaMismatch(D365Error):
    """A payload value is incompatible with the field's declared EDM type."""

    def __init__(self, message: str, *, field: str, edm_type: str, value: Any = None):
        super().__init__(
            message,
            code="schema_mismatch",
            details={"field": field, "edm_type": edm_type, "value": repr(value)[:200]},
            source="client",
        )
        self.field = field
        self.edm_type = edm_type


class StoreError(D365Error):
    def __init__(self, message: str, *, subcode: str, key: Optional[str] = None):
        super().__init__(
            message,
            code="store_error",
            subcode=subcode,
            details={"key": key} if key is not None else None,
            source="store",
            is_transient=subcode == ec.STORE_UNAVAILABLE,
        )


__all__ = [
    "D365Error",
    "ValidationError",
    "AuthError",
    "MetadataError",
    "QueryError",
    "SchemaMismatch",
    "StoreError",
]
