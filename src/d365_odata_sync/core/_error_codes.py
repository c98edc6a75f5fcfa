# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Error code and subcode constants used across the sync engine."""

# HTTP subcode constants
HTTP_400 = "http_400"
HTTP_401 = "http_401"
HTTP_403 = "http_403"
HTTP_404 = "http_404"
HTTP_410 = "http_410"
HTTP_429 = "http_429"
HTTP_500 = "http_500"
HTTP_502 = "http_502"
HTTP_503 = "http_503"
HTTP_504 = "http_504"

# Transient HTTP status codes that are retried by the HTTP client
TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})

# Authentication subcodes
AUTH_REJECTED = "auth_rejected"
AUTH_TRANSIENT = "auth_transient"

# Metadata subcodes
METADATA_UNREACHABLE = "metadata_unreachable"
METADATA_UNPARSEABLE = "metadata_unparseable"
METADATA_ENTITY_NOT_FOUND = "metadata_entity_not_found"

# Query subcodes
QUERY_RATE_LIMITED = "query_rate_limited"
QUERY_UNAVAILABLE = "query_unavailable"
QUERY_BAD_REQUEST = "query_bad_request"
QUERY_FORBIDDEN = "query_forbidden"
QUERY_NOT_FOUND = "query_not_found"
QUERY_CURSOR_EXPIRED = "query_cursor_expired"
QUERY_FAILED = "query_failed"

# Store subcodes
STORE_UNAVAILABLE = "store_unavailable"
STORE_CONFLICT = "store_conflict"

# Validation subcodes
VALIDATION_MISSING_ARGUMENT = "validation_missing_argument"
VALIDATION_INVALID_ARGUMENT = "validation_invalid_argument"
VALIDATION_CURSOR_KIND = "validation_cursor_kind"

_STATUS_TO_QUERY_SUBCODE = {
    400: QUERY_BAD_REQUEST,
    401: QUERY_FORBIDDEN,
    403: QUERY_FORBIDDEN,
    404: QUERY_NOT_FOUND,
    410: QUERY_CURSOR_EXPIRED,
    429: QUERY_RATE_LIMITED,
}


def _http_subcode(status: int) -> str:
    """Return the ``http_<status>`` subcode for a status code."""
    return f"http_{status}"


def _query_subcode(status: int) -> str:
    """Map an HTTP status to the query error subcode."""
    if status in _STATUS_TO_QUERY_SUBCODE:
        return _STATUS_TO_QUERY_SUBCODE[status]
    if 500 <= status < 600:
        return QUERY_UNAVAILABLE
    return QUERY_FAILED
