# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Core infrastructure components for the sync engine.

This module contains the foundational components including authentication,
configuration, the retrying HTTP client, telemetry and error handling.
"""

from .auth import Credential, Token, TokenProvider
from .config import EntityConfig, ProductType, SyncConfig
from .errors import (
    AuthError,
    D365Error,
    MetadataError,
    QueryError,
    SchemaMismatch,
    StoreError,
    ValidationError,
)
from .http import HttpClient
from .results import EntitySyncResult, SyncReport, SyncStatus
from .retry import RetryPolicy

__all__ = [
    "Credential",
    "Token",
    "TokenProvider",
    "EntityConfig",
    "ProductType",
    "SyncConfig",
    "D365Error",
    "AuthError",
    "MetadataError",
    "QueryError",
    "SchemaMismatch",
    "StoreError",
    "ValidationError",
    "HttpClient",
    "EntitySyncResult",
    "SyncReport",
    "SyncStatus",
    "RetryPolicy",
]
