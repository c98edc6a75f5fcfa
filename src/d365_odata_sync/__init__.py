# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Incremental sync engine for Dynamics 365 OData endpoints (Dataverse and Finance & Operations).
"""

from .client import D365Client
from .core.config import EntityConfig, ProductType, SyncConfig
from .core.errors import (
    AuthError,
    D365Error,
    MetadataError,
    QueryError,
    SchemaMismatch,
    StoreError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "D365Client",
    "SyncConfig",
    "EntityConfig",
    "ProductType",
    "D365Error",
    "AuthError",
    "MetadataError",
    "QueryError",
    "SchemaMismatch",
    "StoreError",
    "ValidationError",
]
