# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Data models and type definitions for the sync engine.

- :class:`~d365_odata_sync.models.entity.EntityDescriptor`: Entity metadata parsed from ``$metadata``.
- :class:`~d365_odata_sync.models.sync_state.SyncState`: Persisted per-entity sync progress.
- :class:`~d365_odata_sync.models.page.Page`: One page of a query response.
- :class:`~d365_odata_sync.models.query.QueryOptions`: OData system query options.
- :class:`~d365_odata_sync.models.record.CanonicalRecord`: Typed output record.

Note:
    This ``__init__.py`` does NOT import/export models. Import directly from
    the specific module files.
"""

__all__ = []
