# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Sync engine components:

- Transform: raw payloads to canonical records
- StateStore / DeltaTracker: durable per-entity sync state
- IngestOrchestrator: full loads and delta pulls under bounded concurrency
"""

__all__ = []
