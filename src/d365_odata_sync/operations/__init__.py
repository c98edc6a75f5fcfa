# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Operations exposed at the external tool boundary:
- ToolOperations: list, describe, query and fetch entities with JSON envelopes
"""

__all__ = []
