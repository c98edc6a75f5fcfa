# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
OData data access: ``$metadata`` parsing, ``$batch`` encoding and the request client.
"""

__all__ = []
