# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Shared pytest fixtures and configuration for sync engine tests.

This module provides common test fixtures, mock objects, and configuration
that can be used across all test modules.
"""

from unittest.mock import Mock

import pytest

from d365_odata_sync.core.auth import Token
from d365_odata_sync.core.config import EntityConfig, SyncConfig
from d365_odata_sync.data.metadata import parse_metadata

from tests.fixtures.test_data import (
    DATAVERSE_ENDPOINT,
    FIXED_NOW,
    FINOPS_ENDPOINT,
    SAMPLE_FINOPS_METADATA_XML,
    SAMPLE_GUID,
    SAMPLE_METADATA_XML,
)


@pytest.fixture
def fake_token_provider():
    """Token provider stand-in that always returns a long-lived token."""
    provider = Mock()
    provider.get_token.return_value = Token(value="test_token_12345", expires_at=4102444800.0)
    return provider


@pytest.fixture
def dataverse_config():
    """Dataverse configuration with safe defaults."""
    return SyncConfig(
        tenant_id="tenant",
        client_id="client",
        client_credential="secret",
        endpoint=DATAVERSE_ENDPOINT,
        product="dataverse",
        environment="test",
        entities=(EntityConfig("accounts"), EntityConfig("contacts")),
        http_retries=3,
        http_backoff=0.1,
        http_jitter=False,
    )


@pytest.fixture
def finops_config():
    """Finance & Operations configuration with safe defaults."""
    return SyncConfig(
        tenant_id="tenant",
        client_id="client",
        client_credential="secret",
        endpoint=FINOPS_ENDPOINT,
        product="finops",
        environment="fo-test",
        entities=(EntityConfig("CustomersV3"), EntityConfig("Currencies")),
        http_retries=3,
        http_backoff=0.1,
        http_jitter=False,
    )


@pytest.fixture
def dataverse_descriptors():
    return parse_metadata(SAMPLE_METADATA_XML)


@pytest.fixture
def finops_descriptors():
    return parse_metadata(SAMPLE_FINOPS_METADATA_XML)


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def sample_guid():
    """Sample GUID for testing."""
    return SAMPLE_GUID
