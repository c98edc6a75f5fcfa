# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import pytest

from d365_odata_sync.core.config import EntityConfig, ProductType, SyncConfig


def _config(**overrides):
    params = dict(
        tenant_id="tenant",
        client_id="client",
        client_credential="secret",
        endpoint="https://org.crm.dynamics.com",
    )
    params.update(overrides)
    return SyncConfig(**params)


class TestSyncConfig:
    """Tests for SyncConfig."""

    def test_defaults(self):
        config = _config()
        assert config.product == ProductType.DATAVERSE
        assert config.max_concurrent_entities == 4
        assert config.page_size == 5000
        assert config.max_entity_retries == 3
        assert config.http_jitter is True
        assert config.telemetry is None

    def test_dataverse_service_root(self):
        assert _config().service_root == "https://org.crm.dynamics.com/api/data/v9.2/"

    def test_finops_service_root(self):
        config = _config(endpoint="https://contoso.operations.dynamics.com/", product="finops")
        assert config.product == ProductType.FINOPS
        assert config.service_root == "https://contoso.operations.dynamics.com/data/"

    def test_explicit_service_root_kept(self):
        config = _config(endpoint="https://org.crm.dynamics.com/api/data/v9.1")
        assert config.service_root == "https://org.crm.dynamics.com/api/data/v9.1/"
        assert config.resource == "https://org.crm.dynamics.com"

    def test_environment_name_defaults_to_host(self):
        assert _config().environment_name == "org.crm.dynamics.com"
        assert _config(environment="prod").environment_name == "prod"

    def test_entity_config_lookup(self):
        config = _config(entities=[EntityConfig("accounts", select=("name",))])
        assert isinstance(config.entities, tuple)
        assert config.entity_config("accounts").select == ("name",)
        assert config.entity_config("contacts") == EntityConfig("contacts")

    def test_validation(self):
        with pytest.raises(ValueError):
            _config(endpoint="  ")
        with pytest.raises(ValueError):
            _config(max_concurrent_entities=0)
        with pytest.raises(ValueError):
            _config(product="sap")

    def test_immutability(self):
        config = _config()
        with pytest.raises(AttributeError):
            config.page_size = 10


class TestProductType:
    @pytest.mark.parametrize("value", ["dataverse", "Dataverse", "CRM", "ce"])
    def test_dataverse_aliases(self, value):
        assert ProductType.parse(value) == ProductType.DATAVERSE

    @pytest.mark.parametrize("value", ["finops", "F&O", "fno", "Finance_Operations"])
    def test_finops_aliases(self, value):
        assert ProductType.parse(value) == ProductType.FINOPS


class TestFromEnv:
    """Tests for SyncConfig.from_env."""

    def test_required_variables(self):
        with pytest.raises(ValueError) as exc_info:
            SyncConfig.from_env({"D365_TENANT_ID": "t"})
        assert "D365_ENDPOINT" in str(exc_info.value)

    def test_full_environment(self):
        config = SyncConfig.from_env(
            {
                "D365_TENANT_ID": "tenant",
                "D365_CLIENT_ID": "client",
                "D365_CLIENT_SECRET": "secret",
                "D365_ENDPOINT": "https://contoso.operations.dynamics.com",
                "D365_PRODUCT": "finops",
                "D365_ENTITIES": "CustomersV3, Currencies,",
                "D365_MAX_CONCURRENCY": "2",
                "D365_MAX_RETRIES": "7",
                "D365_PAGE_SIZE": "1000",
                "D365_STATE_DIR": "/var/lib/d365",
            }
        )
        assert config.product == ProductType.FINOPS
        assert [e.name for e in config.entities] == ["CustomersV3", "Currencies"]
        assert config.max_concurrent_entities == 2
        assert config.http_retries == 7
        assert config.http_backoff is None
        assert config.page_size == 1000
        assert config.state_dir == "/var/lib/d365"
