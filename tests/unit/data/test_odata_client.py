# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for ODataClient request building, error classification and metadata caching."""

import uuid
from unittest.mock import MagicMock, patch

import pytest
import requests

from d365_odata_sync.core import _error_codes as ec
from d365_odata_sync.core.errors import MetadataError, QueryError
from d365_odata_sync.core.http import HttpClient
from d365_odata_sync.core.telemetry import TelemetryConfig, TelemetryManager
from d365_odata_sync.data.odata import ODataClient, format_key
from d365_odata_sync.models.page import BatchRequest
from d365_odata_sync.models.query import QueryOptions

from tests.fixtures.test_data import (
    DATAVERSE_ROOT,
    FINOPS_ROOT,
    SAMPLE_ACCOUNT,
    SAMPLE_BATCH_RESPONSE,
    SAMPLE_CUSTOMER,
    SAMPLE_FINOPS_METADATA_XML,
    SAMPLE_GUID,
    metadata_response,
    mock_response,
    page_payload,
)


def _client(config, token_provider, telemetry=None):
    http = HttpClient(retries=3, backoff=0.1, jitter=False)
    return ODataClient(token_provider, config, http=http, telemetry=telemetry)


class TestFormatKey:
    """Key predicate formatting."""

    @pytest.mark.parametrize(
        "key,expected",
        [
            (SAMPLE_GUID, SAMPLE_GUID),
            (42, "42"),
            ("US-001", "'US-001'"),
            ("O'Brien", "'O''Brien'"),
            ("'quoted'", "'quoted'"),
            ("(" + SAMPLE_GUID + ")", SAMPLE_GUID),
            ("dataAreaId='usmf',CustomerAccount='US-001'", "dataAreaId='usmf',CustomerAccount='US-001'"),
        ],
    )
    def test_formats(self, key, expected):
        assert format_key(key) == expected

    @pytest.mark.parametrize("key", ["", "  ", "()", True])
    def test_invalid(self, key):
        with pytest.raises(ValueError):
            format_key(key)


class TestQuery:
    """Single-page queries."""

    @patch("requests.request")
    def test_finops_query_single_request_no_auto_follow(self, mock_request, finops_config, fake_token_provider):
        next_link = FINOPS_ROOT + "CustomersV3?$skiptoken=abc"
        mock_request.return_value = mock_response(200, page_payload([SAMPLE_CUSTOMER], next_link=next_link))
        client = _client(finops_config, fake_token_provider)

        page = client.query(
            "CustomersV3", QueryOptions(top=10, filter="dataAreaId eq 'usmf'", cross_company=True)
        )

        assert mock_request.call_count == 1
        args, kwargs = mock_request.call_args
        assert args == ("get", FINOPS_ROOT + "CustomersV3")
        assert kwargs["params"] == {"$filter": "dataAreaId eq 'usmf'", "$top": "10", "cross-company": "true"}
        assert page.records == [SAMPLE_CUSTOMER]
        assert page.next_link == next_link
        assert page.has_more is True

    @patch("requests.request")
    def test_keyword_params(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(200, page_payload([]))
        client = _client(dataverse_config, fake_token_provider)

        client.query("accounts", select=["name"], top=5)

        _, kwargs = mock_request.call_args
        assert kwargs["params"] == {"$select": "name", "$top": "5"}

    @patch("requests.request")
    def test_standard_headers(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(200, page_payload([SAMPLE_ACCOUNT]))
        client = _client(dataverse_config, fake_token_provider)

        client.query("accounts")
        client.query("accounts")

        first = mock_request.call_args_list[0][1]["headers"]
        second = mock_request.call_args_list[1][1]["headers"]
        assert first["Authorization"] == "Bearer test_token_12345"
        assert first["Accept"] == "application/json"
        assert first["OData-Version"] == "4.0"
        assert first["OData-MaxVersion"] == "4.0"
        assert first["Prefer"] == "odata.include-annotations=*,odata.maxpagesize=5000"
        uuid.UUID(first["x-ms-client-request-id"])
        assert first["x-ms-client-request-id"] != second["x-ms-client-request-id"]

    @patch("requests.request")
    def test_track_changes_preference(self, mock_request, dataverse_config, fake_token_provider):
        delta = DATAVERSE_ROOT + "accounts?$deltatoken=919042%2108%2f22%2f2017"
        mock_request.return_value = mock_response(200, page_payload([SAMPLE_ACCOUNT], delta_link=delta))
        client = _client(dataverse_config, fake_token_provider)

        page = client.query("accounts", QueryOptions(track_changes=True))

        headers = mock_request.call_args[1]["headers"]
        assert headers["Prefer"].split(",")[-1] == "odata.track-changes"
        assert page.delta_link == delta

    @patch("requests.request")
    def test_follow_uses_link_verbatim(self, mock_request, dataverse_config, fake_token_provider):
        link = DATAVERSE_ROOT + "accounts?$skiptoken=%3Ccookie%20pagenumber=%222%22%20/%3E"
        mock_request.return_value = mock_response(200, page_payload([]))
        client = _client(dataverse_config, fake_token_provider)

        client.follow(link, entity="accounts")

        args, kwargs = mock_request.call_args
        assert args == ("get", link)
        assert "params" not in kwargs

    @patch("requests.request")
    def test_unparseable_body(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(200, text="<html>proxy</html>")
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.query("accounts")

        assert exc_info.value.subcode == ec.QUERY_FAILED
        assert exc_info.value.body == "<html>proxy</html>"

    @patch("requests.request")
    def test_telemetry_records_request(self, mock_request, dataverse_config, fake_token_provider):
        hook = MagicMock()
        mock_request.return_value = mock_response(200, page_payload([]))
        client = _client(dataverse_config, fake_token_provider, TelemetryManager(TelemetryConfig(hooks=[hook])))

        client.query("accounts")

        ctx = hook.on_request_start.call_args[0][0]
        assert ctx.operation == "odata.query"
        assert ctx.entity == "accounts"
        assert hook.on_request_end.call_args[0][1].status_code == 200

    def test_http_client_built_from_config(self, dataverse_config, fake_token_provider):
        client = ODataClient(fake_token_provider, dataverse_config)
        assert client._http.max_attempts == 3
        assert client.service_root == DATAVERSE_ROOT


class TestErrorClassification:
    """Throttling, expiry, auth and network failures."""

    @patch("requests.request")
    @patch("time.sleep")
    def test_retry_after_honored(self, mock_sleep, mock_request, dataverse_config, fake_token_provider):
        mock_request.side_effect = [
            mock_response(429, headers={"Retry-After": "2"}),
            mock_response(200, page_payload([SAMPLE_ACCOUNT])),
        ]
        client = _client(dataverse_config, fake_token_provider)

        page = client.query("accounts")

        mock_sleep.assert_called_once_with(2.0)
        assert len(page) == 1

    @patch("requests.request")
    @patch("time.sleep")
    def test_rate_limited_after_retries(self, mock_sleep, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(429, headers={"Retry-After": "1"})
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.query("accounts")

        err = exc_info.value
        assert err.subcode == ec.QUERY_RATE_LIMITED
        assert err.is_transient is True
        assert err.details["retry_after"] == 1.0
        assert mock_request.call_count == 3

    @patch("requests.request")
    @patch("time.sleep")
    def test_long_retry_after_surfaces_without_waiting(
        self, mock_sleep, mock_request, dataverse_config, fake_token_provider
    ):
        mock_request.return_value = mock_response(429, headers={"Retry-After": "3600"})
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.query("accounts")

        assert exc_info.value.subcode == ec.QUERY_RATE_LIMITED
        assert exc_info.value.details["retry_after"] == 3600.0
        assert mock_request.call_count == 1
        mock_sleep.assert_not_called()

    @patch("requests.request")
    def test_gone_maps_to_cursor_expired(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(
            410, {"error": {"code": "0x80060888", "message": "Delta token has expired"}}
        )
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.follow(DATAVERSE_ROOT + "accounts?$deltatoken=old", entity="accounts", track_changes=True)

        err = exc_info.value
        assert err.cursor_expired is True
        assert err.status_code == 410
        assert "Delta token has expired" in err.message
        assert err.is_transient is False
        assert mock_request.call_count == 1

    @patch("requests.request")
    def test_bad_request_not_retried(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(400, {"error": {"message": "Could not find a property named 'x'"}})
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.query("accounts", filter="x eq 1")

        assert exc_info.value.subcode == ec.QUERY_BAD_REQUEST
        assert "client_request_id" in exc_info.value.details
        assert mock_request.call_count == 1

    @patch("requests.request")
    def test_unauthorized_invalidates_and_retries_once(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.side_effect = [mock_response(401), mock_response(200, page_payload([SAMPLE_ACCOUNT]))]
        client = _client(dataverse_config, fake_token_provider)

        page = client.query("accounts")

        assert len(page) == 1
        fake_token_provider.invalidate.assert_called_once()
        assert fake_token_provider.get_token.call_count == 2
        assert mock_request.call_count == 2

    @patch("requests.request")
    def test_repeated_unauthorized_raises(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(401)
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.query("accounts")

        assert exc_info.value.subcode == ec.QUERY_FORBIDDEN
        fake_token_provider.invalidate.assert_called_once()
        assert mock_request.call_count == 2

    @patch("requests.request")
    @patch("time.sleep")
    def test_network_failure_after_retries(self, mock_sleep, mock_request, dataverse_config, fake_token_provider):
        mock_request.side_effect = requests.exceptions.ConnectionError("reset by peer")
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.query("accounts")

        assert exc_info.value.subcode == ec.QUERY_UNAVAILABLE
        assert exc_info.value.is_transient is True
        assert mock_request.call_count == 3


class TestGetRecord:
    """Single-record reads."""

    @patch("requests.request")
    def test_guid_key(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(200, SAMPLE_ACCOUNT)
        client = _client(dataverse_config, fake_token_provider)

        payload = client.get_record("accounts", SAMPLE_GUID, select=["name", "revenue"])

        args, kwargs = mock_request.call_args
        assert args == ("get", DATAVERSE_ROOT + f"accounts({SAMPLE_GUID})")
        assert kwargs["params"] == {"$select": "name,revenue"}
        assert payload["name"] == "Contoso Ltd"

    @patch("requests.request")
    def test_composite_key(self, mock_request, finops_config, fake_token_provider):
        mock_request.return_value = mock_response(200, SAMPLE_CUSTOMER)
        client = _client(finops_config, fake_token_provider)

        client.get_record("CustomersV3", "dataAreaId='usmf',CustomerAccount='US-001'")

        args, _ = mock_request.call_args
        assert args[1] == FINOPS_ROOT + "CustomersV3(dataAreaId='usmf',CustomerAccount='US-001')"

    @patch("requests.request")
    def test_not_found(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(404, {"error": {"message": "account Does Not Exist"}})
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.get_record("accounts", SAMPLE_GUID)

        assert exc_info.value.subcode == ec.QUERY_NOT_FOUND


class TestMetadata:
    """Metadata fetching, caching and entity resolution."""

    @patch("requests.request")
    def test_fetched_once_and_cached(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = metadata_response()
        client = _client(dataverse_config, fake_token_provider)

        first = client.fetch_metadata()
        second = client.fetch_metadata()

        assert first is second
        assert mock_request.call_count == 1
        args, kwargs = mock_request.call_args
        assert args == ("get", DATAVERSE_ROOT + "$metadata")
        assert kwargs["headers"]["Accept"] == "application/xml"
        assert kwargs["timeout"] == 120

    @patch("requests.request")
    def test_refresh_refetches(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = metadata_response()
        client = _client(dataverse_config, fake_token_provider)

        client.fetch_metadata()
        client.refresh_metadata()

        assert mock_request.call_count == 2
        status = client.metadata_status()
        assert status["loaded"] is True
        assert status["entity_count"] == 3
        assert status["loaded_at"].endswith("Z")

    def test_status_before_load(self, dataverse_config, fake_token_provider):
        client = _client(dataverse_config, fake_token_provider)
        assert client.metadata_status() == {"loaded": False, "entity_count": 0, "loaded_at": None}

    @patch("requests.request")
    def test_unreachable(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(500, text="Internal Server Error")
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(MetadataError) as exc_info:
            client.fetch_metadata()

        assert exc_info.value.subcode == ec.METADATA_UNREACHABLE
        assert exc_info.value.status_code == 500
        assert exc_info.value.is_transient is True

    @patch("requests.request")
    def test_unparseable(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(200, content=b"<not-xml", text="<not-xml")
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(MetadataError) as exc_info:
            client.fetch_metadata()

        assert exc_info.value.subcode == ec.METADATA_UNPARSEABLE

    @patch("requests.request")
    def test_entity_resolution(self, mock_request, finops_config, fake_token_provider):
        mock_request.return_value = metadata_response(SAMPLE_FINOPS_METADATA_XML)
        client = _client(finops_config, fake_token_provider)

        assert client.entity("CustomersV3").logical_name == "CustomerV3"
        assert client.entity("CustomerV3").entity_set_name == "CustomersV3"
        assert client.entity("customersv3").entity_set_name == "CustomersV3"
        with pytest.raises(MetadataError) as exc_info:
            client.entity("VendorsV2")
        assert exc_info.value.subcode == ec.METADATA_ENTITY_NOT_FOUND


class TestBatch:
    """$batch round trips."""

    @patch("requests.request")
    def test_batch_round_trip(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(
            200,
            headers={"Content-Type": "multipart/mixed; boundary=batchresponse_1"},
            text=SAMPLE_BATCH_RESPONSE,
        )
        client = _client(dataverse_config, fake_token_provider)

        results = client.batch([BatchRequest("accounts?$top=1"), BatchRequest("contacts(42)")])

        args, kwargs = mock_request.call_args
        assert args == ("post", DATAVERSE_ROOT + "$batch")
        assert kwargs["headers"]["Content-Type"].startswith("multipart/mixed;boundary=batch_")
        assert b"GET " + (DATAVERSE_ROOT + "accounts?$top=1").encode() + b" HTTP/1.1" in kwargs["data"]
        assert [r.status for r in results] == [200, 404]

    @patch("requests.request")
    def test_empty_batch_sends_nothing(self, mock_request, dataverse_config, fake_token_provider):
        client = _client(dataverse_config, fake_token_provider)
        assert client.batch([]) == []
        mock_request.assert_not_called()

    @patch("requests.request")
    def test_non_multipart_response(self, mock_request, dataverse_config, fake_token_provider):
        mock_request.return_value = mock_response(200, {}, headers={"Content-Type": "application/json"})
        client = _client(dataverse_config, fake_token_provider)

        with pytest.raises(QueryError) as exc_info:
            client.batch([BatchRequest("accounts")])

        assert exc_info.value.subcode == ec.QUERY_FAILED
