# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for EDM-to-canonical record mapping."""

import copy
import datetime as dt
import decimal
import logging
import math

import pytest

from d365_odata_sync.core.errors import SchemaMismatch
from d365_odata_sync.models.entity import FieldDescriptor
from d365_odata_sync.sync.transform import (
    coerce_value,
    is_tombstone,
    record_key,
    strip_annotations,
    to_canonical,
)

from tests.fixtures.test_data import (
    SAMPLE_ACCOUNT,
    SAMPLE_ACCOUNT_2,
    SAMPLE_ACCOUNT_TOMBSTONE,
    SAMPLE_CUSTOMER,
    SAMPLE_GUID,
)


class TestToCanonical:
    """Whole-record mapping."""

    def test_dataverse_record(self, dataverse_descriptors):
        record = to_canonical(dataverse_descriptors["accounts"], SAMPLE_ACCOUNT)

        assert record.entity_name == "accounts"
        assert record.key == SAMPLE_GUID
        assert record.etag == 'W/"1001"'
        assert record.deleted is False
        assert record.warnings == []
        assert record["name"] == "Contoso Ltd"
        assert record["revenue"] == decimal.Decimal("150000.5")
        assert record["numberofemployees"] == 250
        assert record["creditonhold"] is False
        assert record["modifiedon"] == dt.datetime(2024, 5, 1, 10, 0, tzinfo=dt.timezone.utc)
        assert record["_primarycontactid_value"] == "99999999-8888-7777-6666-555555555555"
        assert not any("@" in name for name in record)

    def test_nulls_are_not_warnings(self, dataverse_descriptors):
        record = to_canonical(dataverse_descriptors["accounts"], SAMPLE_ACCOUNT_2)
        assert record["revenue"] is None
        assert record["_primarycontactid_value"] is None
        assert record.warnings == []

    def test_finops_composite_key(self, finops_descriptors):
        record = to_canonical(finops_descriptors["CustomersV3"], SAMPLE_CUSTOMER)

        assert record.key == "dataAreaId='usmf',CustomerAccount='US-001'"
        assert record["CreditLimit"] == decimal.Decimal("0")
        # Enum members pass through as their names
        assert record["OnHoldStatus"] == "No"

    def test_tombstone(self, dataverse_descriptors):
        record = to_canonical(dataverse_descriptors["accounts"], SAMPLE_ACCOUNT_TOMBSTONE)

        assert record.deleted is True
        assert record.key == "33333333-4444-5555-6666-777777777777"
        assert record.fields == {}

    def test_schema_mismatch_nulls_field_and_warns(self, dataverse_descriptors, caplog):
        raw = dict(SAMPLE_ACCOUNT, numberofemployees="lots")

        with caplog.at_level(logging.WARNING, logger="d365_odata_sync.sync.transform"):
            record = to_canonical(dataverse_descriptors["accounts"], raw)

        assert record["numberofemployees"] is None
        assert record.warnings == ["numberofemployees"]
        assert record["name"] == "Contoso Ltd"
        assert "numberofemployees" in caplog.text

    def test_unknown_fields_pass_through_without_annotations(self, dataverse_descriptors):
        raw = dict(
            SAMPLE_ACCOUNT,
            primarycontactid={"fullname": "Jane Doe", "@odata.etag": 'W/"5"', "contactid": "x"},
        )
        record = to_canonical(dataverse_descriptors["accounts"], raw)
        assert record["primarycontactid"] == {"fullname": "Jane Doe", "contactid": "x"}

    def test_pure_function(self, dataverse_descriptors):
        raw = copy.deepcopy(SAMPLE_ACCOUNT)
        first = to_canonical(dataverse_descriptors["accounts"], raw)
        second = to_canonical(dataverse_descriptors["accounts"], raw)
        assert first == second
        assert raw == SAMPLE_ACCOUNT

    def test_collection_property(self, dataverse_descriptors):
        raw = {"activityid": SAMPLE_GUID, "attachmentcount": [1, "2", 3.0]}
        record = to_canonical(dataverse_descriptors["emails"], raw)
        assert record["attachmentcount"] == [1, 2, 3]

    def test_date_property(self, dataverse_descriptors):
        raw = {"contactid": SAMPLE_GUID, "birthdate": "1990-02-03"}
        record = to_canonical(dataverse_descriptors["contacts"], raw)
        assert record["birthdate"] == dt.date(1990, 2, 3)


class TestCoerceValue:
    """Per-type coercion."""

    def _coerce(self, edm_type, value):
        return coerce_value(FieldDescriptor("f", edm_type), value)

    def test_int64_from_string(self):
        assert self._coerce("Edm.Int64", "9007199254740993") == 9007199254740993

    @pytest.mark.parametrize(
        "edm_type,value",
        [
            ("Edm.Int32", 2 ** 31),
            ("Edm.Byte", -1),
            ("Edm.Int16", 40000),
            ("Edm.Int32", True),
            ("Edm.Int32", 1.5),
            ("Edm.Boolean", "true"),
            ("Edm.String", 42),
            ("Edm.Guid", "not-a-guid"),
            ("Edm.Decimal", "abc"),
            ("Edm.Decimal", "NaN"),
            ("Edm.DateTimeOffset", "yesterday"),
            ("Edm.Date", "2024-13-45"),
            ("Edm.Binary", "!!!"),
            ("Collection(Edm.String)", "a,b"),
        ],
    )
    def test_mismatches(self, edm_type, value):
        with pytest.raises(SchemaMismatch):
            self._coerce(edm_type, value)

    def test_guid_normalized(self):
        value = self._coerce("Edm.Guid", "AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE")
        assert value == "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"

    def test_datetime_offset_normalized_to_utc(self):
        assert self._coerce("Edm.DateTimeOffset", "2024-05-01T12:00:00+02:00") == dt.datetime(
            2024, 5, 1, 10, 0, tzinfo=dt.timezone.utc
        )

    def test_time_of_day(self):
        assert self._coerce("Edm.TimeOfDay", "13:45:30") == dt.time(13, 45, 30)

    def test_special_floats(self):
        assert self._coerce("Edm.Double", "INF") == float("inf")
        assert self._coerce("Edm.Double", "-INF") == float("-inf")
        assert math.isnan(self._coerce("Edm.Double", "NaN"))
        assert self._coerce("Edm.Single", 2) == 2.0

    def test_binary(self):
        assert self._coerce("Edm.Binary", "AAE=") == b"\x00\x01"
        assert self._coerce("Edm.Binary", "AAE") == b"\x00\x01"

    def test_duration_kept_as_text(self):
        assert self._coerce("Edm.Duration", "PT1H30M") == "PT1H30M"

    def test_none_passthrough(self):
        assert self._coerce("Edm.Int32", None) is None


class TestHelpers:
    """Key, tombstone and annotation helpers."""

    def test_record_key_missing_part(self, finops_descriptors):
        assert record_key(finops_descriptors["CustomersV3"], {"dataAreaId": "usmf"}) is None

    def test_record_key_single(self, dataverse_descriptors):
        assert record_key(dataverse_descriptors["accounts"], {"accountid": SAMPLE_GUID}) == SAMPLE_GUID

    def test_is_tombstone(self):
        assert is_tombstone(SAMPLE_ACCOUNT_TOMBSTONE) is True
        assert is_tombstone({"id": "x", "reason": "deleted"}) is True
        assert is_tombstone({"id": "x", "reason": "changed"}) is False
        assert is_tombstone(SAMPLE_ACCOUNT) is False

    def test_strip_annotations_nested(self):
        value = {"a@odata.type": "#x", "b": [{"c": 1, "@odata.id": "y"}]}
        assert strip_annotations(value) == {"b": [{"c": 1}]}
