#!/usr/bin/env python3
"""
Tests for the detection ingestion adapter.

Run with: pytest tests/test_detection_parser.py -v
"""

from datetime import datetime, timezone

import pytest

from detection_parser import format_human_time, normalize, normalize_type, parse_pairs
from errors import MalformedDetection

NX_DATA = "Type:person;Confidence:87;TimestampUs:1700000000000000"


class TestNormalizeType:

    def test_takes_last_dot_segment(self):
        assert normalize_type("nx.base.Person") == "Person"

    def test_capitalizes_and_lowercases_rest(self):
        assert normalize_type("VEHICLE") == "Vehicle"
        assert normalize_type("person") == "Person"

    def test_missing_type_defaults_to_object(self):
        assert normalize_type(None) == "Object"
        assert normalize_type("") == "Object"
        assert normalize_type("nx.base.") == "Object"


class TestParsePairs:

    def test_splits_key_value_pairs(self):
        assert parse_pairs("Type:person;Confidence:87") == {"Type": "person", "Confidence": "87"}

    def test_skips_empty_pairs(self):
        assert parse_pairs("Type:person;;Confidence:87;") == {"Type": "person", "Confidence": "87"}

    def test_value_may_contain_colon(self):
        assert parse_pairs("Message:alarm: zone 4") == {"Message": "alarm: zone 4"}

    def test_segment_without_separator_is_skipped(self):
        assert parse_pairs("Type:person;garbage;Confidence:87") == {"Type": "person", "Confidence": "87"}


class TestNormalize:

    def test_legacy_string(self):
        record = normalize(NX_DATA)

        assert record.type == "Person"
        assert record.confidence == 87.0
        assert record.message == "Person detected"
        assert record.timestamp_utc == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert record.human_time == "14 November 2023, 10:13 pm"

    def test_mapping_with_data_string(self):
        record = normalize({"data": NX_DATA})
        assert record.type == "Person"
        assert record.confidence == 87.0

    def test_structured_keys_override_data(self):
        record = normalize({"data": NX_DATA, "type": "nx.base.Vehicle", "confidence": 55})
        assert record.type == "Vehicle"
        assert record.confidence == 55.0
        assert record.message == "Vehicle detected"

    def test_structured_payload(self):
        record = normalize({
            "type": "Animal",
            "confidence": "42.5",
            "timestampUs": 1700000000000000,
            "message": "Leopard near fence",
        })
        assert record.type == "Animal"
        assert record.confidence == 42.5
        assert record.message == "Leopard near fence"

    def test_unknown_keys_are_ignored(self):
        record = normalize("Type:person;Camera:12;Confidence:90")
        assert record.type == "Person"
        assert record.confidence == 90.0

    def test_missing_fields_use_defaults(self):
        record = normalize("Camera:12")
        assert record.type == "Object"
        assert record.confidence == 0.0
        assert record.message == "Object detected"
        assert record.timestamp_utc == datetime(1970, 1, 1, tzinfo=timezone.utc)
        assert record.human_time is None

    def test_non_numeric_confidence_is_malformed(self):
        with pytest.raises(MalformedDetection):
            normalize("Type:person;Confidence:high")

    def test_non_numeric_timestamp_is_malformed(self):
        with pytest.raises(MalformedDetection):
            normalize({"type": "person", "timestampUs": "yesterday"})

    @pytest.mark.parametrize("confidence", ["inf", "-inf", "nan", "Infinity", float("inf"), float("nan")])
    def test_non_finite_confidence_is_malformed(self, confidence):
        with pytest.raises(MalformedDetection):
            normalize({"type": "person", "confidence": confidence})

    @pytest.mark.parametrize("timestamp", ["inf", "nan", float("inf"), float("-inf")])
    def test_non_finite_timestamp_is_malformed(self, timestamp):
        with pytest.raises(MalformedDetection):
            normalize({"type": "person", "timestampUs": timestamp})

    def test_float_timestamp_is_truncated(self):
        record = normalize({"timestampUs": 1700000000000000.0})
        assert record.timestamp_utc == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_empty_mapping_uses_defaults(self):
        record = normalize({})
        assert record.type == "Object"
        assert record.confidence == 0.0

    def test_unsupported_payload_type_is_malformed(self):
        with pytest.raises(MalformedDetection):
            normalize(["Type:person"])

    def test_non_string_data_is_malformed(self):
        with pytest.raises(MalformedDetection):
            normalize({"data": 42})

    def test_to_dict_shape(self):
        data = normalize(NX_DATA).to_dict()
        assert data["timestamp"] == "2023-11-14T22:13:20+00:00"
        assert data["time"] == "14 November 2023, 10:13 pm"


class TestFormatHumanTime:

    def test_zero_timestamp_has_no_human_time(self):
        assert format_human_time(0) is None

    def test_unknown_zone_falls_back_to_utc(self):
        assert format_human_time(1700000000000000, "Not/AZone") == "14 November 2023, 10:13 pm"

    def test_morning_hours(self):
        # 2023-11-15T00:05:00Z
        assert format_human_time(1700006700000000) == "15 November 2023, 12:05 am"
