"""
Tests for CSV decoding, header resolution and per-row validation.
"""

import csv
from datetime import date

import pytest

from tollsync.core.errors import ValidationError
from tollsync.domain.imports.parser import (
    ParsedRow,
    decode_content,
    normalize_header,
    parse_row,
    read_rows,
    resolve_schema,
)
from tollsync.domain.models import RowError

HEADER = ["date", "time", "entry_point", "exit_point", "amount", "vehicle_id", "card_id", "external_ref"]


@pytest.fixture
def schema():
    return resolve_schema(HEADER)


def _row(**overrides):
    values = {
        "date": "2024-01-15",
        "time": "08:30:00",
        "entry_point": "Tokyo IC",
        "exit_point": "Yokohama IC",
        "amount": "1200",
        "vehicle_id": "V-100",
        "card_id": "1111222233334444",
        "external_ref": "REF-1",
    }
    values.update(overrides)
    return [values[name] for name in HEADER]


class TestDecoding:
    def test_utf8_with_bom(self):
        assert decode_content("\ufeffdate,time\n".encode("utf-8"), "auto") == "date,time\n"

    def test_shift_jis_fallback(self):
        text = "利用年月日,時刻\n"
        assert decode_content(text.encode("cp932"), "auto") == text

    def test_explicit_encoding_failure(self):
        with pytest.raises(ValidationError):
            decode_content("料金".encode("utf-8"), "ascii")

    def test_read_rows_drops_blank_lines(self):
        rows = read_rows("a,b\n\n  ,  \nc,d\n")
        assert rows == [["a", "b"], ["c", "d"]]

    def test_malformed_csv_names_line_only(self):
        oversized = "x" * (csv.field_size_limit() + 10)
        with pytest.raises(ValidationError) as excinfo:
            read_rows(f"a,b\n{oversized},1\n")
        assert excinfo.value.message.startswith("Input is not valid CSV near line")
        assert "field" not in excinfo.value.message
        assert excinfo.value.details["line"] >= 2


class TestHeaderResolution:
    def test_canonical_header(self, schema):
        assert schema.positions["date"] == 0
        assert schema.has("external_ref")
        assert not schema.has("external_row_id")
        assert schema.min_fields == 7

    def test_japanese_export_header(self):
        header = ["利用年月日", "時刻", "入口IC", "出口IC", "通行料金", "車両番号", "カード番号"]
        resolved = resolve_schema(header)
        assert resolved.positions == {
            "date": 0,
            "time": 1,
            "entry_point": 2,
            "exit_point": 3,
            "amount": 4,
            "vehicle_id": 5,
            "card_id": 6,
        }

    def test_aliases_are_case_and_space_insensitive(self):
        header = [" Date ", "TIME", "Entrance IC", "exit-ic", "Toll Amount", "Car Number", "ETC Card Number", "ETC_NUM"]
        resolved = resolve_schema(header)
        assert resolved.positions["entry_point"] == 2
        assert resolved.positions["card_id"] == 6
        assert resolved.positions["external_ref"] == 7

    def test_missing_columns_reported(self):
        with pytest.raises(ValidationError) as excinfo:
            resolve_schema(["date", "time", "amount"])
        assert excinfo.value.details["missing_columns"] == ["entry_point", "exit_point", "vehicle_id", "card_id"]

    def test_normalize_header_strips_bom(self):
        assert normalize_header("\ufeffVehicle ID") == "vehicle_id"


class TestParseRow:
    def test_valid_row(self, schema):
        result = parse_row(_row(), schema, row_number=1)
        assert isinstance(result, ParsedRow)
        assert result.date == date(2024, 1, 15)
        assert result.amount == 1200
        assert result.external_ref == "REF-1"

    def test_slash_date_and_short_hour(self, schema):
        result = parse_row(_row(date="2024/01/15", time="8:05:09"), schema, row_number=1)
        assert result.date == date(2024, 1, 15)
        assert result.time == "08:05:09"

    @pytest.mark.parametrize("amount, expected", [("1,200", 1200), ("1200円", 1200), ("¥1,200", 1200), ("0", 0)])
    def test_amount_noise_is_stripped(self, schema, amount, expected):
        assert parse_row(_row(amount=amount), schema, row_number=1).amount == expected

    @pytest.mark.parametrize(
        "overrides, error_type",
        [
            ({"date": "2024-13-01"}, "invalid_date"),
            ({"date": "15/01/2024"}, "invalid_date"),
            ({"time": "24:00:00"}, "invalid_time"),
            ({"time": "08:30"}, "invalid_time"),
            ({"amount": "abc"}, "invalid_amount"),
            ({"amount": "-100"}, "invalid_amount"),
            ({"vehicle_id": "   "}, "missing_field"),
        ],
    )
    def test_row_errors(self, schema, overrides, error_type):
        result = parse_row(_row(**overrides), schema, row_number=3)
        assert isinstance(result, RowError)
        assert result.error_type == error_type
        assert result.row_number == 3
        assert result.raw_data

    def test_insufficient_fields(self, schema):
        result = parse_row(["2024-01-15", "08:30:00", "Tokyo IC"], schema, row_number=2)
        assert isinstance(result, RowError)
        assert result.error_type == "insufficient_fields"

    def test_blank_external_ref_is_none(self, schema):
        assert parse_row(_row(external_ref="  "), schema, row_number=1).external_ref is None

    def test_absent_external_ref_column_is_none(self):
        schema = resolve_schema(HEADER[:7])
        assert parse_row(_row()[:7], schema, row_number=1).external_ref is None

    def test_short_row_without_optional_column(self, schema):
        # Only the required columns are present in the data row.
        result = parse_row(_row()[:7], schema, row_number=1)
        assert isinstance(result, ParsedRow)
        assert result.external_ref is None

    def test_external_row_id_must_be_positive(self):
        schema = resolve_schema(HEADER[:7] + ["external_row_id"])
        bad = parse_row(_row()[:7] + ["0"], schema, row_number=1)
        good = parse_row(_row()[:7] + ["42"], schema, row_number=1)
        assert isinstance(bad, RowError)
        assert bad.error_type == "invalid_external_row_id"
        assert good.external_row_id == 42

    def test_full_width_values_are_folded(self, schema):
        result = parse_row(_row(amount="１２００", vehicle_id=" Ｖ-100 "), schema, row_number=1)
        assert result.amount == 1200
        assert result.vehicle_id == "V-100"
