"""
Unit Tests for file reading and row grouping.
"""
import json
from datetime import date

import pytest

from errors import FileFormatError, NoDataError
from ingest.file_connector import FileConnector
from ingest.row_grouper import MeasurementEntry, RowGrouper

HEADER = ["hn_number", "lab_test_master_id", "lab_test_date", "doctor_id",
          "Systolic", "Diastolic", "Uric Acid", "Gender"]


def group(catalog, content: bytes, filename="upload.csv"):
    frame = FileConnector(filename).read(content)
    grouper = RowGrouper(catalog)
    return grouper, list(grouper.group(frame))


class TestFileConnector:
    def test_empty_file_is_no_data(self):
        with pytest.raises(NoDataError):
            FileConnector("upload.csv").read(b"")

    def test_header_only_is_no_data(self):
        with pytest.raises(NoDataError):
            FileConnector("upload.csv").read(b"hn_number,lab_test_master_id\n")

    def test_unsupported_extension(self):
        with pytest.raises(FileFormatError):
            FileConnector("results.pdf").read(b"%PDF-1.4")

    def test_invalid_json(self):
        with pytest.raises(FileFormatError):
            FileConnector("results.json").read(b"{not json")

    def test_patient_numbers_keep_leading_zeros(self, csv_bytes):
        frame = FileConnector("upload.csv").read(
            csv_bytes(["hn_number", "Systolic"], [["000000123", 120]])
        )
        assert frame.loc[0, "hn_number"] == "000000123"


class TestRowGrouper:
    def test_rows_sharing_key_form_one_batch(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [
            ["000000123", 1, "2024-01-01", 7, 120, 80, "", ""],
            ["000000123", 5, "2024-01-01", 7, "", "", 6.1, ""],
        ])
        grouper, batches = group(catalog, content)

        assert len(batches) == 1
        batch = batches[0]
        assert batch.key == ("000000123", date(2024, 1, 1), 7)
        assert batch.panels == {
            1: [MeasurementEntry(1, "120"), MeasurementEntry(2, "80")],
            5: [MeasurementEntry(18, "6.1")],
        }
        assert batch.row_numbers == [2, 3]
        assert grouper.row_errors == []

    def test_different_doctor_or_date_splits_batches(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [
            ["000000123", 1, "2024-01-01", 7, 120, 80, "", ""],
            ["000000123", 1, "2024-01-01", 8, 121, 81, "", ""],
            ["000000123", 1, "2024-01-02", 7, 122, 82, "", ""],
        ])
        _, batches = group(catalog, content)
        assert [b.key for b in batches] == [
            ("000000123", date(2024, 1, 1), 7),
            ("000000123", date(2024, 1, 1), 8),
            ("000000123", date(2024, 1, 2), 7),
        ]

    def test_empty_cells_are_dropped_not_zero(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [["000000123", 1, "2024-01-01", 7, 120, "", "", ""]])
        _, batches = group(catalog, content)
        assert batches[0].panels[1] == [MeasurementEntry(1, "120")]

    def test_non_numeric_value_rejects_only_that_row(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [
            ["000000123", 1, "2024-01-01", 7, "high", 80, "", ""],
            ["000000456", 1, "2024-01-01", 7, 118, 76, "", ""],
        ])
        grouper, batches = group(catalog, content)

        assert [b.patient_number for b in batches] == ["000000456"]
        assert grouper.rows_read == 2
        assert grouper.rows_rejected == 1
        assert len(grouper.row_errors) == 1
        assert grouper.row_errors[0].startswith("Row 2:")
        assert "Systolic" in grouper.row_errors[0]

    def test_row_numbers_count_blank_lines(self, catalog):
        content = (
            b"hn_number,lab_test_master_id,lab_test_date,doctor_id,Systolic,Diastolic\n"
            b"000000123,1,2024-01-01,7,120,80\n"
            b"\n"
            b"000000456,1,2024-01-01,7,high,76\n"
            b"000000456,1,2024-01-02,7,118,76\n"
        )
        grouper, batches = group(catalog, content)

        assert grouper.rows_read == 3
        assert grouper.row_errors[0].startswith("Row 4:")
        assert [b.row_numbers for b in batches] == [[2], [5]]

    def test_bad_date_and_gender_are_row_errors(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [
            ["000000123", 1, "01/02/2024", 7, 120, 80, "", ""],
            ["000000123", 5, "2024-01-01", 7, "", "", 6.1, "unknown"],
        ])
        grouper, batches = group(catalog, content)

        assert batches == []
        assert "YYYY-MM-DD" in grouper.row_errors[0]
        assert "Invalid gender" in grouper.row_errors[1]

    def test_missing_key_field(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [["", 1, "2024-01-01", 7, 120, 80, "", ""]])
        grouper, batches = group(catalog, content)
        assert batches == []
        assert "patient_number" in grouper.row_errors[0]

    def test_missing_required_column(self, catalog, csv_bytes):
        content = csv_bytes(["hn_number", "lab_test_date", "Systolic"], [["000000123", "2024-01-01", 120]])
        grouper, batches = group(catalog, content)

        assert batches == []
        assert grouper.rows_rejected == 1
        assert "Missing required column: panel_id" in grouper.row_errors
        assert "Missing required column: doctor_id" in grouper.row_errors

    def test_unrecognized_columns_ignored(self, catalog, csv_bytes):
        content = csv_bytes(HEADER + ["Comment"], [["000000123", 1, "2024-01-01", 7, 120, 80, "", "", "fasting"]])
        grouper, batches = group(catalog, content)
        assert batches[0].panels[1] == [MeasurementEntry(1, "120"), MeasurementEntry(2, "80")]
        assert grouper.row_errors == []

    def test_canonical_column_names_accepted(self, catalog, csv_bytes):
        content = csv_bytes(
            ["patient_number", "panel_id", "test_date", "doctor_id", "Systolic", "Diastolic"],
            [["000000123", 1, "2024-01-01", 7, 120, 80]],
        )
        _, batches = group(catalog, content)
        assert batches[0].panels[1] == [MeasurementEntry(1, "120"), MeasurementEntry(2, "80")]

    def test_gender_column_is_encoded(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [["000000456", 5, "2024-01-01", 7, "", "", 5.2, "female"]])
        _, batches = group(catalog, content)
        assert batches[0].panels[5] == [MeasurementEntry(18, "5.2"), MeasurementEntry(9, "1")]

    def test_duplicate_item_keeps_latest_with_warning(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [
            ["000000123", 1, "2024-01-01", 7, 120, 80, "", ""],
            ["000000123", 1, "2024-01-01", 7, 125, "", "", ""],
        ])
        grouper, batches = group(catalog, content)
        assert batches[0].panels[1] == [MeasurementEntry(1, "125"), MeasurementEntry(2, "80")]
        assert any("duplicate Systolic" in w for w in grouper.warnings)

    def test_row_without_values_contributes_nothing(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [["000000123", 1, "2024-01-01", 7, "", "", "", ""]])
        grouper, batches = group(catalog, content)
        assert batches == []
        assert grouper.row_errors == []
        assert "no measurement values" in grouper.warnings[0]

    def test_json_records(self, catalog):
        rows = [{"hn_number": "000000123", "lab_test_master_id": 1, "lab_test_date": "2024-01-01",
                 "doctor_id": 7, "Systolic": 120, "Diastolic": None}]
        _, batches = group(catalog, json.dumps(rows).encode(), filename="upload.json")
        assert batches[0].panels == {1: [MeasurementEntry(1, "120")]}

    def test_grouping_is_lazy(self, catalog, csv_bytes):
        content = csv_bytes(HEADER, [["000000123", 1, "2024-01-01", 7, 120, 80, "", ""]])
        grouper = RowGrouper(catalog)
        batches = grouper.group(FileConnector("upload.csv").read(content))
        assert grouper.rows_read == 0
        next(batches)
        assert grouper.rows_read == 1
