"""Unit tests for meter_etl.shared."""

import csv
import io
import json

import pytest

from meter_etl.config import DEFAULT_MAX_UPLOAD_BYTES
from meter_etl.shared import (
    RejectWriter,
    count_data_rows,
    normalize_headers,
    open_csv_file,
    open_csv_rows,
    write_run_report,
)
from meter_etl.validation import CsvFormatError

HEADER = "Location_Address_Line1,Meter_SN,Meter_Manufacturer,Meter_Size_Desc,Endpoint_SN\n"


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class TestRejectWriter:
    def test_no_file_until_first_write(self, tmp_path):
        path = tmp_path / "rejects" / "out.csv"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()
        assert writer.count == 0

    def test_writes_reason_column(self, tmp_path):
        path = tmp_path / "rejects" / "out.csv"
        writer = RejectWriter(path)
        writer.write({"Meter_SN": "x"}, "invalid_meter_sn")
        writer.write({"Meter_SN": "y"}, "invalid_meter_sn")
        writer.close()

        with open(path, newline="") as fh:
            rows = list(csv.DictReader(fh))
        assert writer.count == 2
        assert rows[1] == {"Meter_SN": "y", "_reject_reason": "invalid_meter_sn"}


# ---------------------------------------------------------------------------
# CSV input
# ---------------------------------------------------------------------------

class TestNormalizeHeaders:
    def test_strips_keys(self):
        assert normalize_headers({" Meter_SN ": "1"}) == {"Meter_SN": "1"}

    def test_drops_surplus_cells(self):
        assert normalize_headers({"Meter_SN": "1", None: ["extra"]}) == {"Meter_SN": "1"}


class TestOpenCsvRows:
    def test_streams_rows(self):
        rows = list(open_csv_rows(io.StringIO(HEADER + "1 Elm,1,Badger,5/8,9\n")))
        assert rows[0]["Meter_SN"] == "1"

    def test_missing_header_rejected_before_reading(self):
        fh = io.StringIO("Location_Address_Line1,Meter_SN\n1 Elm,1\n")
        with pytest.raises(CsvFormatError, match="Endpoint_SN"):
            open_csv_rows(fh)

    def test_empty_input_rejected(self):
        with pytest.raises(CsvFormatError):
            open_csv_rows(io.StringIO(""))

    def test_long_cell_read_whole(self, csv_field_limit):
        csv_field_limit(131072)
        long_cell = "x" * 200_000
        rows = list(open_csv_rows(io.StringIO(HEADER + f"{long_cell},1,Badger,5/8,9\n")))
        assert rows[0]["Location_Address_Line1"] == long_cell
        assert csv.field_size_limit() >= DEFAULT_MAX_UPLOAD_BYTES

    def test_unreadable_header_rejected(self, csv_field_limit):
        csv_field_limit(10)
        with pytest.raises(CsvFormatError, match="unreadable header"):
            open_csv_rows(io.StringIO(HEADER + "a,1,b,c,2\n"), max_field_size=10)


class TestCountDataRows:
    def test_counts_excluding_header(self, tmp_path):
        path = tmp_path / "in.csv"
        path.write_text(HEADER + "a,1,b,c,2\n" + "d,3,e,f,4\n", encoding="utf-8")
        assert count_data_rows(path) == 2

    def test_bom_is_ignored(self, tmp_path):
        path = tmp_path / "in.csv"
        path.write_text(HEADER + "a,1,b,c,2\n", encoding="utf-8-sig")
        with open(path, newline="", encoding="utf-8-sig") as fh:
            assert next(open_csv_rows(fh))["Location_Address_Line1"] == "a"

    def test_long_cell_counted(self, tmp_path, csv_field_limit):
        csv_field_limit(131072)
        path = tmp_path / "in.csv"
        path.write_text(HEADER + "a,1,b,c,2\n" + "x" * 200_000 + ",3,e,f,4\n", encoding="utf-8")
        assert count_data_rows(path) == 2

    def test_unparseable_row_still_counted(self, tmp_path, csv_field_limit):
        csv_field_limit(50)
        path = tmp_path / "in.csv"
        path.write_text(
            HEADER + "a,1,b,c,2\n" + "x" * 100 + ",3,e,f,4\n" + "\n" + "g,5,h,i,6\n",
            encoding="utf-8",
        )
        assert count_data_rows(path, max_field_size=50) == 3

    def test_undecodable_bytes_replaced(self, tmp_path):
        path = tmp_path / "in.csv"
        path.write_bytes((HEADER + "1 Spréngfield Rd,1,b,c,2\n").encode("latin-1"))
        assert count_data_rows(path) == 1
        with open_csv_file(path) as fh:
            row = next(open_csv_rows(fh))
        assert row["Location_Address_Line1"] == "1 Spr\ufffdngfield Rd"


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

class TestWriteRunReport:
    def test_writes_json(self, tmp_path):
        path = write_run_report(
            "run-1", "2024-01-01T00:00:00+00:00", "AddOnly", False, "succeeded",
            {"csv_path": "meters.csv"}, {"added": 3},
            reports_dir=tmp_path / "reports",
        )
        assert path == tmp_path / "reports" / "run-1.json"
        report = json.loads(path.read_text())
        assert report["status"] == "succeeded"
        assert report["csv_path"] == "meters.csv"
        assert report["summary"] == {"added": 3}
        assert "finished_at" in report
