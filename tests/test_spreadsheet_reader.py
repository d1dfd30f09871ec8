"""
Tests for reading uploaded CSV and Excel files into header-keyed rows.
"""

import io

import pandas as pd
import pytest

from app.domain.imports.errors import ParseError
from app.domain.imports.processors.spreadsheet import (
    detect_spreadsheet_type,
    normalize_headers,
    read_spreadsheet,
    split_csv_line,
    write_csv,
)


def _excel_bytes(rows):
    buffer = io.BytesIO()
    pd.DataFrame(rows).to_excel(buffer, index=False, header=False, engine="openpyxl")
    return buffer.getvalue()


class TestCsvReading:
    """CSV content is decoded, trimmed and keyed by the header row."""

    def test_rows_are_keyed_by_trimmed_headers(self):
        content = b" Account Number ,Balance\nA-1, 10.50 \nA-2,20\n"
        parsed = read_spreadsheet(content, "text/csv", "accounts.csv")

        assert parsed.headers == ["Account Number", "Balance"]
        assert parsed.rows == [
            {"Account Number": "A-1", "Balance": "10.50"},
            {"Account Number": "A-2", "Balance": "20"},
        ]
        assert parsed.row_count == 2
        assert parsed.file_type == "csv"

    def test_empty_rows_are_dropped_and_counted(self):
        content = b"a,b\n1,2\n,\n\n3,4\n , \n"
        parsed = read_spreadsheet(content, "text/csv")

        assert parsed.row_count == 2
        assert parsed.skipped_empty_rows == 3
        assert [row["a"] for row in parsed.iter_rows()] == ["1", "3"]

    def test_short_rows_are_padded_and_long_rows_truncated(self):
        content = b"a,b,c\n1\n1,2,3,4\n"
        parsed = read_spreadsheet(content, "text/csv")

        assert parsed.rows[0] == {"a": "1", "b": "", "c": ""}
        assert parsed.rows[1] == {"a": "1", "b": "2", "c": "3"}

    def test_quoted_commas_and_escaped_quotes(self):
        content = b'name,note\n"Doe, Jane","said ""hi"""\n'
        parsed = read_spreadsheet(content, "text/csv")

        assert parsed.rows[0] == {"name": "Doe, Jane", "note": 'said "hi"'}

    def test_utf8_bom_is_tolerated(self):
        content = "\ufeffSSN,Name\n123,Zoë\n".encode("utf-8")
        parsed = read_spreadsheet(content, "text/csv")

        assert parsed.headers == ["SSN", "Name"]
        assert parsed.rows[0]["Name"] == "Zoë"

    def test_header_only_file_is_rejected(self):
        with pytest.raises(ParseError, match="at least one data row"):
            read_spreadsheet(b"a,b\n\n", "text/csv", "empty.csv")

    def test_undecodable_content_is_rejected(self):
        with pytest.raises(ParseError, match="decode"):
            read_spreadsheet(b"a,b\n\xff\xfe\xfa,1\n", "text/csv")

    def test_sample_returns_leading_rows(self):
        content = write_csv(["n"], [{"n": str(i)} for i in range(10)])
        parsed = read_spreadsheet(content, "text/csv")

        assert [row["n"] for row in parsed.sample(3)] == ["0", "1", "2"]

    def test_written_csv_reads_back(self):
        headers = ["Account Number", "Name", "Note"]
        rows = [
            {"Account Number": "A-1", "Name": "Doe, Jane", "Note": 'said "hi"'},
            {"Account Number": "", "Name": None, "Note": ""},
            {"Account Number": "A-2", "Name": "Lee", "Note": ""},
            {},
        ]
        parsed = read_spreadsheet(write_csv(headers, rows), "text/csv", "accounts.csv")

        assert parsed.headers == headers
        assert parsed.rows == [
            {"Account Number": "A-1", "Name": "Doe, Jane", "Note": 'said "hi"'},
            {"Account Number": "A-2", "Name": "Lee", "Note": ""},
        ]
        assert parsed.skipped_empty_rows == 2


class TestHeaders:
    def test_blank_and_duplicate_headers(self):
        assert normalize_headers(["Name", "Name", " ", "Name", "Phone"]) == [
            "Name", "Name.1", "col_2", "Name.2", "Phone",
        ]

    def test_duplicate_suffix_does_not_collide_with_existing_header(self):
        assert normalize_headers(["a", "a.1", "a"]) == ["a", "a.1", "a.2"]


class TestSplitCsvLine:
    def test_quoted_fields(self):
        assert split_csv_line('a,"b,c","d""e"') == ["a", "b,c", 'd"e']

    def test_empty_line(self):
        assert split_csv_line("") == []


class TestTypeDetection:
    """The declared MIME type wins; the extension is the fallback."""

    def test_mime_types(self):
        assert detect_spreadsheet_type("text/csv") == "csv"
        assert detect_spreadsheet_type("application/vnd.ms-excel") == "xls"
        assert detect_spreadsheet_type(
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        ) == "xlsx"

    def test_extension_fallback(self):
        assert detect_spreadsheet_type("application/octet-stream", "book.XLSX") == "xlsx"
        assert detect_spreadsheet_type(None, "data.csv") == "csv"

    def test_unsupported_type(self):
        with pytest.raises(ParseError, match="Unsupported file type"):
            detect_spreadsheet_type("application/pdf", "statement.pdf")

    def test_plain_text_needs_csv_extension(self):
        assert detect_spreadsheet_type("text/plain", "accounts.csv") == "csv"
        with pytest.raises(ParseError, match="Unsupported file type"):
            detect_spreadsheet_type("text/plain", "notes.txt")
        with pytest.raises(ParseError):
            detect_spreadsheet_type("text/plain")


class TestExcelReading:
    def test_first_sheet_cells_become_strings(self):
        content = _excel_bytes([
            ["Account Number", "Balance", "Opened"],
            ["A-1", 1500, pd.Timestamp("2020-03-04")],
            ["A-2", 12.5, pd.Timestamp("2021-12-25")],
        ])
        parsed = read_spreadsheet(content, None, "accounts.xlsx")

        assert parsed.file_type == "xlsx"
        assert parsed.headers == ["Account Number", "Balance", "Opened"]
        assert parsed.rows[0] == {"Account Number": "A-1", "Balance": "1500", "Opened": "2020-03-04"}
        assert parsed.rows[1]["Balance"] == "12.5"

    def test_missing_cells_become_empty_strings(self):
        content = _excel_bytes([
            ["a", "b"],
            ["1", None],
            [None, None],
            ["2", "x"],
        ])
        parsed = read_spreadsheet(content, None, "book.xlsx")

        assert parsed.rows == [{"a": "1", "b": ""}, {"a": "2", "b": "x"}]
        assert parsed.skipped_empty_rows == 1

    def test_corrupt_workbook_is_rejected(self):
        with pytest.raises(ParseError, match="Could not read Excel file"):
            read_spreadsheet(b"not a workbook", None, "broken.xlsx")
