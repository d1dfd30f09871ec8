import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from io import StringIO
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import pandas as pd

from app.domain.imports.errors import ParseError

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPES = {"text/csv", "application/csv"}
EXCEL_CONTENT_TYPES = {
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
}
CONTENT_TYPE_BY_FILE_TYPE = {"csv": "text/csv", **{kind: mime for mime, kind in EXCEL_CONTENT_TYPES.items()}}


@dataclass
class ParsedSpreadsheet:
    """Headers plus the non-empty data rows of the first sheet of a file."""

    headers: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)
    skipped_empty_rows: int = 0
    file_type: str = "csv"

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def iter_rows(self) -> Iterator[Dict[str, str]]:
        for row in self.rows:
            yield row

    def sample(self, limit: int = 5) -> List[Dict[str, str]]:
        return self.rows[:limit]


def detect_spreadsheet_type(content_type: Optional[str], file_name: Optional[str] = None) -> str:
    """
    Resolve the file format from the declared MIME type, falling back to the extension.

    Returns:
        One of ``csv``, ``xlsx`` or ``xls``.

    Raises:
        ParseError: when neither the MIME type nor the extension is a spreadsheet.
    """
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared in EXCEL_CONTENT_TYPES:
        return EXCEL_CONTENT_TYPES[declared]
    if declared in CSV_CONTENT_TYPES:
        return "csv"

    name = (file_name or "").lower()
    if name.endswith(".csv"):
        return "csv"
    if name.endswith(".xlsx"):
        return "xlsx"
    if name.endswith(".xls"):
        return "xls"

    raise ParseError(
        f"Unsupported file type '{content_type or 'unknown'}'. Upload a CSV or Excel file.",
        file_name=file_name,
    )


def read_spreadsheet(
    content: bytes,
    content_type: Optional[str] = None,
    file_name: Optional[str] = None,
) -> ParsedSpreadsheet:
    """
    Parse a CSV or Excel byte buffer into headers and row dictionaries.

    Row 0 supplies the headers. Every value is a trimmed string and rows where
    every cell is empty are dropped (and counted).

    Raises:
        ParseError: undecodable content, a workbook without worksheets, or a
            file with fewer than two populated rows.
    """
    file_type = detect_spreadsheet_type(content_type, file_name)

    if file_type == "csv":
        raw_rows = _read_csv_rows(content, file_name)
    else:
        raw_rows = _read_excel_rows(content, file_name)

    populated = [row for row in raw_rows if any(cell for cell in row)]
    skipped = len(raw_rows) - len(populated)

    if len(populated) < 2:
        raise ParseError(
            "File must contain a header row and at least one data row",
            file_name=file_name,
        )

    headers = normalize_headers(populated[0])
    width = len(headers)
    rows: List[Dict[str, str]] = []
    truncated = 0
    for raw in populated[1:]:
        if len(raw) > width and any(raw[width:]):
            truncated += 1
        padded = list(raw[:width]) + [""] * max(0, width - len(raw))
        rows.append(dict(zip(headers, padded)))

    if truncated:
        logger.warning(f"{truncated} row(s) had more cells than headers; extra cells were ignored")

    logger.info(
        f"Parsed {file_type} file{f' {file_name!r}' if file_name else ''}: "
        f"{len(rows)} rows, {len(headers)} columns, {skipped} empty rows skipped"
    )
    return ParsedSpreadsheet(headers=headers, rows=rows, skipped_empty_rows=skipped, file_type=file_type)


def normalize_headers(raw_headers: Sequence[str]) -> List[str]:
    """
    Trim header cells, name blank ones ``col_<index>`` and suffix duplicates.

    Duplicates get ``.1``, ``.2`` suffixes in the order they appear, the same
    way pandas mangles duplicate column labels.
    """
    headers: List[str] = []
    seen: Dict[str, int] = {}
    for index, raw in enumerate(raw_headers):
        header = (raw or "").strip() or f"col_{index}"
        if header in seen:
            seen[header] += 1
            candidate = f"{header}.{seen[header]}"
            while candidate in seen:
                seen[header] += 1
                candidate = f"{header}.{seen[header]}"
            seen[candidate] = 0
            header = candidate
        else:
            seen[header] = 0
        headers.append(header)
    return headers


def split_csv_line(line: str) -> List[str]:
    """Split one CSV line, honouring quoted commas and ``""`` escapes."""
    reader = csv.reader(StringIO(line))
    try:
        return next(reader)
    except StopIteration:
        return []


def write_csv(headers: Sequence[str], rows: Iterable[Dict[str, Any]]) -> bytes:
    buffer = StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(h) is None else row.get(h) for h in headers])
    return buffer.getvalue().encode("utf-8")


def _read_csv_rows(content: bytes, file_name: Optional[str]) -> List[List[str]]:
    try:
        text_content = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(f"Could not decode CSV file as UTF-8: {exc}", file_name=file_name) from exc

    try:
        return [[cell.strip() for cell in row] for row in csv.reader(StringIO(text_content))]
    except csv.Error as exc:
        raise ParseError(f"Malformed CSV content: {exc}", file_name=file_name) from exc


def _read_excel_rows(content: bytes, file_name: Optional[str]) -> List[List[str]]:
    try:
        df = pd.read_excel(io.BytesIO(content), sheet_name=0, header=None, engine="openpyxl")
    except Exception as exc:
        raise ParseError(f"Could not read Excel file: {exc}", file_name=file_name) from exc

    if df.shape[1] == 0:
        raise ParseError("Workbook has no populated worksheet", file_name=file_name)

    return [[_excel_cell_to_str(value) for value in record] for record in df.itertuples(index=False, name=None)]


def _excel_cell_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if pd.isna(value):
        return ""
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (pd.Timestamp, datetime)):
        if value.hour == 0 and value.minute == 0 and value.second == 0:
            return value.strftime("%Y-%m-%d")
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()
