"""
Tabular file parsing for equipment imports.

Reads CSV and spreadsheet uploads into a header row plus a bounded list of
data rows. Every cell comes back as a stripped string so downstream
comparisons never have to deal with nulls or numeric types.
"""
import csv
import io
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from app.domain.imports.errors import (
    EmptyFileError,
    FileTooLargeError,
    HeaderRowMissingError,
    UnsupportedFormatError,
)

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS: Dict[str, str] = {
    ".csv": "csv",
    ".xlsx": "excel",
    ".xlsm": "excel",
    ".xls": "excel",
}

CONTENT_TYPE_EXTENSIONS: Dict[str, str] = {
    "text/csv": ".csv",
    "application/csv": ".csv",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-excel.sheet.macroenabled.12": ".xlsm",
}

_EXCEL_ENGINES = {".xlsx": "openpyxl", ".xlsm": "openpyxl", ".xls": "xlrd"}


@dataclass
class ParsedTable:
    """Header row plus data rows of one uploaded file."""

    headers: List[str]
    rows: List[List[str]]
    file_type: str
    sheet_name: Optional[str] = None
    sheet_names: List[str] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    def row_as_dict(self, row: List[str]) -> Dict[str, str]:
        return dict(zip(self.headers, row))

    def preview(self, limit: int) -> List[Dict[str, str]]:
        return [self.row_as_dict(row) for row in self.rows[:limit]]


def resolve_extension(file_name: Optional[str], content_type: Optional[str] = None) -> str:
    """
    Work out which parser to use from the file name, falling back to the
    declared content type when the name has no extension.

    Raises:
        UnsupportedFormatError: If neither source names a supported format
    """
    extension = os.path.splitext(file_name or "")[1].lower()
    if not extension and content_type:
        extension = CONTENT_TYPE_EXTENSIONS.get(content_type.split(";")[0].strip().lower(), "")

    if extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormatError(
            "Only Excel (.xlsx, .xlsm, .xls) and CSV files are allowed"
            + (f" (got '{extension}')" if extension else "")
        )
    return extension


def _stringify_cell(value: Any) -> str:
    """Coerce a spreadsheet cell into a stripped string; blanks become ''."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def _decode_csv(file_content: bytes) -> str:
    try:
        return file_content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("CSV is not valid UTF-8; decoding as Latin-1")
        return file_content.decode("latin-1")


def _read_csv_cells(file_content: bytes) -> List[List[str]]:
    """Read every CSV row as raw strings without assuming a header."""
    text_content = _decode_csv(file_content)
    try:
        return [[cell.strip() for cell in row] for row in csv.reader(io.StringIO(text_content))]
    except csv.Error as e:
        raise UnsupportedFormatError(f"Could not read CSV file: {e}") from e


def _read_excel_cells(file_content: bytes, extension: str) -> Tuple[List[List[str]], str, List[str]]:
    """Read the first worksheet as raw strings; returns (cells, sheet_name, sheet_names)."""
    try:
        workbook = pd.ExcelFile(io.BytesIO(file_content), engine=_EXCEL_ENGINES[extension])
        sheet_names = [str(name) for name in workbook.sheet_names]
        if not sheet_names:
            raise EmptyFileError("Workbook has no worksheets")
        # Cell text such as "NA" or "null" is data, only truly empty cells become "".
        df = workbook.parse(
            workbook.sheet_names[0],
            header=None,
            dtype=object,
            keep_default_na=False,
            na_filter=False,
        )
    except EmptyFileError:
        raise
    except Exception as e:
        raise UnsupportedFormatError(f"Could not read Excel file: {e}") from e

    cells = [[_stringify_cell(value) for value in row] for row in df.itertuples(index=False, name=None)]
    return cells, sheet_names[0], sheet_names


def _build_headers(raw_header: List[str]) -> List[str]:
    """
    Turn the raw header row into unique column names.

    Trailing blank cells are dropped, inner blanks become ``Column <n>``, and
    repeated names get their 1-based column position appended.
    """
    cells = list(raw_header)
    while cells and not cells[-1]:
        cells.pop()

    headers: List[str] = []
    seen = set()
    for position, cell in enumerate(cells, start=1):
        name = " ".join(cell.split()) or f"Column {position}"
        if name in seen:
            candidate = f"{name}_{position}"
            counter = 2
            while candidate in seen:
                candidate = f"{name}_{position}_{counter}"
                counter += 1
            logger.info(f"Duplicate header '{name}' at column {position} renamed to '{candidate}'")
            name = candidate
        seen.add(name)
        headers.append(name)
    return headers


def parse_tabular_file(
    file_content: bytes,
    declared_extension: str,
    max_rows: Optional[int] = None,
) -> ParsedTable:
    """
    Parse an uploaded CSV or spreadsheet.

    Args:
        file_content: Raw upload bytes
        declared_extension: File extension including the dot (e.g. ".csv")
        max_rows: Optional cap on the number of data rows

    Returns:
        ParsedTable with headers and padded string rows

    Raises:
        UnsupportedFormatError: Unknown extension or unreadable content
        EmptyFileError: No rows at all
        HeaderRowMissingError: Rows exist but none has a non-blank cell
        FileTooLargeError: More data rows than ``max_rows``
    """
    extension = (declared_extension or "").lower()
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    if extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormatError(f"Unsupported file type '{declared_extension}'")

    if not file_content:
        raise EmptyFileError()

    file_type = SUPPORTED_EXTENSIONS[extension]
    sheet_name = None
    sheet_names: List[str] = []
    if file_type == "csv":
        cells = _read_csv_cells(file_content)
    else:
        cells, sheet_name, sheet_names = _read_excel_cells(file_content, extension)

    if not cells:
        raise EmptyFileError()

    header_index = next((i for i, row in enumerate(cells) if any(row)), None)
    if header_index is None:
        raise HeaderRowMissingError()

    headers = _build_headers(cells[header_index])
    width = len(headers)

    rows: List[List[str]] = []
    for raw_row in cells[header_index + 1:]:
        row = list(raw_row[:width]) + [""] * max(0, width - len(raw_row))
        if not any(row):
            continue
        rows.append(row)

    if max_rows is not None and len(rows) > max_rows:
        raise FileTooLargeError(f"File has {len(rows)} data rows; the import limit is {max_rows}")

    logger.info(
        f"Parsed {file_type} upload: {len(headers)} columns, {len(rows)} data rows"
        + (f" (sheet '{sheet_name}')" if sheet_name else "")
    )
    return ParsedTable(
        headers=headers,
        rows=rows,
        file_type=file_type,
        sheet_name=sheet_name,
        sheet_names=sheet_names,
    )
