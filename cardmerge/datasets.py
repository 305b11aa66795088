"""
Header and row extraction for uploaded spreadsheets (CSV, TSV, XLSX).

Only the first sheet of a workbook is read; the first row is the header.
"""

import csv
import io
from pathlib import Path
from typing import Any, List, Tuple

from loguru import logger
from openpyxl import load_workbook

from cardmerge.errors import ValidationError
from cardmerge.models import DataRecord


def _cell(value: Any) -> Any:
    """Empty cells become "" so every row carries every header"""
    return "" if value is None else value


def _headers_from(raw: List[Any]) -> List[str]:
    headers = []
    for index, value in enumerate(raw):
        name = str(value).strip() if value is not None else ""
        headers.append(name or f"column_{index + 1}")
    return headers


def _rows_from(headers: List[str], raw_rows) -> List[DataRecord]:
    rows = []
    for raw in raw_rows:
        values = list(raw)
        if all(v is None or v == "" for v in values):
            continue
        values += [None] * (len(headers) - len(values))
        rows.append({header: _cell(values[i]) for i, header in enumerate(headers)})
    return rows


def read_delimited(data: bytes, delimiter: str = ",") -> Tuple[List[str], List[DataRecord]]:
    text = data.decode("utf-8-sig", errors="replace")
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    try:
        header_row = next(reader)
    except StopIteration:
        return [], []
    headers = _headers_from(header_row)
    return headers, _rows_from(headers, reader)


def read_xlsx(data: bytes) -> Tuple[List[str], List[DataRecord]]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        raise ValidationError(f"Could not read workbook: {e}",
                              suggestions=["Upload a valid .xlsx file"])
    try:
        sheet = workbook.worksheets[0]
        rows = sheet.iter_rows(values_only=True)
        try:
            header_row = next(rows)
        except StopIteration:
            return [], []
        headers = _headers_from(list(header_row))
        return headers, _rows_from(headers, rows)
    finally:
        workbook.close()


def extract_table(filename: str, data: bytes) -> Tuple[List[str], List[DataRecord]]:
    """
    Extract (headers, rows) from an uploaded spreadsheet.

    Raises:
        ValidationError: unsupported extension or unreadable file.
    """
    suffix = Path(filename or "").suffix.lower()
    if suffix == ".csv":
        headers, rows = read_delimited(data, ",")
    elif suffix == ".tsv":
        headers, rows = read_delimited(data, "\t")
    elif suffix == ".xlsx":
        headers, rows = read_xlsx(data)
    else:
        raise ValidationError(
            f"Unsupported dataset format: {suffix or filename}",
            details={'filename': filename},
            suggestions=["Upload a .csv, .tsv or .xlsx file"]
        )

    logger.info(f"Extracted {len(rows)} rows x {len(headers)} columns from {filename}")
    return headers, rows
