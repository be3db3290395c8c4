"""Spreadsheet ingestion: header listing and mapping-driven row extraction.

Everything here is a pure function of (file, mapping). Preview and commit
both call :func:`extract_rows`, so the preview shows exactly what a commit
would apply.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from io import BytesIO
from pathlib import Path
from typing import Any, BinaryIO
from zipfile import BadZipFile

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from prioritizer.errors import InvalidFile, MissingKeyMapping

log = logging.getLogger(__name__)

KEY_FIELD = "key"

# Fields the dashboard knows how to display: (canonical field, column label)
KNOWN_FIELDS = (
    ("key", "Key"),
    ("summary", "Summary"),
    ("priority", "Priority"),
    ("status", "Status"),
    ("assignee", "Assignee"),
    ("timeSpent", "Time Spent"),
    ("labels", "Labels"),
    ("roughEstimate", "Rough Estimate"),
    ("relatedCustomers", "Related Customer(s)"),
    ("prioritization", "Prioritization"),
    ("weight", "Weight"),
    ("productOwner", "Product Owner"),
)

Source = str | Path | bytes | BinaryIO


@dataclass
class ImportRow:
    row: int  # 1-based spreadsheet row number
    values: dict[str, Any]

    @property
    def key(self) -> str:
        return self.values[KEY_FIELD]


@dataclass
class Extraction:
    rows: list[ImportRow] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rows) + len(self.errors)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int) -> object:
    """Safely get a column value from a row tuple."""
    return row[idx] if idx < len(row) else None


def _cell(value: object) -> Any:
    """Normalize a cell value for JSON output and storage."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def _open_first_sheet(source: Source):
    if isinstance(source, (bytes, bytearray)):
        source = BytesIO(source)
    try:
        wb = openpyxl.load_workbook(source, read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, OSError, ValueError) as exc:
        raise InvalidFile(f"File could not be read as an Excel spreadsheet: {exc}") from exc
    if not wb.worksheets:
        wb.close()
        raise InvalidFile("Workbook contains no sheets")
    return wb, wb.worksheets[0]


def _header_row(ws) -> tuple:
    for row in ws.iter_rows(min_row=1, max_row=1, values_only=True):
        return row
    return ()


def list_headers(source: Source) -> list[str]:
    """Non-empty header cells of the first sheet's first row, in order."""
    wb, ws = _open_first_sheet(source)
    try:
        return [_s(v) for v in _header_row(ws) if _s(v)]
    finally:
        wb.close()


def suggest_mapping(headers: list[str]) -> dict[str, str]:
    """Auto-map known fields to headers by field name or label, ignoring case."""
    mapping: dict[str, str] = {}
    for field_name, label in KNOWN_FIELDS:
        candidates = {field_name.casefold(), label.casefold()}
        match = next((h for h in headers if h.strip().casefold() in candidates), None)
        if match is not None:
            mapping[field_name] = match
    return mapping


def validate_mapping(mapping: dict[str, str]) -> None:
    if not _s(mapping.get(KEY_FIELD)):
        raise MissingKeyMapping()


def _column_indexes(headers: tuple, mapping: dict[str, str]) -> dict[str, int]:
    """Resolve each mapped field to a column index. First matching header wins."""
    folded = [_s(h).casefold() for h in headers]
    indexes: dict[str, int] = {}
    for field_name, column in mapping.items():
        target = _s(column).casefold()
        if not target:
            continue
        try:
            indexes[field_name] = folded.index(target)
        except ValueError:
            log.debug("Mapped column %r for field %r not found in sheet", column, field_name)
    return indexes


def extract_rows(source: Source, mapping: dict[str, str]) -> Extraction:
    """Extract field-mapped rows from the first sheet.

    Rows whose mapped cells are all blank are dropped. Rows without a key
    are reported in ``errors`` with their spreadsheet row number.
    """
    validate_mapping(mapping)
    wb, ws = _open_first_sheet(source)
    try:
        indexes = _column_indexes(_header_row(ws), mapping)
        result = Extraction()
        for row_number, row in enumerate(ws.iter_rows(min_row=2, values_only=True), start=2):
            values = {f: _cell(_col(row, idx)) for f, idx in indexes.items()}
            if not any(v != "" for v in values.values()):
                continue
            key = _s(values.get(KEY_FIELD))
            if not key:
                result.errors.append({"row": row_number, "message": "Missing Key field"})
                continue
            values[KEY_FIELD] = key
            result.rows.append(ImportRow(row=row_number, values=values))
        return result
    finally:
        wb.close()
