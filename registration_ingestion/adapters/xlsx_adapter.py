"""
XLSX source adapter for bulk uploads.

Bulk template layout (sheet ``Data``, or the active sheet):
  - row 1: field names (the column keys)
  - rows 2-4: labels, types, example (ignored on read)
  - row 5 onward: data

Sheet ``_metadata`` holds key/value pairs; its ``template_id`` entry names
the template the file was generated from.

source_options:
  sheet: sheet name or 0-based index.  Default: ``Data`` if present, else active.
  header_row: 1-based header row.  Default: 1.
  data_start_row: 1-based first data row.  Default: 5.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

from registration_ingestion.adapters.base import SourceLayout, SourceRow

DATA_SHEET = "Data"
METADATA_SHEET = "_metadata"
DEFAULT_HEADER_ROW = 1
DEFAULT_DATA_START_ROW = 5


def _cell_value(value: Any) -> Any:
    """Normalize one openpyxl cell value: strip text, integral floats to int."""
    if value is None:
        return None
    if isinstance(value, float) and value == int(value):
        return int(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _load_workbook(source_path: Path) -> Any:
    try:
        import openpyxl
    except ImportError as e:
        raise ImportError("XLSX support requires openpyxl. Install with: pip install openpyxl") from e
    return openpyxl.load_workbook(source_path, read_only=True, data_only=True)


class XlsxSourceAdapter:
    """Read .xlsx uploads as one SourceRow per data row."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[SourceRow]:
        header_row = int(options.get("header_row", DEFAULT_HEADER_ROW))
        data_start = int(options.get("data_start_row", DEFAULT_DATA_START_ROW))

        wb = _load_workbook(source_path)
        try:
            sheet = self._get_sheet(wb, options)
            headers = self._headers(sheet, header_row)
            if not headers:
                return
            for row_number, row in enumerate(
                sheet.iter_rows(min_row=data_start, values_only=True),
                start=data_start,
            ):
                values = {
                    h: _cell_value(row[i]) if i < len(row) else None
                    for i, h in enumerate(headers)
                    if h
                }
                if all(v is None or v == "" for v in values.values()):
                    continue
                yield SourceRow(row_number=row_number, values=values)
        finally:
            wb.close()

    def inspect(self, source_path: Path, options: dict[str, Any]) -> SourceLayout:
        header_row = int(options.get("header_row", DEFAULT_HEADER_ROW))
        data_start = int(options.get("data_start_row", DEFAULT_DATA_START_ROW))

        wb = _load_workbook(source_path)
        try:
            sheet = self._get_sheet(wb, options)
            headers = self._headers(sheet, header_row)
            count = sum(
                1
                for row in sheet.iter_rows(min_row=data_start, values_only=True)
                if any(_cell_value(v) not in (None, "") for v in row)
            )
            return SourceLayout(
                row_count=count,
                columns=tuple(h for h in headers if h),
                template_id=self._metadata(wb).get("template_id"),
            )
        finally:
            wb.close()

    def _get_sheet(self, wb: Any, options: dict[str, Any]) -> Any:
        sheet_ref = options.get("sheet")
        if sheet_ref is None:
            if DATA_SHEET in wb.sheetnames:
                return wb[DATA_SHEET]
            return wb.active
        if isinstance(sheet_ref, int):
            return wb.worksheets[sheet_ref]
        return wb[sheet_ref]

    def _headers(self, sheet: Any, header_row: int) -> list[str]:
        for row in sheet.iter_rows(
            min_row=header_row, max_row=header_row, values_only=True,
        ):
            return ["" if v is None else str(v).strip() for v in row]
        return []

    def _metadata(self, wb: Any) -> dict[str, str]:
        if METADATA_SHEET not in wb.sheetnames:
            return {}
        meta: dict[str, str] = {}
        for row in wb[METADATA_SHEET].iter_rows(values_only=True):
            if len(row) >= 2 and row[0] is not None and row[1] is not None:
                meta[str(row[0]).strip()] = str(row[1]).strip()
        return meta
