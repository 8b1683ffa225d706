"""
Bulk template export: the downloadable file users fill in for bulk import.

xlsx layout (sheet ``Data``):
  row 1  field names   (the columns the adapters key on)
  row 2  labels
  row 3  types, with ``(required)`` / ``(key)`` markers
  row 4  example values
  row 5+ data
Sheet ``_metadata`` records template_id, template name, table name and
key fields, so an upload for the wrong template can be detected.

csv layout: a ``# template_id:`` comment, the field-name header, then the
labels, types and example as ``#`` comment lines.
"""

from __future__ import annotations

import csv
import io
from typing import Any

from registration_ingestion.adapters.csv_adapter import COMMENT_PREFIX, TEMPLATE_ID_MARKER
from registration_ingestion.adapters.xlsx_adapter import DATA_SHEET, METADATA_SHEET
from registration_kernel.domain.external import TemplateDefinition, TemplateProvider
from registration_kernel.exceptions import UnsupportedFileFormatError
from registration_kernel.logging_config import get_logger

logger = get_logger("ingestion.template_export")

SUPPORTED_FORMATS = ("xlsx", "csv")


def _type_cell(template: TemplateDefinition, name: str) -> str:
    tf = template.field(name)
    markers = []
    if tf.required:
        markers.append("required")
    if name in template.key_fields:
        markers.append("key")
    suffix = f" ({', '.join(markers)})" if markers else ""
    return f"{tf.field_type.value}{suffix}"


def _layout_rows(template: TemplateDefinition) -> list[list[Any]]:
    names = list(template.field_names)
    return [
        names,
        [template.field(n).label for n in names],
        [_type_cell(template, n) for n in names],
        [template.field(n).example or "" for n in names],
    ]


class BulkTemplateExporter:
    """Builds bulk import templates from template metadata."""

    def __init__(self, templates: TemplateProvider) -> None:
        self._templates = templates

    def generate_template(self, template_id: str, fmt: str = "xlsx") -> bytes:
        """Return the template file contents in ``fmt`` (xlsx or csv)."""
        fmt = fmt.lower()
        if fmt not in SUPPORTED_FORMATS:
            raise UnsupportedFileFormatError(f"template.{fmt}")
        template = self._templates.get_template(template_id)

        content = self._xlsx(template) if fmt == "xlsx" else self._csv(template)
        logger.info(
            "bulk_template_generated",
            extra={
                "template_id": template_id,
                "format": fmt,
                "field_count": len(template.fields),
                "size_bytes": len(content),
            },
        )
        return content

    def _xlsx(self, template: TemplateDefinition) -> bytes:
        try:
            from openpyxl import Workbook
            from openpyxl.styles import Font
        except ImportError as e:
            raise ImportError("XLSX support requires openpyxl. Install with: pip install openpyxl") from e

        wb = Workbook()
        sheet = wb.active
        sheet.title = DATA_SHEET
        for row in _layout_rows(template):
            sheet.append(row)
        for cell in sheet[1]:
            cell.font = Font(bold=True)
        for cell in sheet[3]:
            cell.font = Font(italic=True)
        sheet.freeze_panes = "A5"

        meta = wb.create_sheet(METADATA_SHEET)
        meta.append(["template_id", template.template_id])
        meta.append(["template_name", template.name])
        meta.append(["table_name", template.table_name])
        meta.append(["key_fields", ",".join(template.key_fields)])
        meta.sheet_state = "hidden"

        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue()

    def _csv(self, template: TemplateDefinition) -> bytes:
        buf = io.StringIO()
        buf.write(f"{COMMENT_PREFIX} {TEMPLATE_ID_MARKER} {template.template_id}\n")
        header, labels, types, example = _layout_rows(template)
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(header)
        for row in (labels, types, example):
            line = io.StringIO()
            csv.writer(line, lineterminator="\n").writerow(row)
            buf.write(f"{COMMENT_PREFIX} {line.getvalue()}")
        return buf.getvalue().encode("utf-8")
