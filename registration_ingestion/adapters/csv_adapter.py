"""
CSV source adapter for bulk uploads.

Layout: the first non-comment line is the field-name header; every later
non-blank, non-comment line is a data row.  Lines starting with ``#`` are
comments (the bulk template writes labels, types, and an example there).
A ``# template_id: <id>`` comment names the originating template.

Row numbers are physical line numbers, so they match what a user sees in
a text editor.  Quoted fields may not span lines.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterator

from registration_ingestion.adapters.base import SourceLayout, SourceRow

COMMENT_PREFIX = "#"
TEMPLATE_ID_MARKER = "template_id:"


def _get_encoding(options: dict[str, Any]) -> str:
    enc = options.get("encoding", "utf-8")
    if enc.lower() == "utf-8":
        return "utf-8-sig"  # Strip BOM if present
    return enc


def _numbered_lines(
    source_path: Path,
    encoding: str,
) -> Iterator[tuple[int, str]]:
    """Yield (line_number, line) for every line, comments included."""
    with source_path.open("r", encoding=encoding, newline="") as f:
        yield from enumerate(f, start=1)


def _parse_line(line: str, delimiter: str) -> list[str]:
    return next(csv.reader([line], delimiter=delimiter), [])


def _template_id_from_comment(line: str) -> str | None:
    body = line.lstrip()[len(COMMENT_PREFIX):].strip()
    if body.lower().startswith(TEMPLATE_ID_MARKER):
        return body[len(TEMPLATE_ID_MARKER):].strip() or None
    return None


class CsvSourceAdapter:
    """Read CSV uploads as one SourceRow per data line. Streams."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[SourceRow]:
        encoding = _get_encoding(options)
        delimiter = options.get("delimiter", ",")

        headers: list[str] | None = None
        for line_number, line in _numbered_lines(source_path, encoding):
            if not line.strip() or line.lstrip().startswith(COMMENT_PREFIX):
                continue
            cells = _parse_line(line, delimiter)
            if headers is None:
                headers = [h.strip() for h in cells]
                continue
            values = {
                h: (cells[i].strip() if i < len(cells) else "")
                for i, h in enumerate(headers)
                if h
            }
            if not any(values.values()):
                continue
            yield SourceRow(row_number=line_number, values=values)

    def inspect(self, source_path: Path, options: dict[str, Any]) -> SourceLayout:
        encoding = _get_encoding(options)
        delimiter = options.get("delimiter", ",")

        template_id: str | None = None
        headers: tuple[str, ...] = ()
        count = 0
        for _, line in _numbered_lines(source_path, encoding):
            if line.lstrip().startswith(COMMENT_PREFIX):
                template_id = template_id or _template_id_from_comment(line)
                continue
            if not line.strip():
                continue
            if not headers:
                headers = tuple(h.strip() for h in _parse_line(line, delimiter))
                continue
            count += 1

        return SourceLayout(row_count=count, columns=headers, template_id=template_id)
