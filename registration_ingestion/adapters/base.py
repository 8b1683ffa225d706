"""
Source adapter protocol and layout DTO for bulk uploads.

Contract:
    SourceAdapter.read() yields one ``SourceRow`` per data row (streaming),
    carrying the row number the user sees in the file.
    SourceAdapter.inspect() returns the column header and the template id
    the file was generated from, when it carries one.

Architecture: registration_ingestion/adapters. File I/O only, no DB or kernel imports.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable


@dataclass(frozen=True)
class SourceRow:
    """One data row of an upload, keyed by column name."""

    row_number: int  # Row number as shown in the source file (1-indexed)
    values: dict[str, Any]


@dataclass(frozen=True)
class SourceLayout:
    """Header information of an upload."""

    row_count: int
    columns: tuple[str, ...]
    template_id: str | None = None  # From the bulk template's metadata


@runtime_checkable
class SourceAdapter(Protocol):
    """Protocol for reading uploaded files into rows."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[SourceRow]:
        """Yield one SourceRow per data row. Blank rows are skipped."""
        ...

    def inspect(self, source_path: Path, options: dict[str, Any]) -> SourceLayout:
        """Column names, data row count, and originating template id."""
        ...
