"""Source adapters for bulk uploads (file I/O only, no DB)."""

from registration_ingestion.adapters.base import SourceAdapter, SourceLayout, SourceRow
from registration_ingestion.adapters.csv_adapter import CsvSourceAdapter
from registration_ingestion.adapters.xlsx_adapter import XlsxSourceAdapter

__all__ = [
    "SourceAdapter",
    "SourceLayout",
    "SourceRow",
    "CsvSourceAdapter",
    "XlsxSourceAdapter",
]
