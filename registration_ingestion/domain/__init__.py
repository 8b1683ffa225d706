"""
registration_ingestion.domain -- Pure types and row validators for bulk import.

ZERO I/O. Imports only from registration_kernel/domain/ and registration_engines/.
"""

from registration_ingestion.domain.types import (
    BulkImportResult,
    BulkRecordClassification,
    ClassificationResult,
    ClassificationSummary,
    ParsedUpload,
)
from registration_ingestion.domain.validators import validate_row

__all__ = [
    "BulkImportResult",
    "BulkRecordClassification",
    "ClassificationResult",
    "ClassificationSummary",
    "ParsedUpload",
    "validate_row",
]
