"""
registration_ingestion.domain.types -- Pure frozen dataclasses for bulk import.

ZERO I/O. Imports only from registration_kernel/domain/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from registration_kernel.domain.reconciliation import RowError, RowOperation
from registration_kernel.domain.registration import RegistrationRequest


# =============================================================================
# Per-row classification
# =============================================================================


@dataclass(frozen=True)
class BulkRecordClassification:
    """Outcome for one uploaded row."""

    row_number: int
    operation: RowOperation
    values: dict[str, Any] = field(default_factory=dict)  # Parsed, JSON-native
    key_values: dict[str, Any] = field(default_factory=dict)
    external_record_id: str | None = None  # ALTERATION only
    original_values: dict[str, Any] | None = None  # ALTERATION baseline
    errors: tuple[RowError, ...] = ()

    @property
    def is_error(self) -> bool:
        return self.operation == RowOperation.ERROR

    def to_item(self) -> dict[str, Any]:
        """Bulk draft item for this row."""
        return {
            "row_number": self.row_number,
            "values": dict(self.values),
            "external_record_id": self.external_record_id,
        }

    def to_original_item(self) -> dict[str, Any]:
        """Bulk draft baseline item for this row (ALTERATION only)."""
        return {
            "row_number": self.row_number,
            "values": dict(self.original_values or {}),
            "external_record_id": self.external_record_id,
        }


@dataclass(frozen=True)
class ClassificationSummary:
    total: int = 0
    new: int = 0
    alteration: int = 0
    error: int = 0


@dataclass(frozen=True)
class ClassificationResult:
    """All rows of one upload, classified, in row order."""

    template_id: str
    records: tuple[BulkRecordClassification, ...]
    summary: ClassificationSummary
    warnings: tuple[str, ...] = ()

    def by_operation(self, operation: RowOperation) -> tuple[BulkRecordClassification, ...]:
        return tuple(r for r in self.records if r.operation == operation)

    @property
    def errors(self) -> tuple[RowError, ...]:
        return tuple(e for r in self.records for e in r.errors)


# =============================================================================
# Import result
# =============================================================================


@dataclass(frozen=True)
class BulkImportResult:
    """Drafts created from an upload plus the rows that were left out."""

    template_id: str
    classification: ClassificationResult
    new_request: RegistrationRequest | None = None
    alteration_request: RegistrationRequest | None = None

    @property
    def errors(self) -> tuple[RowError, ...]:
        return self.classification.errors

    @property
    def warnings(self) -> tuple[str, ...]:
        return self.classification.warnings

    @property
    def created_requests(self) -> tuple[RegistrationRequest, ...]:
        return tuple(
            r for r in (self.new_request, self.alteration_request) if r is not None
        )


@dataclass(frozen=True)
class ParsedUpload:
    """Rows read from an uploaded file."""

    filename: str
    columns: tuple[str, ...]
    rows: tuple[Any, ...]  # SourceRow
    source_template_id: str | None = None
