"""
Reconciliation domain types (``registration_kernel.domain.reconciliation``).

Responsibility
--------------
Value objects shared by the pure reconciliation engine and the bulk
ingestion layer: the row operation enum, row-level errors, and the
outcome of matching one row key against the ERP.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Row errors are values, never exceptions -- a bad row never aborts a
  classification; only external lookup failures do.
* ``MatchOutcome`` for ``ALTERATION`` always carries the matched
  identifier; for ``ERROR`` it always carries a code.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RowOperation(str, Enum):
    """Classification of one spreadsheet row."""

    NEW = "new"
    ALTERATION = "alteration"
    ERROR = "error"


class RowErrorCode(str, Enum):
    """Machine-readable row error codes."""

    REQUIRED_FIELD_MISSING = "REQUIRED_FIELD_MISSING"
    INVALID_NUMBER = "INVALID_NUMBER"
    INVALID_DATE = "INVALID_DATE"
    INVALID_BOOLEAN = "INVALID_BOOLEAN"
    MAX_LENGTH_EXCEEDED = "MAX_LENGTH_EXCEEDED"
    BELOW_MIN_VALUE = "BELOW_MIN_VALUE"
    ABOVE_MAX_VALUE = "ABOVE_MAX_VALUE"
    PATTERN_MISMATCH = "PATTERN_MISMATCH"
    INVALID_OPTION = "INVALID_OPTION"
    INCOMPLETE_KEY = "INCOMPLETE_KEY"
    DUPLICATE_KEY_IN_BATCH = "DUPLICATE_KEY_IN_BATCH"
    AMBIGUOUS_KEY = "AMBIGUOUS_KEY"


@dataclass(frozen=True)
class RowError:
    """A single problem with one row (and optionally one field)."""

    row_number: int
    code: RowErrorCode
    message: str
    field: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "row": self.row_number,
            "field": self.field,
            "code": self.code.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class MatchOutcome:
    """Result of classifying a row from its ERP match count."""

    operation: RowOperation
    match_count: int
    external_record_id: str | None = None
    error_code: RowErrorCode | None = None
    message: str = ""
