"""
ReconciliationEngine -- classify uploaded rows and import them as drafts.

Responsibility:
    Validate every row of an upload, extract its natural key, look the
    key up in the ERP, classify the row NEW / ALTERATION / ERROR, and
    turn the valid rows into at most two multi-item drafts.

Architecture position:
    registration_ingestion > services.  Orchestrates the file adapters,
    the pure row validators, the pure reconciliation engine functions,
    the ERP record store and RegistrationService.

Invariants enforced:
    - Cheap checks first: a row failing field validation, key
      completeness, or in-batch uniqueness is never sent to the ERP.
    - Two rows with the same normalized key are both ERROR
      DUPLICATE_KEY_IN_BATCH.
    - A key is searched in the row's spelling and in its canonical
      per-type forms; candidates are merged and kept only when their key
      normalizes to the row's key.
    - 0 matches NEW; 1 ALTERATION with the full current record as
      baseline; >= 2 ERROR AMBIGUOUS_KEY.
    - Lookups run on a bounded worker pool; each row's result is written
      once.  Any lookup failure or timeout aborts the whole call.
    - import_rows creates at most one NEW and one ALTERATION draft and
      never creates an empty one.

Failure modes:
    - TemplateNotFoundError, BulkImportNotAllowedError,
      BulkRowLimitExceededError before any row is processed.
    - ReconciliationLookupError (retryable) on any ERP failure.
    - NoValidRowsError from import_rows when every row is an ERROR.
    - UnsupportedFileFormatError from parse_file.

Audit relevance:
    Row errors are returned to the uploader, never raised; the drafts
    created carry their own audit trail from RegistrationService.
"""

from __future__ import annotations

from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Mapping, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from registration_engines.reconciliation import (
    KeyExtraction,
    classify_matches,
    extract_key,
    filter_exact_matches,
    lookup_filters,
)
from registration_ingestion.adapters.base import SourceAdapter, SourceRow
from registration_ingestion.adapters.csv_adapter import CsvSourceAdapter
from registration_ingestion.adapters.xlsx_adapter import XlsxSourceAdapter
from registration_ingestion.domain.types import (
    BulkImportResult,
    BulkRecordClassification,
    ClassificationResult,
    ClassificationSummary,
    ParsedUpload,
)
from registration_ingestion.domain.validators import validate_row
from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.domain.external import (
    ExternalRecord,
    ExternalRecordStore,
    TemplateDefinition,
    TemplateProvider,
)
from registration_kernel.domain.reconciliation import (
    MatchOutcome,
    RowError,
    RowErrorCode,
    RowOperation,
)
from registration_kernel.domain.registration import OperationType
from registration_kernel.exceptions import (
    BulkImportNotAllowedError,
    BulkRowLimitExceededError,
    ExternalSystemError,
    NoValidRowsError,
    ReconciliationLookupError,
    UnsupportedFileFormatError,
)
from registration_kernel.logging_config import LogContext, get_logger
from registration_kernel.services.registration_service import RegistrationService

logger = get_logger("ingestion.reconciliation")

DEFAULT_MAX_BULK_ROWS = 1000
DEFAULT_LOOKUP_WORKERS = 4


def _default_adapters() -> dict[str, SourceAdapter]:
    return {
        ".csv": CsvSourceAdapter(),
        ".xlsx": XlsxSourceAdapter(),
        ".xlsm": XlsxSourceAdapter(),
    }


def _as_source_rows(rows: Sequence[SourceRow | Mapping[str, Any]]) -> list[SourceRow]:
    """Accept SourceRows or bare mappings (numbered from 1)."""
    out: list[SourceRow] = []
    for index, row in enumerate(rows, start=1):
        if isinstance(row, SourceRow):
            out.append(row)
        else:
            out.append(SourceRow(row_number=index, values=dict(row)))
    return out


def _error_record(
    row: SourceRow,
    errors: Sequence[RowError],
    values: dict[str, Any] | None = None,
    key_values: dict[str, Any] | None = None,
) -> BulkRecordClassification:
    return BulkRecordClassification(
        row_number=row.row_number,
        operation=RowOperation.ERROR,
        values=dict(values or {}),
        key_values=dict(key_values or {}),
        errors=tuple(errors),
    )


class ReconciliationEngine:
    """
    Bulk classification and import.

    Contract:
        classify(template_id, rows) -> ClassificationResult
        import_rows(template_id, rows, requester_id) -> BulkImportResult
        parse_file(path) -> ParsedUpload

    Non-goals:
        - Does NOT commit; import_rows flushes the drafts it creates.
        - Does NOT retry lookups; the caller re-runs the whole call.
    """

    def __init__(
        self,
        session: Session,
        templates: TemplateProvider,
        record_store: ExternalRecordStore,
        clock: Clock | None = None,
        lookup_workers: int = DEFAULT_LOOKUP_WORKERS,
        max_bulk_rows: int = DEFAULT_MAX_BULK_ROWS,
        adapters: dict[str, SourceAdapter] | None = None,
    ) -> None:
        if lookup_workers < 1:
            raise ValueError(f"lookup_workers must be >= 1, got {lookup_workers}")
        self._session = session
        self._templates = templates
        self._store = record_store
        self._clock = clock or SystemClock()
        self._lookup_workers = lookup_workers
        self._max_rows = max_bulk_rows
        self._adapters = adapters if adapters is not None else _default_adapters()
        self._registrations = RegistrationService(
            session, templates, record_store, self._clock,
        )

    # ------------------------------------------------------------------
    # File parsing
    # ------------------------------------------------------------------

    def parse_file(
        self,
        source_path: Path,
        options: dict[str, Any] | None = None,
    ) -> ParsedUpload:
        """Read an uploaded xlsx/csv file into numbered rows."""
        adapter = self._adapters.get(source_path.suffix.lower())
        if adapter is None:
            raise UnsupportedFileFormatError(source_path.name)
        opts = options or {}
        layout = adapter.inspect(source_path, opts)
        rows = tuple(adapter.read(source_path, opts))
        logger.info(
            "upload_parsed",
            extra={
                "source_filename": source_path.name,
                "row_count": len(rows),
                "column_count": len(layout.columns),
                "source_template_id": layout.template_id,
            },
        )
        return ParsedUpload(
            filename=source_path.name,
            columns=layout.columns,
            rows=rows,
            source_template_id=layout.template_id,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(
        self,
        template_id: str,
        rows: Sequence[SourceRow | Mapping[str, Any]],
        columns: Sequence[str] | None = None,
        source_template_id: str | None = None,
    ) -> ClassificationResult:
        template = self._templates.get_template(template_id)
        if not template.allow_bulk_import:
            raise BulkImportNotAllowedError(template_id)
        if len(rows) > self._max_rows:
            raise BulkRowLimitExceededError(len(rows), self._max_rows)

        source_rows = _as_source_rows(rows)
        warnings = self._warnings(template, source_rows, columns, source_template_id)

        with LogContext.bind(template_id=template_id):
            results: dict[int, BulkRecordClassification] = {}
            keyed: list[tuple[SourceRow, dict[str, Any], KeyExtraction]] = []

            for index, row in enumerate(source_rows):
                values, errors = validate_row(row.values, row.row_number, template)
                if errors:
                    results[index] = _error_record(row, errors, values)
                    continue
                if not template.key_fields:
                    results[index] = BulkRecordClassification(
                        row_number=row.row_number,
                        operation=RowOperation.NEW,
                        values=values,
                    )
                    continue
                key = extract_key(row.values, template)
                if not key.complete:
                    results[index] = _error_record(
                        row,
                        [RowError(
                            row.row_number,
                            RowErrorCode.INCOMPLETE_KEY,
                            f"key field(s) empty: {', '.join(key.missing_fields)}",
                            key.missing_fields[0],
                        )],
                        values,
                        key.raw,
                    )
                    continue
                keyed.append((row, values, key))

            to_lookup = self._mark_duplicates(source_rows, keyed, results)
            self._lookup_all(template, to_lookup, results)

        records = tuple(results[i] for i in sorted(results))
        summary = ClassificationSummary(
            total=len(records),
            new=sum(1 for r in records if r.operation == RowOperation.NEW),
            alteration=sum(1 for r in records if r.operation == RowOperation.ALTERATION),
            error=sum(1 for r in records if r.operation == RowOperation.ERROR),
        )
        logger.info(
            "bulk_classified",
            extra={
                "template_id": template_id,
                "total": summary.total,
                "new": summary.new,
                "alteration": summary.alteration,
                "error": summary.error,
                "warning_count": len(warnings),
            },
        )
        return ClassificationResult(
            template_id=template_id,
            records=records,
            summary=summary,
            warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_rows(
        self,
        template_id: str,
        rows: Sequence[SourceRow | Mapping[str, Any]],
        requester_id: str,
        columns: Sequence[str] | None = None,
        source_template_id: str | None = None,
    ) -> BulkImportResult:
        """Classify and create at most one NEW and one ALTERATION draft."""
        batch_id = str(uuid4())
        with LogContext.bind(batch_id=batch_id, actor_id=requester_id):
            classification = self.classify(
                template_id, rows, columns, source_template_id,
            )
            new_rows = classification.by_operation(RowOperation.NEW)
            alteration_rows = classification.by_operation(RowOperation.ALTERATION)
            if not new_rows and not alteration_rows:
                raise NoValidRowsError(template_id, classification.summary.error)

            new_request = None
            if new_rows:
                new_request = self._registrations.create_bulk_draft(
                    template_id,
                    requester_id,
                    OperationType.NEW,
                    [r.to_item() for r in new_rows],
                )

            alteration_request = None
            if alteration_rows:
                alteration_request = self._registrations.create_bulk_draft(
                    template_id,
                    requester_id,
                    OperationType.ALTERATION,
                    [r.to_item() for r in alteration_rows],
                    [r.to_original_item() for r in alteration_rows],
                )

            logger.info(
                "bulk_import_completed",
                extra={
                    "template_id": template_id,
                    "new_request_id": str(new_request.request_id) if new_request else None,
                    "alteration_request_id": (
                        str(alteration_request.request_id) if alteration_request else None
                    ),
                    "error_rows": classification.summary.error,
                },
            )
            return BulkImportResult(
                template_id=template_id,
                classification=classification,
                new_request=new_request,
                alteration_request=alteration_request,
            )

    def import_file(
        self,
        template_id: str,
        source_path: Path,
        requester_id: str,
    ) -> BulkImportResult:
        upload = self.parse_file(source_path)
        return self.import_rows(
            template_id,
            upload.rows,
            requester_id,
            columns=upload.columns,
            source_template_id=upload.source_template_id,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _warnings(
        self,
        template: TemplateDefinition,
        rows: Sequence[SourceRow],
        columns: Sequence[str] | None,
        source_template_id: str | None,
    ) -> list[str]:
        warnings: list[str] = []
        present = set(columns) if columns is not None else {
            name for row in rows for name in row.values
        }
        missing = [
            f.name for f in template.fields
            if (f.required or f.name in template.key_fields) and f.name not in present
        ]
        if missing:
            warnings.append(f"missing required column(s): {', '.join(missing)}")
        if not template.key_fields:
            warnings.append(
                "template has no key fields; every valid row is classified NEW"
            )
        if source_template_id and source_template_id != template.template_id:
            warnings.append(
                f"file was generated for template {source_template_id!r}, "
                f"not {template.template_id!r}"
            )
        for warning in warnings:
            logger.warning(
                "bulk_upload_warning",
                extra={"template_id": template.template_id, "warning": warning},
            )
        return warnings

    def _mark_duplicates(
        self,
        source_rows: Sequence[SourceRow],
        keyed: list[tuple[SourceRow, dict[str, Any], KeyExtraction]],
        results: dict[int, BulkRecordClassification],
    ) -> list[tuple[int, SourceRow, dict[str, Any], KeyExtraction]]:
        """Flag rows sharing a key; return the rest with their row index."""
        index_of = {id(row): i for i, row in enumerate(source_rows)}
        groups: dict[tuple[str, ...], list[tuple[SourceRow, dict[str, Any], KeyExtraction]]]
        groups = defaultdict(list)
        for entry in keyed:
            groups[entry[2].normalized].append(entry)

        remaining: list[tuple[int, SourceRow, dict[str, Any], KeyExtraction]] = []
        for entries in groups.values():
            if len(entries) == 1:
                row, values, key = entries[0]
                remaining.append((index_of[id(row)], row, values, key))
                continue
            row_numbers = ", ".join(str(e[0].row_number) for e in entries)
            for row, values, key in entries:
                results[index_of[id(row)]] = _error_record(
                    row,
                    [RowError(
                        row.row_number,
                        RowErrorCode.DUPLICATE_KEY_IN_BATCH,
                        f"same key as row(s) {row_numbers}",
                    )],
                    values,
                    key.raw,
                )
        return remaining

    def _lookup_all(
        self,
        template: TemplateDefinition,
        entries: list[tuple[int, SourceRow, dict[str, Any], KeyExtraction]],
        results: dict[int, BulkRecordClassification],
    ) -> None:
        if not entries:
            return
        with ThreadPoolExecutor(
            max_workers=min(self._lookup_workers, len(entries)),
            thread_name_prefix="reconcile",
        ) as executor:
            futures: dict[Future, tuple[int, SourceRow, dict[str, Any], KeyExtraction]] = {
                executor.submit(self._lookup, template, entry[3]): entry
                for entry in entries
            }
            try:
                for future in as_completed(futures):
                    index, row, values, key = futures[future]
                    try:
                        outcome, original = future.result()
                    except ExternalSystemError as exc:
                        logger.warning(
                            "reconciliation_lookup_failed",
                            extra={
                                "template_id": template.template_id,
                                "row_number": row.row_number,
                                "error_code": exc.code,
                            },
                        )
                        raise ReconciliationLookupError(
                            template.template_id, row.row_number, str(exc),
                        ) from exc
                    results[index] = self._record_from_outcome(
                        row, values, key, outcome, original,
                    )
            except ReconciliationLookupError:
                for pending in futures:
                    pending.cancel()
                raise

    def _lookup(
        self,
        template: TemplateDefinition,
        key: KeyExtraction,
    ) -> tuple[MatchOutcome, dict[str, Any] | None]:
        candidates: list[ExternalRecord] = []
        seen: set[str] = set()
        for filters in lookup_filters(key, template):
            for record in self._store.search(template.table_name, filters):
                if record.identifier not in seen:
                    seen.add(record.identifier)
                    candidates.append(record)
        outcome = classify_matches(filter_exact_matches(candidates, key, template))
        if outcome.operation != RowOperation.ALTERATION:
            return outcome, None
        current = self._store.get_by_identifier(
            template.table_name, outcome.external_record_id,
        )
        if current is None:
            current = next(
                c for c in candidates if c.identifier == outcome.external_record_id
            )
        return outcome, dict(current.values)

    def _record_from_outcome(
        self,
        row: SourceRow,
        values: dict[str, Any],
        key: KeyExtraction,
        outcome: MatchOutcome,
        original: dict[str, Any] | None,
    ) -> BulkRecordClassification:
        if outcome.operation == RowOperation.ERROR:
            return _error_record(
                row,
                [RowError(row.row_number, outcome.error_code, outcome.message)],
                values,
                key.raw,
            )
        return BulkRecordClassification(
            row_number=row.row_number,
            operation=outcome.operation,
            values=values,
            key_values=dict(key.raw),
            external_record_id=outcome.external_record_id,
            original_values=original,
        )
