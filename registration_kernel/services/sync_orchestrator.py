"""
SyncOrchestrator -- push approved requests to the ERP.

Responsibility:
    Run APPROVED -> SYNCING -> SYNCED | SYNC_FAILED for one request,
    and the user-triggered retry SYNC_FAILED -> SYNCING -> ...

Architecture position:
    Kernel > Services.  Called once per final approval, by ApprovalService
    when it owns a sync, otherwise by RegistrationCommands in a transaction
    of its own after the approval commits; outer layers call retry_sync.
    The record store it receives is expected to be a
    ``GuardedRecordStore`` so every ERP call is bounded.

Invariants enforced:
    - NEW requests create, ALTERATION requests update the stored external
      reference (request-level or per item).
    - Bulk requests push item by item; an item whose log entry says
      ``synced`` is never pushed again, so a retry after partial failure
      cannot duplicate an external create.
    - Failure stores the error verbatim (code, message, retryable,
      partial_write_possible, detail) and is never retried automatically.
    - retry_sync on a SYNCED request is a no-op.
    - retry_sync also accepts APPROVED: a request whose sync transaction
      failed to commit is left there, with nothing recorded about the push.

Failure modes:
    - SyncNotAllowedError when syncing from any other state.
    - ERP failures never raise out of sync(); they become SYNC_FAILED.
    - The ERP write and the SYNCED/SYNC_FAILED update share one
      transaction.  If its commit fails after the ERP accepted the write,
      the request stays APPROVED and a retry_sync may create the record
      again.  Callers commit the final approval before calling sync() so
      this window never reopens the approval itself.

Audit relevance:
    SYNC_STARTED, SYNC_SUCCEEDED, SYNC_FAILED, SYNC_RETRY_REQUESTED.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.domain.external import ExternalRecordStore
from registration_kernel.domain.registration import (
    BULK_ITEMS,
    OperationType,
    RegistrationRequest,
    RegistrationStatus,
    is_bulk_form_data,
    is_valid_transition,
)
from registration_kernel.exceptions import (
    ExternalSystemError,
    ExternalSystemTimeoutError,
    InvalidRegistrationTransitionError,
    SyncNotAllowedError,
)
from registration_kernel.logging_config import get_logger
from registration_kernel.models.audit_event import RegistrationAuditAction
from registration_kernel.models.registration import RegistrationRequestModel
from registration_kernel.services.auditor_service import RegistrationAuditor
from registration_kernel.services.registration_service import (
    load_request_model,
    verify_snapshot,
)

logger = get_logger("services.sync")

ITEM_SYNCED = "synced"
ITEM_FAILED = "failed"

# APPROVED here means the push ran in a transaction that did not commit.
_RETRYABLE_STATUSES = frozenset({
    RegistrationStatus.SYNC_FAILED.value,
    RegistrationStatus.APPROVED.value,
})


def sync_error_payload(
    exc: ExternalSystemError,
    detail: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """The stored error of a failed sync."""
    return {
        "code": exc.code,
        "message": str(exc),
        "retryable": exc.retryable,
        "partial_write_possible": isinstance(exc, ExternalSystemTimeoutError),
        "detail": {
            "operation": exc.operation,
            "table_name": exc.table_name,
            "status_code": exc.status_code,
            **exc.detail,
            **(detail or {}),
        },
    }


class SyncOrchestrator:
    """
    Drives the sync state machine of approved requests.

    Contract:
        sync(request_id) from APPROVED; retry_sync(request_id) from
        SYNC_FAILED (no-op on SYNCED).  Both flush; the caller commits.
    """

    def __init__(
        self,
        session: Session,
        record_store: ExternalRecordStore,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._store = record_store
        self._clock = clock or SystemClock()
        self._auditor = RegistrationAuditor(session, self._clock)

    def sync(self, request_id: UUID) -> RegistrationRequest:
        model = load_request_model(self._session, request_id, for_update=True)
        verify_snapshot(model)
        if model.status == RegistrationStatus.SYNCED.value:
            return model.to_dto()
        if model.status != RegistrationStatus.APPROVED.value:
            raise SyncNotAllowedError(str(request_id), model.status)
        return self._push(model)

    def retry_sync(self, request_id: UUID, actor_id: str = "system") -> RegistrationRequest:
        model = load_request_model(self._session, request_id, for_update=True)
        verify_snapshot(model)
        if model.status == RegistrationStatus.SYNCED.value:
            logger.info(
                "sync_retry_noop",
                extra={"request_id": str(request_id), "status": model.status},
            )
            return model.to_dto()
        if model.status not in _RETRYABLE_STATUSES:
            raise SyncNotAllowedError(str(request_id), model.status)

        self._auditor.record(
            request_id,
            RegistrationAuditAction.SYNC_RETRY_REQUESTED,
            actor_id,
            {"previous_attempts": model.sync_attempts},
        )
        return self._push(model)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _push(self, model: RegistrationRequestModel) -> RegistrationRequest:
        request_id = model.request_id
        self._set_status(model, RegistrationStatus.SYNCING)
        model.sync_attempts = (model.sync_attempts or 0) + 1
        attempt = model.sync_attempts
        started_at = self._clock.now()
        self._session.flush()

        self._auditor.record(
            request_id,
            RegistrationAuditAction.SYNC_STARTED,
            "system",
            {"attempt": attempt},
        )
        logger.info(
            "sync_started",
            extra={
                "request_id": str(request_id),
                "table_name": model.table_name,
                "operation_type": model.operation_type,
                "attempt": attempt,
            },
        )

        log = dict(model.sync_log or {})
        if is_bulk_form_data(model.form_data):
            external_id, failure, failure_detail, item_log = self._push_items(model, log)
            log["items"] = item_log
        else:
            external_id, failure, failure_detail = self._push_single(model)

        finished_at = self._clock.now()
        log["attempts"] = [
            *log.get("attempts", []),
            {
                "attempt": attempt,
                "started_at": started_at.isoformat(),
                "finished_at": finished_at.isoformat(),
                "outcome": ITEM_FAILED if failure else ITEM_SYNCED,
            },
        ]
        model.sync_log = log

        if failure is None:
            self._set_status(model, RegistrationStatus.SYNCED)
            model.sync_external_record_id = external_id
            model.synced_at = finished_at
            model.sync_error = None
            self._session.flush()
            self._auditor.record(
                request_id,
                RegistrationAuditAction.SYNC_SUCCEEDED,
                "system",
                {"attempt": attempt, "external_record_id": external_id},
            )
            logger.info(
                "sync_succeeded",
                extra={
                    "request_id": str(request_id),
                    "external_record_id": external_id,
                    "attempt": attempt,
                },
            )
        else:
            error = sync_error_payload(failure, failure_detail)
            self._set_status(model, RegistrationStatus.SYNC_FAILED)
            model.sync_error = error
            self._session.flush()
            self._auditor.record(
                request_id,
                RegistrationAuditAction.SYNC_FAILED,
                "system",
                {"attempt": attempt, "error": error},
            )
            logger.warning(
                "sync_failed",
                extra={
                    "request_id": str(request_id),
                    "attempt": attempt,
                    "error_code": error["code"],
                    "retryable": error["retryable"],
                    "partial_write_possible": error["partial_write_possible"],
                },
            )
        return model.to_dto()

    def _push_single(
        self, model: RegistrationRequestModel,
    ) -> tuple[str | None, ExternalSystemError | None, dict[str, Any]]:
        data = dict(model.form_data)
        try:
            if model.operation_type == OperationType.ALTERATION.value:
                self._store.update(model.table_name, model.external_record_id, data)
                return model.external_record_id, None, {}
            return self._store.create(model.table_name, data), None, {}
        except ExternalSystemError as exc:
            return None, exc, {}

    def _push_items(
        self,
        model: RegistrationRequestModel,
        log: dict[str, Any],
    ) -> tuple[
        str | None, ExternalSystemError | None, dict[str, Any], dict[str, Any],
    ]:
        item_log: dict[str, Any] = dict(log.get("items", {}))
        first_failure: ExternalSystemError | None = None
        failed_rows: list[Any] = []
        alteration = model.operation_type == OperationType.ALTERATION.value

        for index, item in enumerate(model.form_data.get(BULK_ITEMS, [])):
            key = str(index)
            previous = item_log.get(key, {})
            if previous.get("status") == ITEM_SYNCED:
                continue

            row_number = item.get("row_number")
            values = dict(item.get("values", {}))
            try:
                if alteration:
                    external_id = item["external_record_id"]
                    self._store.update(model.table_name, external_id, values)
                else:
                    external_id = self._store.create(model.table_name, values)
            except ExternalSystemError as exc:
                first_failure = first_failure or exc
                failed_rows.append(row_number)
                item_log[key] = {
                    "status": ITEM_FAILED,
                    "row_number": row_number,
                    "error_code": exc.code,
                    "message": str(exc),
                    "partial_write_possible": isinstance(exc, ExternalSystemTimeoutError),
                }
            else:
                item_log[key] = {
                    "status": ITEM_SYNCED,
                    "row_number": row_number,
                    "external_record_id": external_id,
                }

        synced = sum(1 for entry in item_log.values() if entry["status"] == ITEM_SYNCED)
        detail = {"failed_rows": failed_rows, "synced_items": synced}
        return None, first_failure, detail, item_log

    def _set_status(
        self,
        model: RegistrationRequestModel,
        to_status: RegistrationStatus,
    ) -> None:
        from_status = RegistrationStatus(model.status)
        if not is_valid_transition(from_status, to_status):
            raise InvalidRegistrationTransitionError(
                str(model.request_id), from_status.value, to_status.value,
            )
        model.status = to_status.value
