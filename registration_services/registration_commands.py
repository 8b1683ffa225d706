"""
registration_services.registration_commands -- Command runner for request operations.

Responsibility:
    The single entry point outer layers use to act on registration
    requests.  Every command opens its own transaction, builds the kernel
    services on that session, and commits; request-mutating commands
    also hold the request's mutex for the whole load -> mutation ->
    commit span.

Architecture position:
    Services -- stateful orchestration over kernel + ingestion.
    This module is the only place where kernel services, the record-store
    timeout guards and the template provider are composed.

Invariants enforced:
    - Per-request serialization: submit, approve, reject, send_back and
      retry_sync on one request never interleave within the process
      (``RequestLockRegistry``); across processes the request row lock
      and its version column decide (``OptimisticLockError``).
    - Operations on different requests run in parallel.
    - ERP calls run through ``GuardedRecordStore`` with the configured
      lookup or sync timeout.
    - A failed command leaves the database untouched (rollback).
    - The final approval (from approve, submit or submit_bulk) commits
      before the ERP push, which runs in a second transaction under the
      same mutex.  If that one fails the request stays APPROVED and
      retry_sync pushes it; a repeated approve is refused.

Failure modes:
    - RequestBusyError when the request's lock is not acquired within
      ``lock_timeout_seconds``.
    - OptimisticLockError when another process committed a change to the
      same request first.
    - Any kernel error raised by the underlying service, unchanged.

Audit relevance:
    Commands add no audit events of their own; the kernel services write
    them inside the same transaction as the state change.

Usage:
    commands = RegistrationCommands.from_config(get_active_config())
    draft = commands.create_draft("products", "joao.silva", {...})
    commands.submit(draft.request_id, "joao.silva")
    commands.approve(draft.request_id, "ana.souza")
"""

from __future__ import annotations

from contextlib import ExitStack, contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Generator, Sequence
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from registration_config.schema import RegistrationConfig
from registration_config.template_provider import ConfiguredTemplateProvider
from registration_ingestion.adapters.base import SourceRow
from registration_ingestion.domain.types import BulkImportResult, ClassificationResult
from registration_ingestion.services.reconciliation_service import ReconciliationEngine
from registration_ingestion.services.template_export import BulkTemplateExporter
from registration_kernel.db.engine import get_session_factory, session_scope
from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.domain.external import ExternalRecordStore, TemplateProvider
from registration_kernel.domain.registration import (
    BulkSubmitResult,
    FieldChange,
    RegistrationRequest,
    RegistrationStatus,
)
from registration_kernel.exceptions import OptimisticLockError, RequestBusyError
from registration_kernel.logging_config import LogContext, get_logger
from registration_kernel.services.approval_group_service import ApprovalGroupDirectory
from registration_kernel.services.approval_service import ApprovalService
from registration_kernel.services.auditor_service import RegistrationAuditor
from registration_kernel.services.field_change_recorder import FieldChangeRecorder
from registration_kernel.services.registration_service import RegistrationService
from registration_kernel.services.request_lock import RequestLockRegistry
from registration_kernel.services.sync_orchestrator import SyncOrchestrator
from registration_kernel.services.workflow_resolver import WorkflowSnapshotResolver
from registration_kernel.utils.timeouts import GuardedRecordStore

logger = get_logger("services.commands")

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0


class _Services:
    """Kernel services bound to one session."""

    def __init__(self, commands: RegistrationCommands, session: Session) -> None:
        clock = commands.clock
        self.session = session
        self.registrations = RegistrationService(
            session, commands.templates, commands.lookup_store, clock,
        )
        self.sync = SyncOrchestrator(session, commands.sync_store, clock)
        # Final approval commits before the ERP push; see _sync_approved.
        self.approvals = ApprovalService(
            session,
            WorkflowSnapshotResolver(session, ApprovalGroupDirectory(session, clock)),
            sync=None,
            clock=clock,
        )


class RegistrationCommands:
    """
    Transaction and lock scope around every registration operation.

    Contract:
        Each public method is one committed unit of work and returns
        plain DTOs (never ORM objects).  A final approval is two: the
        approval, then the ERP sync.

    Guarantees:
        - A request-mutating method holds the request's mutex until its
          transaction has committed or rolled back.
        - ``submit_bulk`` acquires its requests' mutexes in a fixed order,
          so two overlapping bulk submits cannot deadlock.
    """

    def __init__(
        self,
        templates: TemplateProvider,
        record_store: ExternalRecordStore,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        locks: RequestLockRegistry | None = None,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        lookup_timeout_seconds: float = 10.0,
        sync_timeout_seconds: float = 30.0,
        lookup_workers: int = 4,
        max_bulk_rows: int = 1000,
    ) -> None:
        self.templates = templates
        self.clock = clock or SystemClock()
        self.locks = locks or RequestLockRegistry()
        self.lookup_store = GuardedRecordStore(
            record_store, lookup_timeout_seconds, max_workers=lookup_workers,
        )
        self.sync_store = GuardedRecordStore(record_store, sync_timeout_seconds)
        self._session_factory = session_factory
        self._lock_timeout = lock_timeout_seconds
        self._lookup_workers = lookup_workers
        self._max_bulk_rows = max_bulk_rows

    @classmethod
    def from_config(
        cls,
        config: RegistrationConfig,
        record_store: ExternalRecordStore | None = None,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
    ) -> RegistrationCommands:
        """Build the runner from a loaded configuration set.

        Without ``record_store`` a ``RestRecordStore`` is created from the
        configured ERP settings.
        """
        if record_store is None:
            from registration_services.erp_client import RestRecordStore

            record_store = RestRecordStore(config.settings.erp)
        settings = config.settings
        return cls(
            templates=ConfiguredTemplateProvider(config),
            record_store=record_store,
            session_factory=session_factory,
            clock=clock,
            lookup_timeout_seconds=settings.lookup_timeout_seconds,
            sync_timeout_seconds=settings.sync_timeout_seconds,
            lookup_workers=settings.lookup_workers,
            max_bulk_rows=settings.max_bulk_rows,
        )

    def close(self) -> None:
        self.lookup_store.shutdown()
        self.sync_store.shutdown()

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(
        self, template_id: str, requester_id: str, form_data: dict[str, Any],
    ) -> RegistrationRequest:
        with LogContext.bind(actor_id=requester_id, template_id=template_id):
            with self._unit_of_work() as services:
                return services.registrations.create_draft(
                    template_id, requester_id, form_data,
                )

    def create_alteration_draft(
        self,
        template_id: str,
        requester_id: str,
        external_record_id: str,
        changes: dict[str, Any] | None = None,
    ) -> RegistrationRequest:
        with LogContext.bind(actor_id=requester_id, template_id=template_id):
            with self._unit_of_work() as services:
                return services.registrations.create_alteration_draft(
                    template_id, requester_id, external_record_id, changes,
                )

    def update_draft(
        self, request_id: UUID, actor_id: str, form_data: dict[str, Any],
    ) -> RegistrationRequest:
        with self._exclusive(request_id, actor_id) as services:
            return services.registrations.update_draft(request_id, actor_id, form_data)

    def delete_draft(self, request_id: UUID, actor_id: str) -> None:
        with self._exclusive(request_id, actor_id) as services:
            services.registrations.delete_draft(request_id, actor_id)

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def submit(self, request_id: UUID, actor_id: str) -> RegistrationRequest:
        with self._locked(request_id, actor_id):
            with self._unit_of_work(request_id) as services:
                submitted = services.approvals.submit(request_id, actor_id)
            return self._sync_approved(submitted)

    def submit_bulk(
        self, request_ids: Sequence[UUID], actor_id: str,
    ) -> BulkSubmitResult:
        ordered = sorted(dict.fromkeys(request_ids), key=str)
        with LogContext.bind(actor_id=actor_id):
            with ExitStack() as stack:
                for request_id in ordered:
                    stack.enter_context(self._hold(request_id))
                with self._unit_of_work(request_id=None) as services:
                    result = services.approvals.submit_bulk(list(request_ids), actor_id)
                outcomes = tuple(
                    replace(outcome, status=self._push_approved(outcome.request_id).status)
                    if outcome.status == RegistrationStatus.APPROVED
                    else outcome
                    for outcome in result.results
                )
                return replace(result, results=outcomes)

    def approve(
        self,
        request_id: UUID,
        actor_id: str,
        comments: str | None = None,
        field_edits: dict[Any, Any] | None = None,
    ) -> RegistrationRequest:
        with self._locked(request_id, actor_id):
            with self._unit_of_work(request_id) as services:
                approved = services.approvals.approve(
                    request_id, actor_id, comments=comments, field_edits=field_edits,
                )
            return self._sync_approved(approved)

    def reject(self, request_id: UUID, actor_id: str, reason: str) -> RegistrationRequest:
        with self._exclusive(request_id, actor_id) as services:
            return services.approvals.reject(request_id, actor_id, reason)

    def send_back(
        self,
        request_id: UUID,
        actor_id: str,
        reason: str,
        target_level: int | None = None,
    ) -> RegistrationRequest:
        with self._exclusive(request_id, actor_id) as services:
            return services.approvals.send_back(
                request_id, actor_id, reason, target_level=target_level,
            )

    def retry_sync(self, request_id: UUID, actor_id: str) -> RegistrationRequest:
        with self._exclusive(request_id, actor_id) as services:
            return services.sync.retry_sync(request_id, actor_id)

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    def classify_file(self, template_id: str, source_path: Path) -> ClassificationResult:
        """Preview a spreadsheet's classification without creating drafts."""
        with LogContext.bind(template_id=template_id):
            with self._unit_of_work() as services:
                engine = self._reconciliation(services)
                upload = engine.parse_file(source_path)
                return engine.classify(
                    template_id,
                    upload.rows,
                    columns=upload.columns,
                    source_template_id=upload.source_template_id,
                )

    def import_file(
        self, template_id: str, source_path: Path, requester_id: str,
    ) -> BulkImportResult:
        with LogContext.bind(actor_id=requester_id, template_id=template_id):
            with self._unit_of_work() as services:
                return self._reconciliation(services).import_file(
                    template_id, source_path, requester_id,
                )

    def import_rows(
        self,
        template_id: str,
        rows: Sequence[SourceRow | dict[str, Any]],
        requester_id: str,
        columns: Sequence[str] | None = None,
    ) -> BulkImportResult:
        with LogContext.bind(actor_id=requester_id, template_id=template_id):
            with self._unit_of_work() as services:
                return self._reconciliation(services).import_rows(
                    template_id, rows, requester_id, columns=columns,
                )

    def generate_template(self, template_id: str, fmt: str = "xlsx") -> bytes:
        return BulkTemplateExporter(self.templates).generate_template(template_id, fmt)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, request_id: UUID) -> RegistrationRequest:
        with self._unit_of_work() as services:
            return services.registrations.get(request_id)

    def list_requests(
        self,
        status: RegistrationStatus | None = None,
        requester_id: str | None = None,
        template_id: str | None = None,
    ) -> list[RegistrationRequest]:
        with self._unit_of_work() as services:
            return services.registrations.list_requests(
                status=status, requester_id=requester_id, template_id=template_id,
            )

    def pending_approvals_for(self, approver_id: str) -> list[RegistrationRequest]:
        with self._unit_of_work() as services:
            return services.registrations.pending_approvals_for(approver_id)

    def field_changes(self, request_id: UUID) -> list[FieldChange]:
        with self._unit_of_work() as services:
            services.registrations.get(request_id)
            return FieldChangeRecorder(services.session, self.clock).history(request_id)

    def audit_history(self, request_id: UUID) -> list[dict[str, Any]]:
        with self._unit_of_work() as services:
            auditor = RegistrationAuditor(services.session, self.clock)
            return [
                {
                    "seq": event.seq,
                    "action": event.action,
                    "actor_id": event.actor_id,
                    "occurred_at": event.occurred_at.isoformat(),
                    "payload": event.payload,
                }
                for event in auditor.history(request_id)
            ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _hold(self, request_id: UUID) -> Generator[None, None, None]:
        acquired = False
        try:
            with self.locks.hold(request_id, timeout=self._lock_timeout):
                acquired = True
                yield
        except TimeoutError as exc:
            if acquired:
                raise
            raise RequestBusyError(str(request_id), self._lock_timeout) from exc

    @contextmanager
    def _locked(self, request_id: UUID, actor_id: str) -> Generator[None, None, None]:
        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            with self._hold(request_id):
                yield

    @contextmanager
    def _exclusive(
        self, request_id: UUID, actor_id: str,
    ) -> Generator[_Services, None, None]:
        with self._locked(request_id, actor_id):
            with self._unit_of_work(request_id) as services:
                yield services

    def _sync_approved(self, request: RegistrationRequest) -> RegistrationRequest:
        if request.status != RegistrationStatus.APPROVED:
            return request
        return self._push_approved(request.request_id)

    def _push_approved(self, request_id: UUID) -> RegistrationRequest:
        """Sync a request whose final approval has already committed.

        Must be called with the request's mutex held.  An error here
        leaves the request APPROVED; ``retry_sync`` picks it up.
        """
        logger.info("sync_after_approval", extra={"request_id": str(request_id)})
        with self._unit_of_work(request_id) as services:
            return services.sync.sync(request_id)

    @contextmanager
    def _unit_of_work(
        self, request_id: UUID | None = None,
    ) -> Generator[_Services, None, None]:
        factory = self._session_factory or get_session_factory()
        try:
            with session_scope(factory) as session:
                yield _Services(self, session)
        except StaleDataError as exc:
            logger.warning(
                "optimistic_lock_conflict",
                extra={"request_id": str(request_id) if request_id else None},
            )
            raise OptimisticLockError(
                "RegistrationRequest", str(request_id) if request_id else "-",
            ) from exc

    def _reconciliation(self, services: _Services) -> ReconciliationEngine:
        return ReconciliationEngine(
            services.session,
            self.templates,
            self.lookup_store,
            clock=self.clock,
            lookup_workers=self._lookup_workers,
            max_bulk_rows=self._max_bulk_rows,
        )


__all__ = ["RegistrationCommands"]
