"""
RegistrationService -- draft lifecycle and read access for requests.

Responsibility:
    Create single, alteration and bulk drafts; let the requester edit or
    delete a draft; load requests (verifying their frozen snapshot);
    list requests and an approver's pending work.

Architecture position:
    Kernel > Services -- imperative shell.  Used directly by outer layers
    and by the reconciliation import.  Never commits.

Invariants enforced:
    - Only the requester may update or delete a draft, and only in DRAFT.
    - An ALTERATION draft always carries original_form_data and an
      external record reference (request-level or per item).
    - Every load of a submitted request re-hashes its workflow snapshot;
      a mismatch raises SnapshotTamperedError.
    - JSON columns are reassigned, never mutated in place.

Failure modes:
    - RegistrationNotFoundError, NotRequesterError, DraftNotEditableError.
    - ExternalRecordNotFoundError when an alteration targets a missing
      ERP record.
    - AlterationBaselineMissingError for alteration items without a
      baseline or external reference, and for an ERP record that comes
      back with no values.
    - TemplateNotFoundError from the template provider.

Audit relevance:
    DRAFT_CREATED / DRAFT_UPDATED / DRAFT_DELETED events.  Field changes
    and audit events are not tied to the request row, so deleting a draft
    keeps its history.
"""

from __future__ import annotations

from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.domain.external import (
    ExternalRecordStore,
    TemplateProvider,
)
from registration_kernel.domain.registration import (
    APPROVAL_OPEN_STATUSES,
    BULK_ITEMS,
    ApprovalAction,
    OperationType,
    RegistrationRequest,
    RegistrationStatus,
    build_bulk_form_data,
    is_bulk_form_data,
)
from registration_kernel.exceptions import (
    AlterationBaselineMissingError,
    DraftNotEditableError,
    ExternalRecordNotFoundError,
    NotRequesterError,
    RegistrationNotFoundError,
    SnapshotTamperedError,
)
from registration_kernel.logging_config import get_logger
from registration_kernel.models.audit_event import RegistrationAuditAction
from registration_kernel.models.registration import (
    ApprovalRecordModel,
    RegistrationRequestModel,
)
from registration_kernel.services.auditor_service import RegistrationAuditor
from registration_kernel.services.tracking_service import TrackingNumberService
from registration_kernel.utils.hashing import hash_payload

logger = get_logger("services.registration")


# =========================================================================
# Shared loading helpers
# =========================================================================


def load_request_model(
    session: Session,
    request_id: UUID,
    for_update: bool = False,
) -> RegistrationRequestModel:
    """Load a request row, optionally locking it (SELECT ... FOR UPDATE).

    Raises:
        RegistrationNotFoundError: if no such request exists.
    """
    stmt = select(RegistrationRequestModel).where(
        RegistrationRequestModel.request_id == request_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    model = session.execute(stmt).scalar_one_or_none()
    if model is None:
        raise RegistrationNotFoundError(str(request_id))
    return model


def verify_snapshot(model: RegistrationRequestModel) -> None:
    """Re-hash the stored snapshot and compare with the stored hash.

    Raises:
        SnapshotTamperedError: if the two differ.
    """
    if model.workflow_snapshot is None:
        return
    computed = hash_payload(model.workflow_snapshot)
    if computed != model.snapshot_hash:
        logger.error(
            "snapshot_tamper_detected",
            extra={
                "request_id": str(model.request_id),
                "expected_hash": model.snapshot_hash,
                "computed_hash": computed,
            },
        )
        raise SnapshotTamperedError(
            str(model.request_id), model.snapshot_hash or "", computed,
        )


class RegistrationService:
    """
    Draft CRUD and queries for registration requests.

    Contract:
        All write methods flush; the caller commits.

    Non-goals:
        - Does NOT validate field values against template rules; bulk
          rows are validated by the reconciliation engine, and single
          drafts are validated by the outer form layer.
    """

    def __init__(
        self,
        session: Session,
        templates: TemplateProvider,
        record_store: ExternalRecordStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._templates = templates
        self._record_store = record_store
        self._clock = clock or SystemClock()
        self._auditor = RegistrationAuditor(session, self._clock)
        self._tracking = TrackingNumberService(session, self._clock)

    # ------------------------------------------------------------------
    # Draft creation
    # ------------------------------------------------------------------

    def create_draft(
        self,
        template_id: str,
        requester_id: str,
        form_data: dict[str, Any],
    ) -> RegistrationRequest:
        """Create a DRAFT request for a new ERP record."""
        template = self._templates.get_template(template_id)
        model = self._new_model(
            template_id=template_id,
            table_name=template.table_name,
            operation_type=OperationType.NEW,
            requester_id=requester_id,
            form_data=dict(form_data),
        )
        return self._finish_create(model)

    def create_alteration_draft(
        self,
        template_id: str,
        requester_id: str,
        external_record_id: str,
        changes: dict[str, Any] | None = None,
    ) -> RegistrationRequest:
        """Create a DRAFT that alters an existing ERP record.

        The current ERP values become ``original_form_data``; ``changes``
        are applied on top to form the working data.
        """
        template = self._templates.get_template(template_id)
        if self._record_store is None:
            raise AlterationBaselineMissingError(
                None, "no external record store configured",
            )
        record = self._record_store.get_by_identifier(
            template.table_name, external_record_id,
        )
        if record is None:
            raise ExternalRecordNotFoundError(template.table_name, external_record_id)
        if not record.values:
            raise AlterationBaselineMissingError(
                None,
                f"{template.table_name} record {external_record_id} has no values",
            )

        original = dict(record.values)
        model = self._new_model(
            template_id=template_id,
            table_name=template.table_name,
            operation_type=OperationType.ALTERATION,
            requester_id=requester_id,
            form_data={**original, **(changes or {})},
            original_form_data=original,
            external_record_id=external_record_id,
        )
        return self._finish_create(model)

    def create_bulk_draft(
        self,
        template_id: str,
        requester_id: str,
        operation_type: OperationType,
        items: Sequence[dict[str, Any]],
        original_items: Sequence[dict[str, Any]] | None = None,
    ) -> RegistrationRequest:
        """Create one multi-item DRAFT.

        ``items`` are ``{"row_number", "values", "external_record_id"}``
        dicts.  For ALTERATION, ``original_items`` holds the baseline of
        each item in the same order.
        """
        template = self._templates.get_template(template_id)
        item_list = [dict(item) for item in items]

        original_form_data: dict[str, Any] | None = None
        if operation_type == OperationType.ALTERATION:
            originals = list(original_items or ())
            if len(originals) != len(item_list):
                raise AlterationBaselineMissingError(
                    None,
                    f"{len(item_list)} item(s) but {len(originals)} baseline(s)",
                )
            for item, original in zip(item_list, originals):
                if not item.get("external_record_id") or not original.get("values"):
                    raise AlterationBaselineMissingError(
                        None,
                        f"row {item.get('row_number')} has no external "
                        f"reference or baseline",
                    )
            original_form_data = build_bulk_form_data(
                [dict(original) for original in originals]
            )

        model = self._new_model(
            template_id=template_id,
            table_name=template.table_name,
            operation_type=operation_type,
            requester_id=requester_id,
            form_data=build_bulk_form_data(item_list),
            original_form_data=original_form_data,
        )
        return self._finish_create(model)

    # ------------------------------------------------------------------
    # Draft editing
    # ------------------------------------------------------------------

    def update_draft(
        self,
        request_id: UUID,
        actor_id: str,
        form_data: dict[str, Any],
    ) -> RegistrationRequest:
        """Replace a draft's working data (requester only, DRAFT only)."""
        model = self._load_editable_draft(request_id, actor_id)
        if is_bulk_form_data(model.form_data) and not is_bulk_form_data(form_data):
            raise ValueError("bulk draft data must stay in bulk form")
        model.form_data = dict(form_data)
        self._session.flush()

        self._auditor.record(
            request_id,
            RegistrationAuditAction.DRAFT_UPDATED,
            actor_id,
            {"fields": sorted(k for k in form_data if k != BULK_ITEMS)},
        )
        logger.info("draft_updated", extra={"request_id": str(request_id)})
        return model.to_dto()

    def delete_draft(self, request_id: UUID, actor_id: str) -> None:
        """Hard-delete a draft.  Its audit trail and field changes remain."""
        model = self._load_editable_draft(request_id, actor_id)
        tracking_number = model.tracking_number
        self._session.delete(model)
        self._session.flush()

        self._auditor.record(
            request_id,
            RegistrationAuditAction.DRAFT_DELETED,
            actor_id,
            {"tracking_number": tracking_number},
        )
        logger.info("draft_deleted", extra={"request_id": str(request_id)})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, request_id: UUID) -> RegistrationRequest:
        model = load_request_model(self._session, request_id)
        verify_snapshot(model)
        return model.to_dto()

    def list_requests(
        self,
        status: RegistrationStatus | None = None,
        requester_id: str | None = None,
        template_id: str | None = None,
    ) -> list[RegistrationRequest]:
        """Requests matching every given filter, newest first."""
        stmt = select(RegistrationRequestModel)
        if status is not None:
            stmt = stmt.where(RegistrationRequestModel.status == status.value)
        if requester_id is not None:
            stmt = stmt.where(RegistrationRequestModel.requester_id == requester_id)
        if template_id is not None:
            stmt = stmt.where(RegistrationRequestModel.template_id == template_id)
        stmt = stmt.order_by(RegistrationRequestModel.created_at.desc())
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    def pending_approvals_for(self, approver_id: str) -> list[RegistrationRequest]:
        """Requests waiting on ``approver_id`` at their current level."""
        stmt = (
            select(RegistrationRequestModel)
            .join(
                ApprovalRecordModel,
                ApprovalRecordModel.request_id == RegistrationRequestModel.request_id,
            )
            .where(
                ApprovalRecordModel.approver_id == approver_id,
                ApprovalRecordModel.action == ApprovalAction.PENDING.value,
                ApprovalRecordModel.level == RegistrationRequestModel.current_level,
                RegistrationRequestModel.status.in_(
                    [s.value for s in APPROVAL_OPEN_STATUSES]
                ),
            )
            .order_by(RegistrationRequestModel.submitted_at)
        )
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_model(
        self,
        template_id: str,
        table_name: str,
        operation_type: OperationType,
        requester_id: str,
        form_data: dict[str, Any],
        original_form_data: dict[str, Any] | None = None,
        external_record_id: str | None = None,
    ) -> RegistrationRequestModel:
        return RegistrationRequestModel(
            request_id=uuid4(),
            tracking_number=self._tracking.next_tracking_number(),
            template_id=template_id,
            table_name=table_name,
            operation_type=operation_type.value,
            requester_id=requester_id,
            status=RegistrationStatus.DRAFT.value,
            current_level=0,
            form_data=form_data,
            original_form_data=original_form_data,
            external_record_id=external_record_id,
            sync_attempts=0,
            created_at=self._clock.now(),
        )

    def _finish_create(self, model: RegistrationRequestModel) -> RegistrationRequest:
        self._session.add(model)
        self._session.flush()

        item_count = None
        if is_bulk_form_data(model.form_data):
            item_count = len(model.form_data.get(BULK_ITEMS, []))
        self._auditor.record(
            model.request_id,
            RegistrationAuditAction.DRAFT_CREATED,
            model.requester_id,
            {
                "tracking_number": model.tracking_number,
                "template_id": model.template_id,
                "operation_type": model.operation_type,
                "external_record_id": model.external_record_id,
                "item_count": item_count,
            },
        )
        logger.info(
            "draft_created",
            extra={
                "request_id": str(model.request_id),
                "tracking_number": model.tracking_number,
                "template_id": model.template_id,
                "operation_type": model.operation_type,
                "item_count": item_count,
            },
        )
        return model.to_dto()

    def _load_editable_draft(
        self, request_id: UUID, actor_id: str,
    ) -> RegistrationRequestModel:
        model = load_request_model(self._session, request_id, for_update=True)
        if model.requester_id != actor_id:
            raise NotRequesterError(str(request_id), actor_id)
        if model.status != RegistrationStatus.DRAFT.value:
            raise DraftNotEditableError(str(request_id), model.status)
        return model
