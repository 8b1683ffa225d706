"""
ApprovalService -- the registration approval state machine.

Responsibility:
    Drive a request through its frozen workflow: submit, approve (with
    optional field edits), reject, send back, and bulk submit.  Final
    approval hands the request to the SyncOrchestrator exactly once.

Architecture position:
    Kernel > Services -- imperative shell around the pure
    ``registration_engines.approval`` evaluations.  Engine failure
    variants are mapped onto typed exceptions here; no business rule is
    decided in this module that the engine can decide.

Invariants enforced:
    - Transitions follow REGISTRATION_TRANSITIONS; anything else raises
      InvalidRegistrationTransitionError.
    - The snapshot is resolved once, at first submission, and reused on
      resubmission after a send-back to DRAFT.
    - current_level stays within [0, snapshot.level_count].
    - The requester never gets an approval record and can never act.
    - Field edits are all-or-nothing and each distinct change is recorded
      before the approval itself.
    - Bulk requests take edits per item, ``{row_number: {field: value}}``;
      they land in that item's values and are recorded as
      ``items[<row>].<field>``.  Flat edits on a bulk request are refused.
    - Send-back copies every discarded approval record into the SENT_BACK
      audit event before deleting it; field changes are kept.

Failure modes:
    - ApprovalAlreadyTerminalError once approval has ended.
    - SelfApprovalForbiddenError, NotAnApproverError,
      ApproverAlreadyActedError, NotRequesterError.
    - FieldNotEditableError, RejectReasonRequiredError,
      SendBackReasonRequiredError, InvalidTargetLevelError.
    - Workflow resolution errors from WorkflowSnapshotResolver on submit.
    - With a SyncOrchestrator attached the ERP push runs inside the
      caller's transaction, so a failed commit after the push undoes the
      approval while the ERP keeps the record.  RegistrationCommands builds
      this service without one and syncs after committing.

Audit relevance:
    SUBMITTED, APPROVED, FIELDS_EDITED, LEVEL_ADVANCED, FULLY_APPROVED,
    REJECTED, SENT_BACK events, all chained per request.
"""

from __future__ import annotations

import copy
from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from registration_engines.approval import (
    ActorAuthorization,
    ApprovalFailure,
    FieldEditEvaluation,
    advance_after_level,
    authorize_decision,
    evaluate_field_edits,
    evaluate_item_field_edits,
    evaluate_level,
    plan_level_approvers,
    plan_send_back,
)
from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.domain.registration import (
    ApprovalAction,
    BulkSubmitResult,
    RegistrationRequest,
    RegistrationStatus,
    SubmitOutcome,
    build_bulk_form_data,
    is_valid_transition,
)
from registration_kernel.domain.workflow import LevelApprovalMode, WorkflowSnapshot
from registration_kernel.exceptions import (
    ApprovalAlreadyTerminalError,
    ApproverAlreadyActedError,
    FieldNotEditableError,
    InvalidRegistrationTransitionError,
    InvalidTargetLevelError,
    NotAnApproverError,
    NotRequesterError,
    RegistrationKernelError,
    RejectReasonRequiredError,
    SelfApprovalForbiddenError,
    SendBackReasonRequiredError,
)
from registration_kernel.logging_config import get_logger
from registration_kernel.models.audit_event import RegistrationAuditAction
from registration_kernel.models.registration import (
    ApprovalRecordModel,
    RegistrationRequestModel,
)
from registration_kernel.services.auditor_service import RegistrationAuditor
from registration_kernel.services.field_change_recorder import FieldChangeRecorder
from registration_kernel.services.registration_service import (
    load_request_model,
    verify_snapshot,
)
from registration_kernel.services.sync_orchestrator import SyncOrchestrator
from registration_kernel.services.workflow_resolver import WorkflowSnapshotResolver

logger = get_logger("services.approval")


class ApprovalService:
    """
    Approval state machine over persisted requests.

    Contract:
        Every method loads the request with SELECT ... FOR UPDATE, applies
        one transition, flushes, and returns the new DTO.  The caller owns
        the transaction and the per-request lock
        (see ``registration_services.registration_commands``).

    Non-goals:
        - Does NOT commit.
        - Does NOT retry sync; retry is user-triggered via SyncOrchestrator.
    """

    def __init__(
        self,
        session: Session,
        resolver: WorkflowSnapshotResolver,
        sync: SyncOrchestrator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._resolver = resolver
        self._sync = sync
        self._clock = clock or SystemClock()
        self._auditor = RegistrationAuditor(session, self._clock)
        self._field_changes = FieldChangeRecorder(session, self._clock)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def submit(self, request_id: UUID, actor_id: str) -> RegistrationRequest:
        model = self._load(request_id)
        current = RegistrationStatus(model.status)
        if current != RegistrationStatus.DRAFT:
            raise InvalidRegistrationTransitionError(
                str(request_id), current.value,
                RegistrationStatus.PENDING_APPROVAL.value,
            )
        if actor_id != model.requester_id:
            raise NotRequesterError(str(request_id), actor_id)

        resubmission = model.workflow_snapshot is not None
        if resubmission:
            snapshot = WorkflowSnapshot.from_dict(model.workflow_snapshot)
        else:
            snapshot = self._resolver.resolve(model.template_id, model.requester_id)
            model.workflow_snapshot = snapshot.to_dict()
            model.snapshot_hash = snapshot.snapshot_hash()

        now = self._clock.now()
        self._transition(model, RegistrationStatus.PENDING_APPROVAL)
        model.submitted_at = now
        self._session.flush()

        self._auditor.record(
            request_id,
            RegistrationAuditAction.SUBMITTED,
            actor_id,
            {
                "workflow_id": snapshot.workflow_id,
                "snapshot_hash": model.snapshot_hash,
                "level_count": snapshot.level_count,
                "resubmission": resubmission,
            },
        )

        if snapshot.level_count == 0:
            self._complete_approval(model, actor_id)
        else:
            self._activate_level(model, snapshot, 1)
            self._transition(model, RegistrationStatus.IN_APPROVAL)
            self._session.flush()

        logger.info(
            "registration_submitted",
            extra={
                "request_id": str(request_id),
                "status": model.status,
                "current_level": model.current_level,
                "level_count": snapshot.level_count,
                "resubmission": resubmission,
            },
        )
        return self._after_final(model)

    def submit_bulk(
        self,
        request_ids: Sequence[UUID],
        actor_id: str,
    ) -> BulkSubmitResult:
        """Submit several drafts; each runs in its own savepoint."""
        results: list[SubmitOutcome] = []
        for request_id in request_ids:
            try:
                with self._session.begin_nested():
                    dto = self.submit(request_id, actor_id)
            except RegistrationKernelError as exc:
                logger.warning(
                    "bulk_submit_item_failed",
                    extra={"request_id": str(request_id), "error_code": exc.code},
                )
                results.append(
                    SubmitOutcome(
                        request_id=request_id,
                        success=False,
                        error_code=exc.code,
                        error_message=str(exc),
                    )
                )
            else:
                results.append(
                    SubmitOutcome(request_id=request_id, success=True, status=dto.status)
                )

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "bulk_submit_completed",
            extra={
                "total": len(results),
                "succeeded": succeeded,
                "failed": len(results) - succeeded,
            },
        )
        return BulkSubmitResult(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=tuple(results),
        )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def approve(
        self,
        request_id: UUID,
        actor_id: str,
        comments: str | None = None,
        field_edits: dict[Any, Any] | None = None,
    ) -> RegistrationRequest:
        model = self._load(request_id)
        request = model.to_dto()
        self._authorize(request, actor_id, RegistrationStatus.APPROVED)

        snapshot = request.workflow_snapshot
        level_no = model.current_level
        level = snapshot.level(level_no)

        if request.is_bulk:
            edits = evaluate_item_field_edits(level, request.items, field_edits)
        else:
            edits = evaluate_field_edits(level, request.form_data, field_edits)
        if not edits.allowed:
            raise FieldNotEditableError(
                str(request_id), level_no, list(edits.rejected_fields),
            )
        if edits.changes:
            self._apply_field_edits(model, actor_id, level_no, edits)

        now = self._clock.now()
        record = self._record_for(model, level_no, actor_id)
        record.action = ApprovalAction.APPROVED.value
        record.comments = comments
        record.acted_at = now

        self._auditor.record(
            request_id,
            RegistrationAuditAction.APPROVED,
            actor_id,
            {"level": level_no, "comments": comments},
        )

        level_records = tuple(
            a.to_dto() for a in model.approvals if a.level == level_no
        )
        evaluation = evaluate_level(level_records, level.approval_mode)

        if not evaluation.complete:
            self._session.flush()
            logger.info(
                "approval_recorded",
                extra={
                    "request_id": str(request_id),
                    "level": level_no,
                    "pending_count": evaluation.pending_count,
                },
            )
            return model.to_dto()

        if level.approval_mode == LevelApprovalMode.ANY_ONE:
            for other in model.approvals:
                if other.level == level_no and other.action == ApprovalAction.PENDING.value:
                    other.action = ApprovalAction.SKIPPED.value
                    other.acted_at = now

        advance = advance_after_level(snapshot, level_no, model.requester_id)
        if advance.final:
            self._complete_approval(model, actor_id)
        else:
            self._activate_level(model, snapshot, advance.next_level)
            self._transition(model, RegistrationStatus.IN_APPROVAL)
            self._session.flush()
            self._auditor.record(
                request_id,
                RegistrationAuditAction.LEVEL_ADVANCED,
                actor_id,
                {
                    "from_level": level_no,
                    "to_level": advance.next_level,
                    "approvers": list(advance.next_approvers),
                },
            )

        logger.info(
            "approval_recorded",
            extra={
                "request_id": str(request_id),
                "level": level_no,
                "level_complete": True,
                "status": model.status,
                "current_level": model.current_level,
            },
        )
        return self._after_final(model)

    def reject(
        self,
        request_id: UUID,
        actor_id: str,
        reason: str,
    ) -> RegistrationRequest:
        model = self._load(request_id)
        self._authorize(model.to_dto(), actor_id, RegistrationStatus.REJECTED)
        if not reason or not reason.strip():
            raise RejectReasonRequiredError(str(request_id))

        level_no = model.current_level
        now = self._clock.now()
        record = self._record_for(model, level_no, actor_id)
        record.action = ApprovalAction.REJECTED.value
        record.comments = reason
        record.acted_at = now

        self._transition(model, RegistrationStatus.REJECTED)
        model.resolved_at = now
        self._session.flush()

        self._auditor.record(
            request_id,
            RegistrationAuditAction.REJECTED,
            actor_id,
            {"level": level_no, "reason": reason},
        )
        logger.info(
            "registration_rejected",
            extra={"request_id": str(request_id), "level": level_no},
        )
        return model.to_dto()

    def send_back(
        self,
        request_id: UUID,
        actor_id: str,
        reason: str,
        target_level: int | None = None,
    ) -> RegistrationRequest:
        model = self._load(request_id)
        request = model.to_dto()
        self._authorize(request, actor_id, RegistrationStatus.DRAFT)
        if not reason or not reason.strip():
            raise SendBackReasonRequiredError(str(request_id))

        from_level = model.current_level
        plan = plan_send_back(from_level, target_level)
        if not plan.valid:
            raise InvalidTargetLevelError(str(request_id), plan.target_level, from_level)

        discarded = [
            a for a in model.approvals
            if plan.to_draft or a.level >= plan.target_level
        ]
        discarded_payload = [
            {
                "record_id": str(a.record_id),
                "level": a.level,
                "approver_id": a.approver_id,
                "action": a.action,
                "comments": a.comments,
                "acted_at": a.acted_at.isoformat() if a.acted_at else None,
            }
            for a in discarded
        ]
        model.approvals = [a for a in model.approvals if a not in discarded]
        # Deletes must reach the DB before fresh records reuse their keys
        self._session.flush()

        if plan.to_draft:
            self._transition(model, RegistrationStatus.DRAFT)
            model.current_level = 0
        else:
            self._activate_level(model, request.workflow_snapshot, plan.target_level)
            self._transition(model, RegistrationStatus.IN_APPROVAL)
        self._session.flush()

        self._auditor.record(
            request_id,
            RegistrationAuditAction.SENT_BACK,
            actor_id,
            {
                "from_level": from_level,
                "to_level": plan.target_level,
                "reason": reason,
                "discarded_records": discarded_payload,
            },
        )
        logger.info(
            "registration_sent_back",
            extra={
                "request_id": str(request_id),
                "from_level": from_level,
                "to_level": plan.target_level,
                "discarded_count": len(discarded_payload),
            },
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, request_id: UUID) -> RegistrationRequestModel:
        model = load_request_model(self._session, request_id, for_update=True)
        verify_snapshot(model)
        return model

    def _transition(
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

    def _authorize(
        self,
        request: RegistrationRequest,
        actor_id: str,
        intended: RegistrationStatus,
    ) -> ActorAuthorization:
        auth = authorize_decision(request, actor_id)
        if auth.authorized:
            return auth

        request_id = str(request.request_id)
        level = request.current_level
        if auth.failure == ApprovalFailure.APPROVAL_ENDED:
            raise ApprovalAlreadyTerminalError(request_id, request.status.value)
        if auth.failure == ApprovalFailure.NOT_IN_APPROVAL:
            raise InvalidRegistrationTransitionError(
                request_id, request.status.value, intended.value,
            )
        if auth.failure == ApprovalFailure.SELF_APPROVAL:
            raise SelfApprovalForbiddenError(request_id, actor_id)
        if auth.failure == ApprovalFailure.NOT_AN_APPROVER:
            raise NotAnApproverError(request_id, actor_id, level)
        raise ApproverAlreadyActedError(
            request_id, actor_id, level, auth.record.action.value,
        )

    def _record_for(
        self,
        model: RegistrationRequestModel,
        level: int,
        approver_id: str,
    ) -> ApprovalRecordModel:
        return next(
            a for a in model.approvals
            if a.level == level and a.approver_id == approver_id
        )

    def _activate_level(
        self,
        model: RegistrationRequestModel,
        snapshot: WorkflowSnapshot,
        level: int,
    ) -> None:
        now = self._clock.now()
        for approver_id in plan_level_approvers(snapshot, level, model.requester_id):
            model.approvals.append(
                ApprovalRecordModel(
                    record_id=uuid4(),
                    request_id=model.request_id,
                    level=level,
                    approver_id=approver_id,
                    action=ApprovalAction.PENDING.value,
                    created_at=now,
                )
            )
        model.current_level = level

    def _apply_field_edits(
        self,
        model: RegistrationRequestModel,
        actor_id: str,
        level: int,
        edits: FieldEditEvaluation,
    ) -> None:
        changes = edits.changes
        for field_name, previous, new in changes:
            self._field_changes.record(
                model.request_id, field_name, previous, new, actor_id, level,
            )
        if edits.item_changes:
            items = copy.deepcopy(model.to_dto().items)
            by_row = {item["row_number"]: item for item in items}
            for row_number, field_name, _, new in edits.item_changes:
                values = dict(by_row[row_number].get("values") or {})
                values[field_name] = new
                by_row[row_number]["values"] = values
            model.form_data = build_bulk_form_data(items)
        else:
            model.form_data = {
                **model.form_data,
                **{field_name: new for field_name, _, new in changes},
            }
        self._auditor.record(
            model.request_id,
            RegistrationAuditAction.FIELDS_EDITED,
            actor_id,
            {
                "level": level,
                "changes": [
                    {"field": f, "previous": p, "new": n} for f, p, n in changes
                ],
            },
        )

    def _complete_approval(
        self,
        model: RegistrationRequestModel,
        actor_id: str,
    ) -> None:
        self._transition(model, RegistrationStatus.APPROVED)
        model.resolved_at = self._clock.now()
        self._session.flush()
        self._auditor.record(
            model.request_id,
            RegistrationAuditAction.FULLY_APPROVED,
            actor_id,
            {"final_level": model.current_level},
        )
        logger.info(
            "registration_approved",
            extra={"request_id": str(model.request_id)},
        )

    def _after_final(self, model: RegistrationRequestModel) -> RegistrationRequest:
        if model.status == RegistrationStatus.APPROVED.value and self._sync is not None:
            return self._sync.sync(model.request_id)
        return model.to_dto()
