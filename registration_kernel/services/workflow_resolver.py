"""
WorkflowSnapshotResolver -- freeze the active workflow onto a request.

Responsibility:
    Load the single active workflow of a template, validate its levels,
    expand approver groups through the identity provider, and return an
    immutable ``WorkflowSnapshot``.

Architecture position:
    Kernel > Services.  Reads live workflow definitions; produces a pure
    domain value.  Called by ApprovalService.submit.

Invariants enforced:
    - Exactly one active workflow per template at resolution time.
    - Level orders contiguous from 1, no duplicates.
    - Every level has a non-empty expanded approver set, and (when the
      requester is known) at least one approver other than the requester.
    - Group membership is read once; the snapshot never re-reads it.

Failure modes:
    - NoActiveWorkflowError: zero or several active workflows.
    - MalformedWorkflowError: gap, duplicate, or empty level.
    - SelfApprovalForbiddenError: a level only the requester could approve.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from registration_kernel.domain.external import IdentityProvider
from registration_kernel.domain.workflow import (
    LevelApprovalMode,
    WorkflowLevel,
    WorkflowSnapshot,
)
from registration_kernel.exceptions import (
    MalformedWorkflowError,
    NoActiveWorkflowError,
    SelfApprovalForbiddenError,
)
from registration_kernel.logging_config import get_logger
from registration_kernel.models.workflow import RegistrationWorkflowModel

logger = get_logger("services.workflow_resolver")


class WorkflowSnapshotResolver:
    """
    Resolves the active workflow of a template into a frozen snapshot.

    Contract:
        resolve(template_id, requester_id) -> WorkflowSnapshot

    Non-goals:
        - Does NOT persist the snapshot; the caller stores it on the request.
    """

    def __init__(self, session: Session, identity: IdentityProvider) -> None:
        self._session = session
        self._identity = identity

    def resolve(
        self,
        template_id: str,
        requester_id: str | None = None,
    ) -> WorkflowSnapshot:
        active = list(
            self._session.execute(
                select(RegistrationWorkflowModel).where(
                    RegistrationWorkflowModel.template_id == template_id,
                    RegistrationWorkflowModel.is_active.is_(True),
                )
            ).scalars()
        )
        if len(active) != 1:
            logger.warning(
                "workflow_resolution_failed",
                extra={"template_id": template_id, "active_count": len(active)},
            )
            raise NoActiveWorkflowError(template_id, active_count=len(active))

        workflow = active[0]
        workflow_id = str(workflow.workflow_id)
        definitions = sorted(workflow.levels, key=lambda lvl: lvl.level_order)

        orders = [lvl.level_order for lvl in definitions]
        if orders != list(range(1, len(orders) + 1)):
            raise MalformedWorkflowError(
                workflow_id,
                f"level orders must be contiguous from 1, got {orders}",
            )

        levels: list[WorkflowLevel] = []
        for definition in definitions:
            expanded = set(definition.approver_ids or ())
            for group_id in definition.approver_group_ids or ():
                expanded |= self._identity.members_of(group_id)

            if not expanded:
                raise MalformedWorkflowError(
                    workflow_id,
                    "level has no approvers after group expansion",
                    definition.level_order,
                )
            if requester_id is not None and not (expanded - {requester_id}):
                raise SelfApprovalForbiddenError(
                    "(unsubmitted)", requester_id, definition.level_order,
                )

            levels.append(
                WorkflowLevel(
                    level_order=definition.level_order,
                    name=definition.name,
                    approver_ids=tuple(definition.approver_ids or ()),
                    approver_group_ids=tuple(definition.approver_group_ids or ()),
                    expanded_approvers=frozenset(expanded),
                    editable_fields=frozenset(definition.editable_fields or ()),
                    approval_mode=LevelApprovalMode(definition.approval_mode),
                )
            )

        snapshot = WorkflowSnapshot(
            workflow_id=workflow_id,
            template_id=template_id,
            workflow_name=workflow.name,
            levels=tuple(levels),
        )
        logger.info(
            "workflow_snapshot_resolved",
            extra={
                "template_id": template_id,
                "workflow_id": workflow_id,
                "level_count": snapshot.level_count,
            },
        )
        return snapshot
