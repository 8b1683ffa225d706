"""
WorkflowDefinitionService -- create and (de)activate live approval workflows.

Responsibility:
    Persist workflow definitions (levels, individual approvers, approver
    groups, editable fields, approval mode) and keep at most one workflow
    active per template.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Activating a workflow deactivates every other active workflow of
      the same template in the same transaction.
    - Level orders given here must already be contiguous from 1; a bad
      definition is refused at creation (the resolver re-checks at
      submission in case stored rows were edited out of band).

Failure modes:
    - MalformedWorkflowError for non-contiguous or duplicate level orders
      or a level with neither approvers nor groups.
    - KeyError when (de)activating an unknown workflow.

Audit relevance:
    Definitions are live configuration; requests never read them after
    submission because they carry a frozen snapshot.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.domain.workflow import (
    WorkflowDefinition,
    WorkflowLevelDefinition,
)
from registration_kernel.exceptions import MalformedWorkflowError
from registration_kernel.logging_config import get_logger
from registration_kernel.models.workflow import (
    RegistrationWorkflowModel,
    WorkflowLevelModel,
)

logger = get_logger("services.workflow_definitions")


class WorkflowDefinitionService:
    """Admin-side management of live workflows."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    def create_workflow(
        self,
        template_id: str,
        name: str,
        levels: Sequence[WorkflowLevelDefinition],
        activate: bool = True,
        description: str | None = None,
    ) -> WorkflowDefinition:
        workflow_id = uuid4()
        self._validate_levels(str(workflow_id), levels)

        if activate:
            self._deactivate_template_workflows(template_id)

        model = RegistrationWorkflowModel(
            workflow_id=workflow_id,
            template_id=template_id,
            name=name,
            description=description,
            is_active=activate,
            created_at=self._clock.now(),
        )
        for lvl in sorted(levels, key=lambda level: level.level_order):
            model.levels.append(
                WorkflowLevelModel(
                    level_order=lvl.level_order,
                    name=lvl.name,
                    approver_ids=list(lvl.approver_ids),
                    approver_group_ids=list(lvl.approver_group_ids),
                    editable_fields=list(lvl.editable_fields),
                    approval_mode=lvl.approval_mode.value,
                )
            )
        self._session.add(model)
        self._session.flush()

        logger.info(
            "workflow_created",
            extra={
                "workflow_id": str(workflow_id),
                "template_id": template_id,
                "level_count": len(levels),
                "is_active": activate,
            },
        )
        return model.to_dto()

    def activate(self, workflow_id: UUID) -> WorkflowDefinition:
        model = self._load(workflow_id)
        self._deactivate_template_workflows(model.template_id)
        model.is_active = True
        self._session.flush()
        logger.info(
            "workflow_activated",
            extra={"workflow_id": str(workflow_id), "template_id": model.template_id},
        )
        return model.to_dto()

    def deactivate(self, workflow_id: UUID) -> WorkflowDefinition:
        model = self._load(workflow_id)
        model.is_active = False
        self._session.flush()
        logger.info("workflow_deactivated", extra={"workflow_id": str(workflow_id)})
        return model.to_dto()

    def list_workflows(self, template_id: str) -> list[WorkflowDefinition]:
        models = self._session.execute(
            select(RegistrationWorkflowModel)
            .where(RegistrationWorkflowModel.template_id == template_id)
            .order_by(RegistrationWorkflowModel.created_at)
        ).scalars()
        return [m.to_dto() for m in models]

    def _deactivate_template_workflows(self, template_id: str) -> None:
        active = self._session.execute(
            select(RegistrationWorkflowModel).where(
                RegistrationWorkflowModel.template_id == template_id,
                RegistrationWorkflowModel.is_active.is_(True),
            )
        ).scalars()
        for wf in active:
            wf.is_active = False

    def _load(self, workflow_id: UUID) -> RegistrationWorkflowModel:
        model = self._session.execute(
            select(RegistrationWorkflowModel).where(
                RegistrationWorkflowModel.workflow_id == workflow_id
            )
        ).scalar_one_or_none()
        if model is None:
            raise KeyError(f"Workflow not found: {workflow_id}")
        return model

    @staticmethod
    def _validate_levels(
        workflow_id: str,
        levels: Sequence[WorkflowLevelDefinition],
    ) -> None:
        orders = sorted(lvl.level_order for lvl in levels)
        if orders != list(range(1, len(orders) + 1)):
            raise MalformedWorkflowError(
                workflow_id,
                f"level orders must be contiguous from 1, got {orders}",
            )
        for lvl in levels:
            if not lvl.approver_ids and not lvl.approver_group_ids:
                raise MalformedWorkflowError(
                    workflow_id, "level has no approvers or groups", lvl.level_order,
                )
