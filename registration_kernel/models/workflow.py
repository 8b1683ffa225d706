"""
Module: registration_kernel.models.workflow
Responsibility: ORM persistence for live (editable) approval workflow
    definitions and their levels.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - None at the DB level beyond types.  Level contiguity and approver
      coverage are checked by WorkflowSnapshotResolver when a request is
      submitted, so a workflow edited into a bad state fails loudly at
      submission instead of producing an unusable snapshot.

Audit relevance:
    Live workflows are never read after submission; requests carry their
    own frozen snapshot.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registration_kernel.db.base import Base, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from registration_kernel.domain.workflow import (
        WorkflowDefinition,
        WorkflowLevelDefinition,
    )


class RegistrationWorkflowModel(Base):
    """A configured approval workflow for one template."""

    __tablename__ = "registration_workflows"

    __table_args__ = (
        Index("ix_registration_workflows_template_active", "template_id", "is_active"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    template_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    levels: Mapped[list["WorkflowLevelModel"]] = relationship(
        "WorkflowLevelModel",
        back_populates="workflow",
        primaryjoin="RegistrationWorkflowModel.workflow_id == WorkflowLevelModel.workflow_id",
        order_by="WorkflowLevelModel.level_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<RegistrationWorkflow {self.workflow_id} {self.template_id} "
            f"active={self.is_active}>"
        )

    def to_dto(self) -> WorkflowDefinition:
        """Convert ORM model to frozen domain DTO."""
        from registration_kernel.domain.workflow import WorkflowDefinition

        return WorkflowDefinition(
            workflow_id=str(self.workflow_id),
            template_id=self.template_id,
            name=self.name,
            is_active=self.is_active,
            levels=tuple(lvl.to_dto() for lvl in self.levels),
            description=self.description,
        )


class WorkflowLevelModel(Base):
    """One level of a live workflow."""

    __tablename__ = "registration_workflow_levels"

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("registration_workflows.workflow_id"),
        nullable=False,
    )
    level_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    approver_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    approver_group_ids: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list,
    )
    editable_fields: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list,
    )
    approval_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="all")

    workflow: Mapped["RegistrationWorkflowModel"] = relationship(
        "RegistrationWorkflowModel",
        back_populates="levels",
        foreign_keys=[workflow_id],
        primaryjoin="WorkflowLevelModel.workflow_id == RegistrationWorkflowModel.workflow_id",
    )

    def to_dto(self) -> WorkflowLevelDefinition:
        """Convert ORM model to frozen domain DTO."""
        from registration_kernel.domain.workflow import (
            LevelApprovalMode,
            WorkflowLevelDefinition,
        )

        return WorkflowLevelDefinition(
            level_order=self.level_order,
            name=self.name,
            approver_ids=tuple(self.approver_ids or ()),
            approver_group_ids=tuple(self.approver_group_ids or ()),
            editable_fields=tuple(self.editable_fields or ()),
            approval_mode=LevelApprovalMode(self.approval_mode),
        )
