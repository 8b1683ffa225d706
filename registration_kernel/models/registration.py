"""
Module: registration_kernel.models.registration
Responsibility: ORM persistence for registration requests and their
    per-approver approval records.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Lifecycle: DB check constraint limits status values; the approval
      service enforces transition rules.
    - Snapshot write-once: workflow_snapshot and snapshot_hash are set at
      first submission and never rewritten (service + hash verified on load).
    - One record per approver per level: UNIQUE(request_id, level, approver_id).
    - Optimistic concurrency: ``version`` is the mapper's version_id_col; a
      lost update across processes raises StaleDataError at flush.
    - current_level is never negative (check constraint).

Failure modes:
    - IntegrityError on duplicate approval record.
    - StaleDataError when another transaction updated the row first.

Audit relevance:
    The request row carries the working data the ERP will receive; every
    change to it after submission is mirrored by a FieldChange and an
    audit event.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registration_kernel.db.base import Base, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from registration_kernel.domain.registration import (
        ApprovalRecord,
        RegistrationRequest,
    )


class RegistrationRequestModel(Base):
    """Persistent registration request.

    Contract:
        Status transitions follow REGISTRATION_TRANSITIONS.  JSON columns
        are always reassigned (never mutated in place) so the unit of work
        sees every change.

    Guarantees:
        - request_id is unique and stable for the life of the request.
        - workflow_snapshot/snapshot_hash are write-once.
    """

    __tablename__ = "registration_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'pending_approval', 'in_approval', 'approved', "
            "'rejected', 'syncing', 'synced', 'sync_failed')",
            name="ck_registration_requests_valid_status",
        ),
        CheckConstraint(
            "operation_type IN ('new', 'alteration')",
            name="ck_registration_requests_operation_type",
        ),
        CheckConstraint(
            "current_level >= 0",
            name="ck_registration_requests_level_non_negative",
        ),
        Index("ix_registration_requests_status", "status", "created_at"),
        Index("ix_registration_requests_template", "template_id", "status"),
        Index("ix_registration_requests_requester", "requester_id", "created_at"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    tracking_number: Mapped[str | None] = mapped_column(
        String(20), nullable=True, unique=True,
    )
    template_id: Mapped[str] = mapped_column(String(100), nullable=False)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    form_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    original_form_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True,
    )
    external_record_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )

    workflow_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True,
    )
    snapshot_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    sync_external_record_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    sync_error: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sync_log: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    approvals: Mapped[list["ApprovalRecordModel"]] = relationship(
        "ApprovalRecordModel",
        back_populates="request",
        primaryjoin="RegistrationRequestModel.request_id == ApprovalRecordModel.request_id",
        order_by="[ApprovalRecordModel.level, ApprovalRecordModel.approver_id]",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<RegistrationRequest {self.request_id} "
            f"{self.template_id}/{self.operation_type} "
            f"status={self.status} level={self.current_level}>"
        )

    def to_dto(self) -> RegistrationRequest:
        """Convert ORM model to frozen domain DTO."""
        from registration_kernel.domain.registration import (
            OperationType,
            RegistrationRequest as RegistrationRequestDTO,
            RegistrationStatus,
            SyncState,
        )
        from registration_kernel.domain.workflow import WorkflowSnapshot

        snapshot = (
            WorkflowSnapshot.from_dict(self.workflow_snapshot)
            if self.workflow_snapshot is not None
            else None
        )

        return RegistrationRequestDTO(
            request_id=self.request_id,
            template_id=self.template_id,
            table_name=self.table_name,
            operation_type=OperationType(self.operation_type),
            requester_id=self.requester_id,
            status=RegistrationStatus(self.status),
            current_level=self.current_level,
            form_data=dict(self.form_data or {}),
            original_form_data=(
                dict(self.original_form_data)
                if self.original_form_data is not None
                else None
            ),
            external_record_id=self.external_record_id,
            tracking_number=self.tracking_number,
            workflow_snapshot=snapshot,
            snapshot_hash=self.snapshot_hash,
            approvals=tuple(a.to_dto() for a in self.approvals),
            sync=SyncState(
                external_record_id=self.sync_external_record_id,
                synced_at=self.synced_at,
                error=dict(self.sync_error) if self.sync_error is not None else None,
                log=dict(self.sync_log or {}),
                attempts=self.sync_attempts,
            ),
            version=self.version,
            created_at=self.created_at,
            submitted_at=self.submitted_at,
            resolved_at=self.resolved_at,
        )


class ApprovalRecordModel(Base):
    """Persistent approval record: one approver at one level.

    Contract:
        Created PENDING when a level becomes active.  Discarded (deleted)
        only by send-back, after its content has been copied into the
        SENT_BACK audit event.

    Guarantees:
        - UNIQUE(request_id, level, approver_id).
    """

    __tablename__ = "registration_approval_records"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "level", "approver_id",
            name="uq_registration_approval_records_approver",
        ),
        CheckConstraint(
            "action IN ('pending', 'approved', 'rejected', 'skipped')",
            name="ck_registration_approval_records_action",
        ),
        Index("ix_registration_approval_records_approver", "approver_id", "action"),
    )

    record_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("registration_requests.request_id"),
        nullable=False,
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    acted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    request: Mapped["RegistrationRequestModel"] = relationship(
        "RegistrationRequestModel",
        back_populates="approvals",
        foreign_keys=[request_id],
        primaryjoin="ApprovalRecordModel.request_id == RegistrationRequestModel.request_id",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRecord {self.request_id} L{self.level} "
            f"{self.approver_id}={self.action}>"
        )

    def to_dto(self) -> ApprovalRecord:
        """Convert ORM model to frozen domain DTO."""
        from registration_kernel.domain.registration import (
            ApprovalAction,
            ApprovalRecord as ApprovalRecordDTO,
        )

        return ApprovalRecordDTO(
            record_id=self.record_id,
            request_id=self.request_id,
            level=self.level,
            approver_id=self.approver_id,
            action=ApprovalAction(self.action),
            comments=self.comments,
            acted_at=self.acted_at,
            created_at=self.created_at,
        )
