"""
Module: registration_kernel.models.audit_event
Responsibility: ORM persistence for the per-request audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listeners).
    - Per-request hash chain: event_hash = H(request_id | action |
      payload_hash | prev_hash).  Validated by RegistrationAuditor.
    - seq is 1-based and contiguous per request: UNIQUE(request_id, seq).
    - No foreign key to the request: the trail survives draft deletion.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.

Audit relevance:
    Every lifecycle action produces one event.  SENT_BACK events carry the
    full content of every approval record the send-back discarded, so no
    decision is ever lost.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, Integer, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from registration_kernel.db.base import Base, UTCDateTime, UUIDString
from registration_kernel.exceptions import ImmutabilityViolationError


class RegistrationAuditAction(str, Enum):
    """Types of auditable registration actions."""

    # Draft lifecycle
    DRAFT_CREATED = "draft_created"
    DRAFT_UPDATED = "draft_updated"
    DRAFT_DELETED = "draft_deleted"

    # Approval lifecycle
    SUBMITTED = "submitted"
    APPROVED = "approved"
    LEVEL_ADVANCED = "level_advanced"
    FULLY_APPROVED = "fully_approved"
    REJECTED = "rejected"
    SENT_BACK = "sent_back"
    FIELDS_EDITED = "fields_edited"

    # Sync lifecycle
    SYNC_STARTED = "sync_started"
    SYNC_SUCCEEDED = "sync_succeeded"
    SYNC_FAILED = "sync_failed"
    SYNC_RETRY_REQUESTED = "sync_retry_requested"


class RegistrationAuditEventModel(Base):
    """Persistent audit event. Append-only."""

    __tablename__ = "registration_audit_events"

    __table_args__ = (
        UniqueConstraint("request_id", "seq", name="uq_registration_audit_events_seq"),
        Index("ix_registration_audit_events_action", "action", "occurred_at"),
    )

    request_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<RegistrationAuditEvent {self.request_id} #{self.seq} {self.action}>"


@event.listens_for(RegistrationAuditEventModel, "before_update")
def prevent_audit_event_update(mapper, connection, target):
    """Prevent updates to audit events."""
    raise ImmutabilityViolationError(
        entity_type="RegistrationAuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot modify",
    )


@event.listens_for(RegistrationAuditEventModel, "before_delete")
def prevent_audit_event_delete(mapper, connection, target):
    """Prevent deletion of audit events."""
    raise ImmutabilityViolationError(
        entity_type="RegistrationAuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot delete",
    )
