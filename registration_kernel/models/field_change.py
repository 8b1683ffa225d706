"""
Module: registration_kernel.models.field_change
Responsibility: ORM persistence for approver field edits.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listeners).
    - Ordering: (request_id, sequence) is unique; history is read ordered
      by changed_at then sequence.
    - History outlives the request row: request_id is indexed but carries
      no foreign key, so a deleted draft never takes its history with it.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError on a duplicate (request_id, sequence).

Audit relevance:
    Every value an approver changed, who changed it, and at which level.
    Send-back never removes entries.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Index, Integer, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from registration_kernel.db.base import Base, UTCDateTime, UUIDString
from registration_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from registration_kernel.domain.registration import FieldChange


class FieldChangeModel(Base):
    """Persistent field change. Append-only."""

    __tablename__ = "registration_field_changes"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "sequence",
            name="uq_registration_field_changes_sequence",
        ),
        Index("ix_registration_field_changes_request", "request_id", "changed_at"),
    )

    change_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    request_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    previous_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    changed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<FieldChange {self.request_id} #{self.sequence} "
            f"{self.field_name} L{self.level}>"
        )

    def to_dto(self) -> FieldChange:
        """Convert ORM model to frozen domain DTO."""
        from registration_kernel.domain.registration import (
            FieldChange as FieldChangeDTO,
        )

        return FieldChangeDTO(
            change_id=self.change_id,
            request_id=self.request_id,
            field_name=self.field_name,
            previous_value=self.previous_value,
            new_value=self.new_value,
            changed_by=self.changed_by,
            level=self.level,
            changed_at=self.changed_at,
            sequence=self.sequence,
        )


@event.listens_for(FieldChangeModel, "before_update")
def prevent_field_change_update(mapper, connection, target):
    """Prevent updates to field change records."""
    raise ImmutabilityViolationError(
        entity_type="FieldChange",
        entity_id=str(target.change_id),
        reason="Field changes are append-only -- cannot modify",
    )


@event.listens_for(FieldChangeModel, "before_delete")
def prevent_field_change_delete(mapper, connection, target):
    """Prevent deletion of field change records."""
    raise ImmutabilityViolationError(
        entity_type="FieldChange",
        entity_id=str(target.change_id),
        reason="Field changes are append-only -- cannot delete",
    )
