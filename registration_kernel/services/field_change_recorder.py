"""
FieldChangeRecorder -- append-only capture of approver edits.

Responsibility:
    Store one FieldChange per distinct value transition made by an
    approver, and return a request's edit history in order.

Architecture position:
    Kernel > Services.  Called by ApprovalService.approve after the pure
    engine has accepted the edits.

Invariants enforced:
    - Append-only (ORM listeners on FieldChangeModel).
    - No entry when old == new; history length therefore equals the number
      of distinct transitions.
    - sequence is contiguous from 1 per request and breaks timestamp ties.

Failure modes:
    - ValueError on an empty field name or a negative level.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.domain.registration import FieldChange
from registration_kernel.logging_config import get_logger
from registration_kernel.models.field_change import FieldChangeModel

logger = get_logger("services.field_changes")


class FieldChangeRecorder:
    """Records and reads approver field edits."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        request_id: UUID,
        field_name: str,
        old_value: Any,
        new_value: Any,
        actor_id: str,
        level: int,
    ) -> FieldChange | None:
        """Append one change; returns None when the value did not change."""
        if not field_name or not field_name.strip():
            raise ValueError("field_name must be non-empty")
        if level < 0:
            raise ValueError(f"level must be >= 0, got {level}")
        if old_value == new_value:
            return None

        last_sequence = self._session.execute(
            select(func.max(FieldChangeModel.sequence)).where(
                FieldChangeModel.request_id == request_id
            )
        ).scalar()

        model = FieldChangeModel(
            change_id=uuid4(),
            request_id=request_id,
            sequence=(last_sequence or 0) + 1,
            field_name=field_name,
            previous_value=old_value,
            new_value=new_value,
            changed_by=actor_id,
            level=level,
            changed_at=self._clock.now(),
        )
        self._session.add(model)
        self._session.flush()

        logger.info(
            "field_change_recorded",
            extra={
                "request_id": str(request_id),
                "field_name": field_name,
                "level": level,
                "changed_by": actor_id,
            },
        )
        return model.to_dto()

    def history(self, request_id: UUID) -> list[FieldChange]:
        models = self._session.execute(
            select(FieldChangeModel)
            .where(FieldChangeModel.request_id == request_id)
            .order_by(FieldChangeModel.changed_at, FieldChangeModel.sequence)
        ).scalars()
        return [m.to_dto() for m in models]
