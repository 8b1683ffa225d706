"""
RegistrationAuditor -- append-only, hash-chained audit trail per request.

Responsibility:
    Record one audit event for every registration lifecycle action and
    verify the per-request hash chain on demand.

Architecture position:
    Kernel > Services -- imperative shell.  Called by every service that
    changes a request.  Never commits; the caller owns the transaction.

Invariants enforced:
    - Append-only: events are inserted, never updated or deleted (ORM
      listeners on RegistrationAuditEventModel).
    - Chain: event_hash = H(request_id | action | payload_hash | prev_hash),
      where prev_hash is the previous event of the same request.
    - seq is contiguous from 1 per request.

Failure modes:
    - IntegrityError if two writers race on the same (request_id, seq);
      callers serialize per request so this indicates a missing lock.

Audit relevance:
    This IS the audit trail.  The chain makes any retroactive edit to a
    request's history detectable by ``verify_chain``.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.logging_config import get_logger
from registration_kernel.models.audit_event import (
    RegistrationAuditAction,
    RegistrationAuditEventModel,
)
from registration_kernel.utils.hashing import hash_audit_event, hash_payload

logger = get_logger("services.auditor")


class RegistrationAuditor:
    """Writes and verifies the per-request audit chain."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        request_id: UUID,
        action: RegistrationAuditAction,
        actor_id: str,
        payload: dict[str, Any] | None = None,
    ) -> RegistrationAuditEventModel:
        """Append one event to the request's chain and flush it."""
        last = self._last_event(request_id)
        seq = 1 if last is None else last.seq + 1
        prev_hash = None if last is None else last.event_hash

        payload_data = payload or {}
        payload_hash = hash_payload(payload_data)
        event_hash = hash_audit_event(
            request_id=str(request_id),
            action=action.value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = RegistrationAuditEventModel(
            request_id=request_id,
            seq=seq,
            action=action.value,
            actor_id=actor_id,
            payload=payload_data,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            event_hash=event_hash,
            occurred_at=self._clock.now(),
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.debug(
            "audit_event_recorded",
            extra={
                "request_id": str(request_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    def history(self, request_id: UUID) -> list[RegistrationAuditEventModel]:
        """All events of a request in chain order."""
        return list(
            self._session.execute(
                select(RegistrationAuditEventModel)
                .where(RegistrationAuditEventModel.request_id == request_id)
                .order_by(RegistrationAuditEventModel.seq)
            ).scalars()
        )

    def verify_chain(self, request_id: UUID) -> bool:
        """Recompute every hash of the request's chain; False on any mismatch."""
        prev_hash: str | None = None
        for expected_seq, ev in enumerate(self.history(request_id), start=1):
            if ev.seq != expected_seq or ev.prev_hash != prev_hash:
                return False
            if hash_payload(ev.payload) != ev.payload_hash:
                return False
            recomputed = hash_audit_event(
                request_id=str(request_id),
                action=ev.action,
                payload_hash=ev.payload_hash,
                prev_hash=prev_hash,
            )
            if recomputed != ev.event_hash:
                return False
            prev_hash = ev.event_hash
        return True

    def _last_event(self, request_id: UUID) -> RegistrationAuditEventModel | None:
        return self._session.execute(
            select(RegistrationAuditEventModel)
            .where(RegistrationAuditEventModel.request_id == request_id)
            .order_by(RegistrationAuditEventModel.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
