"""
Registration domain types (``registration_kernel.domain.registration``).

Responsibility
--------------
Pure value objects for registration requests: the lifecycle state
machine, approval records, field changes, and sync state.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, or outer layers.

Invariants enforced
-------------------
* Lifecycle state machine -- ``REGISTRATION_TRANSITIONS`` defines the
  only valid status transitions.  ``SYNCED`` and ``REJECTED`` have no
  outgoing edges.
* Approval window -- approve/reject/send-back are only meaningful in
  ``APPROVAL_OPEN_STATUSES``; any status in ``APPROVAL_ENDED_STATUSES``
  means the decision phase is over.
* Bulk form data -- a bulk draft's working data is
  ``{"_is_bulk": True, "_item_count": n, "items": [...]}``; each item is
  ``{"row_number", "values", "external_record_id"}``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from registration_kernel.domain.workflow import WorkflowSnapshot


# =========================================================================
# Registration Status Lifecycle
# =========================================================================


class RegistrationStatus(str, Enum):
    """Registration request lifecycle states."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    IN_APPROVAL = "in_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    SYNCING = "syncing"
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"


REGISTRATION_TRANSITIONS: dict[RegistrationStatus, frozenset[RegistrationStatus]] = {
    RegistrationStatus.DRAFT: frozenset({
        RegistrationStatus.PENDING_APPROVAL,
    }),
    RegistrationStatus.PENDING_APPROVAL: frozenset({
        RegistrationStatus.IN_APPROVAL,
        RegistrationStatus.APPROVED,
        RegistrationStatus.REJECTED,
        RegistrationStatus.DRAFT,
    }),
    RegistrationStatus.IN_APPROVAL: frozenset({
        RegistrationStatus.IN_APPROVAL,
        RegistrationStatus.APPROVED,
        RegistrationStatus.REJECTED,
        RegistrationStatus.DRAFT,
    }),
    RegistrationStatus.APPROVED: frozenset({
        RegistrationStatus.SYNCING,
    }),
    RegistrationStatus.SYNCING: frozenset({
        RegistrationStatus.SYNCED,
        RegistrationStatus.SYNC_FAILED,
    }),
    RegistrationStatus.SYNC_FAILED: frozenset({
        RegistrationStatus.SYNCING,
    }),
    RegistrationStatus.SYNCED: frozenset(),
    RegistrationStatus.REJECTED: frozenset(),
}

TERMINAL_REGISTRATION_STATUSES: frozenset[RegistrationStatus] = frozenset({
    RegistrationStatus.SYNCED,
    RegistrationStatus.REJECTED,
})

APPROVAL_OPEN_STATUSES: frozenset[RegistrationStatus] = frozenset({
    RegistrationStatus.PENDING_APPROVAL,
    RegistrationStatus.IN_APPROVAL,
})

APPROVAL_ENDED_STATUSES: frozenset[RegistrationStatus] = frozenset({
    RegistrationStatus.APPROVED,
    RegistrationStatus.REJECTED,
    RegistrationStatus.SYNCING,
    RegistrationStatus.SYNCED,
    RegistrationStatus.SYNC_FAILED,
})


def is_valid_transition(
    from_status: RegistrationStatus,
    to_status: RegistrationStatus,
) -> bool:
    """True if ``to_status`` is reachable from ``from_status`` in one step."""
    return to_status in REGISTRATION_TRANSITIONS.get(from_status, frozenset())


class OperationType(str, Enum):
    """What the request does to the ERP table."""

    NEW = "new"
    ALTERATION = "alteration"


class ApprovalAction(str, Enum):
    """State of a single approver's record at a level."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"  # ANY_ONE level closed by another approver


# Keys of bulk working data
BULK_FLAG = "_is_bulk"
BULK_ITEM_COUNT = "_item_count"
BULK_ITEMS = "items"


def is_bulk_form_data(form_data: dict[str, Any] | None) -> bool:
    return bool(form_data) and bool(form_data.get(BULK_FLAG))


def build_bulk_form_data(items: list[dict[str, Any]]) -> dict[str, Any]:
    """Wrap item dicts into the bulk working-data envelope."""
    return {
        BULK_FLAG: True,
        BULK_ITEM_COUNT: len(items),
        BULK_ITEMS: items,
    }


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class ApprovalRecord:
    """One approver's record at one level of one request."""

    record_id: UUID
    request_id: UUID
    level: int
    approver_id: str
    action: ApprovalAction = ApprovalAction.PENDING
    comments: str | None = None
    acted_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class FieldChange:
    """A single approver edit of one field. Immutable."""

    change_id: UUID
    request_id: UUID
    field_name: str
    previous_value: Any
    new_value: Any
    changed_by: str
    level: int
    changed_at: datetime
    sequence: int = 0


@dataclass(frozen=True)
class SyncState:
    """Outcome of the most recent push to the ERP.

    ``error`` is stored verbatim: ``code``, ``message``, ``retryable``,
    ``partial_write_possible``, and ``detail``.
    ``log`` holds per-attempt and, for bulk requests, per-item results.
    """

    external_record_id: str | None = None
    synced_at: datetime | None = None
    error: dict[str, Any] | None = None
    log: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


@dataclass(frozen=True)
class RegistrationRequest:
    """Immutable snapshot of a registration request."""

    request_id: UUID
    template_id: str
    table_name: str
    operation_type: OperationType
    requester_id: str
    status: RegistrationStatus = RegistrationStatus.DRAFT
    current_level: int = 0
    form_data: dict[str, Any] = field(default_factory=dict)
    original_form_data: dict[str, Any] | None = None
    external_record_id: str | None = None
    tracking_number: str | None = None
    workflow_snapshot: WorkflowSnapshot | None = None
    snapshot_hash: str | None = None
    approvals: tuple[ApprovalRecord, ...] = ()
    sync: SyncState = field(default_factory=SyncState)
    version: int = 1
    created_at: datetime | None = None
    submitted_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def is_bulk(self) -> bool:
        return is_bulk_form_data(self.form_data)

    @property
    def items(self) -> list[dict[str, Any]]:
        if not self.is_bulk:
            return []
        return list(self.form_data.get(BULK_ITEMS, []))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REGISTRATION_STATUSES

    def approvals_at(self, level: int) -> tuple[ApprovalRecord, ...]:
        return tuple(a for a in self.approvals if a.level == level)


# =========================================================================
# Batch results
# =========================================================================


@dataclass(frozen=True)
class SubmitOutcome:
    """Per-request outcome of a bulk submit."""

    request_id: UUID
    success: bool
    status: RegistrationStatus | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class BulkSubmitResult:
    """Totals and per-request outcomes of ``submit_bulk``."""

    total: int
    succeeded: int
    failed: int
    results: tuple[SubmitOutcome, ...] = ()
