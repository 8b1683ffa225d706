"""
registration_engines.approval -- Pure approval transition evaluation.

Responsibility:
    Decide, without touching storage, whether an actor may act on a
    request, whether field edits are allowed, whether a level is complete,
    where approval goes after a level, and whether a send-back target is
    valid.  Every check returns a tagged result (success or a named
    ``ApprovalFailure``) so callers can match every outcome.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import registration_kernel/domain/ types.

Invariants enforced:
    - The requester is never an effective approver: level records are
      planned from ``expanded_approvers - {requester}``, and any action by
      the requester fails with SELF_APPROVAL before anything else about
      the actor is considered.
    - Level completion: ALL levels complete when no record is PENDING and
      none is REJECTED; ANY_ONE levels complete on the first APPROVED.
    - Send-back target: 0 (draft) or 1..current_level-1; default is
      current_level-1.
    - Purity: no clock access, no I/O, no database.

Failure modes:
    - Never raises for business failures; returns the failure variant.
    - IndexError if asked about a level outside the snapshot (programming
      error, not a business outcome).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from registration_kernel.domain.registration import (
    APPROVAL_ENDED_STATUSES,
    APPROVAL_OPEN_STATUSES,
    ApprovalAction,
    ApprovalRecord,
    RegistrationRequest,
)
from registration_kernel.domain.workflow import (
    LevelApprovalMode,
    WorkflowLevel,
    WorkflowSnapshot,
)


class ApprovalFailure(str, Enum):
    """Named reasons an approval-phase action is refused."""

    APPROVAL_ENDED = "approval_ended"
    NOT_IN_APPROVAL = "not_in_approval"
    SELF_APPROVAL = "self_approval"
    NOT_AN_APPROVER = "not_an_approver"
    ALREADY_ACTED = "already_acted"
    FIELD_NOT_EDITABLE = "field_not_editable"
    INVALID_TARGET_LEVEL = "invalid_target_level"


# =========================================================================
# Result types
# =========================================================================


@dataclass(frozen=True)
class ActorAuthorization:
    """Whether ``actor_id`` may decide at the request's current level."""

    authorized: bool
    failure: ApprovalFailure | None = None
    record: ApprovalRecord | None = None
    reason: str = ""


@dataclass(frozen=True)
class FieldEditEvaluation:
    """Outcome of checking approver edits against the level's editable set.

    ``changes`` lists ``(field, previous, new)`` for distinct values only,
    in the order the fields were given.
    For bulk requests ``changes`` names each field by its item path
    (``items[6].PRICE``) and ``item_changes`` carries
    ``(row_number, field, previous, new)`` for applying them.
    """

    allowed: bool
    failure: ApprovalFailure | None = None
    rejected_fields: tuple[str, ...] = ()
    changes: tuple[tuple[str, Any, Any], ...] = ()
    item_changes: tuple[tuple[int, str, Any, Any], ...] = ()


@dataclass(frozen=True)
class LevelEvaluation:
    """Progress of one level's approval records."""

    complete: bool
    rejected: bool = False
    pending_count: int = 0
    approved_count: int = 0
    total_count: int = 0


@dataclass(frozen=True)
class LevelAdvance:
    """Where approval goes once a level completes."""

    final: bool
    next_level: int | None = None
    next_approvers: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SendBackPlan:
    """Validated send-back target."""

    valid: bool
    target_level: int = 0
    to_draft: bool = False
    failure: ApprovalFailure | None = None
    reason: str = ""


# =========================================================================
# Evaluations
# =========================================================================


def plan_level_approvers(
    snapshot: WorkflowSnapshot,
    level_order: int,
    requester_id: str,
) -> tuple[str, ...]:
    """Effective approvers of a level, sorted for deterministic record order."""
    return tuple(sorted(snapshot.level(level_order).effective_approvers(requester_id)))


def levels_without_effective_approvers(
    snapshot: WorkflowSnapshot,
    requester_id: str,
) -> tuple[int, ...]:
    """Levels that would have nobody but the requester to approve them."""
    return tuple(
        lvl.level_order
        for lvl in snapshot.levels
        if not lvl.effective_approvers(requester_id)
    )


def authorize_decision(
    request: RegistrationRequest,
    actor_id: str,
) -> ActorAuthorization:
    """Check that ``actor_id`` may approve/reject/send back right now.

    Order: approval ended, not yet in approval, self-approval, not an
    approver at the current level, already acted.
    """
    if request.status in APPROVAL_ENDED_STATUSES:
        return ActorAuthorization(
            authorized=False,
            failure=ApprovalFailure.APPROVAL_ENDED,
            reason=f"Approval ended with status {request.status.value}",
        )
    if request.status not in APPROVAL_OPEN_STATUSES:
        return ActorAuthorization(
            authorized=False,
            failure=ApprovalFailure.NOT_IN_APPROVAL,
            reason=f"Request is {request.status.value}",
        )
    if actor_id == request.requester_id:
        return ActorAuthorization(
            authorized=False,
            failure=ApprovalFailure.SELF_APPROVAL,
            reason="Requester cannot act on own request",
        )

    record = next(
        (
            a for a in request.approvals_at(request.current_level)
            if a.approver_id == actor_id
        ),
        None,
    )
    if record is None:
        return ActorAuthorization(
            authorized=False,
            failure=ApprovalFailure.NOT_AN_APPROVER,
            reason=f"No record for {actor_id} at level {request.current_level}",
        )
    if record.action != ApprovalAction.PENDING:
        return ActorAuthorization(
            authorized=False,
            failure=ApprovalFailure.ALREADY_ACTED,
            record=record,
            reason=f"Record already {record.action.value}",
        )
    return ActorAuthorization(authorized=True, record=record)


def evaluate_field_edits(
    level: WorkflowLevel,
    form_data: dict[str, Any],
    field_edits: dict[str, Any] | None,
) -> FieldEditEvaluation:
    """Check edits against ``level.editable_fields`` (all-or-nothing).

    Edits that leave a value unchanged are allowed and produce no change.
    """
    if not field_edits:
        return FieldEditEvaluation(allowed=True)

    rejected = tuple(sorted(f for f in field_edits if f not in level.editable_fields))
    if rejected:
        return FieldEditEvaluation(
            allowed=False,
            failure=ApprovalFailure.FIELD_NOT_EDITABLE,
            rejected_fields=rejected,
        )

    changes = tuple(
        (name, form_data.get(name), new_value)
        for name, new_value in field_edits.items()
        if form_data.get(name) != new_value
    )
    return FieldEditEvaluation(allowed=True, changes=changes)


def item_field_path(row_number: int, name: str) -> str:
    """Field name of one bulk item's value, as recorded in history."""
    return f"items[{row_number}].{name}"


def evaluate_item_field_edits(
    level: WorkflowLevel,
    items: list[dict[str, Any]],
    field_edits: dict[Any, Any] | None,
) -> FieldEditEvaluation:
    """Check bulk edits shaped ``{row_number: {field: value}}``.

    Rows are addressed by their ``row_number``.  An unknown row, a row
    whose edits are not a mapping, or a field outside
    ``level.editable_fields`` rejects the whole set.
    """
    if not field_edits:
        return FieldEditEvaluation(allowed=True)

    by_row = {item.get("row_number"): item for item in items}
    rejected: list[str] = []
    resolved: list[tuple[int, dict[str, Any], dict[str, Any]]] = []
    for key, row_edits in field_edits.items():
        row_number = key
        if isinstance(key, str) and key.strip().isdigit():
            row_number = int(key)
        item = by_row.get(row_number) if not isinstance(row_number, bool) else None
        if item is None or not isinstance(row_edits, dict):
            rejected.append(f"items[{key}]")
            continue
        for name in row_edits:
            if name not in level.editable_fields:
                rejected.append(item_field_path(row_number, name))
        resolved.append((row_number, item.get("values") or {}, row_edits))

    if rejected:
        return FieldEditEvaluation(
            allowed=False,
            failure=ApprovalFailure.FIELD_NOT_EDITABLE,
            rejected_fields=tuple(sorted(rejected)),
        )

    item_changes = tuple(
        (row_number, name, values.get(name), new_value)
        for row_number, values, row_edits in resolved
        for name, new_value in row_edits.items()
        if values.get(name) != new_value
    )
    changes = tuple(
        (item_field_path(row_number, name), previous, new_value)
        for row_number, name, previous, new_value in item_changes
    )
    return FieldEditEvaluation(allowed=True, changes=changes, item_changes=item_changes)


def evaluate_level(
    records: tuple[ApprovalRecord, ...],
    mode: LevelApprovalMode,
) -> LevelEvaluation:
    """Summarize a level's records and decide completion."""
    pending = sum(1 for r in records if r.action == ApprovalAction.PENDING)
    approved = sum(1 for r in records if r.action == ApprovalAction.APPROVED)
    rejected = any(r.action == ApprovalAction.REJECTED for r in records)

    if rejected:
        complete = False
    elif mode == LevelApprovalMode.ANY_ONE:
        complete = approved > 0
    else:
        complete = pending == 0 and approved > 0

    return LevelEvaluation(
        complete=complete,
        rejected=rejected,
        pending_count=pending,
        approved_count=approved,
        total_count=len(records),
    )


def advance_after_level(
    snapshot: WorkflowSnapshot,
    completed_level: int,
    requester_id: str,
) -> LevelAdvance:
    """Return the next level (and its approvers), or ``final`` after the last."""
    if completed_level >= snapshot.level_count:
        return LevelAdvance(final=True)
    next_level = completed_level + 1
    return LevelAdvance(
        final=False,
        next_level=next_level,
        next_approvers=plan_level_approvers(snapshot, next_level, requester_id),
    )


def plan_send_back(
    current_level: int,
    target_level: int | None,
) -> SendBackPlan:
    """Validate a send-back target; ``None`` means one level down."""
    target = current_level - 1 if target_level is None else target_level

    if target == 0:
        return SendBackPlan(valid=True, target_level=0, to_draft=True)
    if 1 <= target < current_level:
        return SendBackPlan(valid=True, target_level=target)
    return SendBackPlan(
        valid=False,
        target_level=target,
        failure=ApprovalFailure.INVALID_TARGET_LEVEL,
        reason=f"Target must be 0 or 1..{current_level - 1}",
    )
