"""
Workflow domain types (``registration_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects describing an approval chain: live workflow
definitions as configured by administrators, and the immutable
snapshot frozen onto a request at submission time.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Snapshot immutability -- ``WorkflowSnapshot`` and ``WorkflowLevel``
  are frozen; ``expanded_approvers`` is computed once at resolution
  time and never recomputed from live group membership.
* Snapshot tamper evidence -- ``snapshot_hash()`` is a SHA-256 over the
  canonical JSON form; it is stored next to the snapshot and verified
  on every load.
* Level ordering -- levels are 1-based and contiguous; enforced by the
  resolver before a snapshot is built.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from registration_kernel.utils.hashing import hash_payload


class LevelApprovalMode(str, Enum):
    """How a level with several approvers is completed."""

    ALL = "all"  # Parallel: every approver must approve
    ANY_ONE = "any_one"  # First approval completes the level


# =========================================================================
# Live workflow definitions
# =========================================================================


@dataclass(frozen=True)
class WorkflowLevelDefinition:
    """One configured level of a live workflow (pre-expansion)."""

    level_order: int
    name: str
    approver_ids: tuple[str, ...] = ()
    approver_group_ids: tuple[str, ...] = ()
    editable_fields: tuple[str, ...] = ()
    approval_mode: LevelApprovalMode = LevelApprovalMode.ALL


@dataclass(frozen=True)
class WorkflowDefinition:
    """A configured approval workflow for one template."""

    workflow_id: str
    template_id: str
    name: str
    is_active: bool
    levels: tuple[WorkflowLevelDefinition, ...] = ()
    description: str | None = None


# =========================================================================
# Frozen snapshot
# =========================================================================


@dataclass(frozen=True)
class WorkflowLevel:
    """A level inside a frozen snapshot, with groups already expanded."""

    level_order: int
    name: str
    approver_ids: tuple[str, ...] = ()
    approver_group_ids: tuple[str, ...] = ()
    expanded_approvers: frozenset[str] = frozenset()
    editable_fields: frozenset[str] = frozenset()
    approval_mode: LevelApprovalMode = LevelApprovalMode.ALL

    def effective_approvers(self, requester_id: str) -> frozenset[str]:
        """Approvers who may act at this level: everyone but the requester."""
        return self.expanded_approvers - {requester_id}

    def to_dict(self) -> dict[str, Any]:
        return {
            "level_order": self.level_order,
            "name": self.name,
            "approver_ids": list(self.approver_ids),
            "approver_group_ids": list(self.approver_group_ids),
            "expanded_approvers": sorted(self.expanded_approvers),
            "editable_fields": sorted(self.editable_fields),
            "approval_mode": self.approval_mode.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowLevel:
        return cls(
            level_order=int(data["level_order"]),
            name=data["name"],
            approver_ids=tuple(data.get("approver_ids", ())),
            approver_group_ids=tuple(data.get("approver_group_ids", ())),
            expanded_approvers=frozenset(data.get("expanded_approvers", ())),
            editable_fields=frozenset(data.get("editable_fields", ())),
            approval_mode=LevelApprovalMode(
                data.get("approval_mode", LevelApprovalMode.ALL.value)
            ),
        )


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Immutable copy of a workflow taken at submission.

    Once attached to a request it never changes, even if the live
    workflow is edited, deactivated, or group membership changes.
    """

    workflow_id: str
    template_id: str
    workflow_name: str
    levels: tuple[WorkflowLevel, ...] = field(default_factory=tuple)

    @property
    def level_count(self) -> int:
        return len(self.levels)

    def level(self, level_order: int) -> WorkflowLevel:
        """Return the level with this 1-based order.

        Raises:
            IndexError: if ``level_order`` is outside ``1..level_count``.
        """
        if level_order < 1 or level_order > len(self.levels):
            raise IndexError(
                f"Level {level_order} outside 1..{len(self.levels)}"
            )
        return self.levels[level_order - 1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "template_id": self.template_id,
            "workflow_name": self.workflow_name,
            "levels": [lvl.to_dict() for lvl in self.levels],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowSnapshot:
        return cls(
            workflow_id=data["workflow_id"],
            template_id=data["template_id"],
            workflow_name=data["workflow_name"],
            levels=tuple(WorkflowLevel.from_dict(d) for d in data.get("levels", ())),
        )

    def snapshot_hash(self) -> str:
        """SHA-256 over the canonical JSON form of the snapshot."""
        return hash_payload(self.to_dict())
