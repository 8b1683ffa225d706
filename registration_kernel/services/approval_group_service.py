"""
ApprovalGroupDirectory -- DB-backed approver groups.

Responsibility:
    Create groups, manage their membership, and act as the
    ``IdentityProvider`` the workflow resolver uses to expand groups.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - A user is a member of a group at most once (DB unique constraint,
      checked here first so adds are idempotent).
    - Inactive or unknown groups expand to no members.

Failure modes:
    - ValueError on an empty group id or user id.
    - KeyError when modifying a group that does not exist.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.logging_config import get_logger
from registration_kernel.models.approval_group import (
    ApprovalGroupMemberModel,
    ApprovalGroupModel,
)

logger = get_logger("services.approval_groups")


class ApprovalGroupDirectory:
    """Approver groups stored in the registration database."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    def create_group(
        self,
        group_id: str,
        name: str,
        members: tuple[str, ...] | list[str] = (),
        description: str | None = None,
    ) -> ApprovalGroupModel:
        if not group_id or not group_id.strip():
            raise ValueError("group_id must be non-empty")
        group = ApprovalGroupModel(
            group_id=group_id,
            name=name,
            description=description,
            is_active=True,
            created_at=self._clock.now(),
        )
        for user_id in dict.fromkeys(members):
            if not user_id:
                raise ValueError("member user_id must be non-empty")
            group.members.append(ApprovalGroupMemberModel(user_id=user_id))
        self._session.add(group)
        self._session.flush()
        logger.info(
            "approval_group_created",
            extra={"group_id": group_id, "member_count": len(group.members)},
        )
        return group

    def add_member(self, group_id: str, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        group = self._load(group_id)
        if any(m.user_id == user_id for m in group.members):
            return
        group.members.append(ApprovalGroupMemberModel(user_id=user_id))
        self._session.flush()

    def remove_member(self, group_id: str, user_id: str) -> None:
        group = self._load(group_id)
        group.members = [m for m in group.members if m.user_id != user_id]
        self._session.flush()

    def deactivate(self, group_id: str) -> None:
        group = self._load(group_id)
        group.is_active = False
        self._session.flush()

    def exists(self, group_id: str) -> bool:
        return self._session.execute(
            select(ApprovalGroupModel.id).where(ApprovalGroupModel.group_id == group_id)
        ).first() is not None

    def members_of(self, group_id: str) -> frozenset[str]:
        """IdentityProvider: current members of an active group."""
        group = self._session.execute(
            select(ApprovalGroupModel).where(ApprovalGroupModel.group_id == group_id)
        ).scalar_one_or_none()
        if group is None or not group.is_active:
            return frozenset()
        return frozenset(m.user_id for m in group.members)

    def _load(self, group_id: str) -> ApprovalGroupModel:
        group = self._session.execute(
            select(ApprovalGroupModel).where(ApprovalGroupModel.group_id == group_id)
        ).scalar_one_or_none()
        if group is None:
            raise KeyError(f"Approval group not found: {group_id}")
        return group
