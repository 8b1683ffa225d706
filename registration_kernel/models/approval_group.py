"""
Module: registration_kernel.models.approval_group
Responsibility: ORM persistence for approver groups and their members.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A user appears at most once per group: UNIQUE(group_id, user_id).

Audit relevance:
    Membership is read only when a workflow snapshot is resolved; later
    membership changes never alter an already-submitted request.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registration_kernel.db.base import Base, UTCDateTime


class ApprovalGroupModel(Base):
    """A named group of approvers."""

    __tablename__ = "registration_approval_groups"

    group_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    members: Mapped[list["ApprovalGroupMemberModel"]] = relationship(
        "ApprovalGroupMemberModel",
        back_populates="group",
        primaryjoin="ApprovalGroupModel.group_id == ApprovalGroupMemberModel.group_id",
        order_by="ApprovalGroupMemberModel.user_id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalGroup {self.group_id} members={len(self.members)}>"


class ApprovalGroupMemberModel(Base):
    """Membership of one user in one approval group."""

    __tablename__ = "registration_approval_group_members"

    __table_args__ = (
        UniqueConstraint(
            "group_id", "user_id",
            name="uq_registration_approval_group_members",
        ),
    )

    group_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("registration_approval_groups.group_id"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)

    group: Mapped["ApprovalGroupModel"] = relationship(
        "ApprovalGroupModel",
        back_populates="members",
        foreign_keys=[group_id],
        primaryjoin="ApprovalGroupMemberModel.group_id == ApprovalGroupModel.group_id",
    )
