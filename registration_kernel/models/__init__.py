"""SQLAlchemy ORM models for the registration kernel."""

from registration_kernel.models.approval_group import (
    ApprovalGroupMemberModel,
    ApprovalGroupModel,
)
from registration_kernel.models.audit_event import (
    RegistrationAuditAction,
    RegistrationAuditEventModel,
)
from registration_kernel.models.field_change import FieldChangeModel
from registration_kernel.models.registration import (
    ApprovalRecordModel,
    RegistrationRequestModel,
)
from registration_kernel.models.tracking_sequence import TrackingSequenceModel
from registration_kernel.models.workflow import (
    RegistrationWorkflowModel,
    WorkflowLevelModel,
)

__all__ = [
    "ApprovalGroupMemberModel",
    "ApprovalGroupModel",
    "ApprovalRecordModel",
    "FieldChangeModel",
    "RegistrationAuditAction",
    "RegistrationAuditEventModel",
    "RegistrationRequestModel",
    "RegistrationWorkflowModel",
    "TrackingSequenceModel",
    "WorkflowLevelModel",
]
