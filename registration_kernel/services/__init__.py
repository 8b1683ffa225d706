"""Services for the registration kernel (write side)."""

from registration_kernel.services.approval_group_service import ApprovalGroupDirectory
from registration_kernel.services.approval_service import ApprovalService
from registration_kernel.services.auditor_service import RegistrationAuditor
from registration_kernel.services.field_change_recorder import FieldChangeRecorder
from registration_kernel.services.registration_service import RegistrationService
from registration_kernel.services.request_lock import RequestLockRegistry
from registration_kernel.services.sync_orchestrator import SyncOrchestrator
from registration_kernel.services.tracking_service import TrackingNumberService
from registration_kernel.services.workflow_definition_service import (
    WorkflowDefinitionService,
)
from registration_kernel.services.workflow_resolver import WorkflowSnapshotResolver

__all__ = [
    "ApprovalGroupDirectory",
    "ApprovalService",
    "FieldChangeRecorder",
    "RegistrationAuditor",
    "RegistrationService",
    "RequestLockRegistry",
    "SyncOrchestrator",
    "TrackingNumberService",
    "WorkflowDefinitionService",
    "WorkflowSnapshotResolver",
]
