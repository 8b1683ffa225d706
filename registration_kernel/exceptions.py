"""
Typed Exception Hierarchy for the Registration Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval and sync flows are driven by outer layers (APIs, batch jobs,
import screens) that must react to each failure differently.  Parsing
message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        approvals.approve(request_id, actor_id)
    except ApprovalAlreadyTerminalError as e:
        api_response(code=e.code, status=e.status)
    except NotAnApproverError as e:
        api_response(code=e.code, level=e.level)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    RegistrationKernelError (base)
    |
    +-- WorkflowConfigurationError
    |   +-- NoActiveWorkflowError
    |   +-- MalformedWorkflowError
    |
    +-- ApprovalAuthorizationError
    |   +-- SelfApprovalForbiddenError
    |   +-- NotAnApproverError
    |   +-- ApproverAlreadyActedError
    |   +-- NotRequesterError
    |
    +-- RegistrationValidationError
    |   +-- RejectReasonRequiredError
    |   +-- SendBackReasonRequiredError
    |   +-- FieldNotEditableError
    |   +-- InvalidTargetLevelError
    |   +-- AlterationBaselineMissingError
    |
    +-- RegistrationStateError
    |   +-- RegistrationNotFoundError
    |   +-- InvalidRegistrationTransitionError
    |   +-- ApprovalAlreadyTerminalError
    |   +-- DraftNotEditableError
    |   +-- SnapshotTamperedError
    |
    +-- ReconciliationError
    |   +-- NoValidRowsError
    |   +-- ReconciliationLookupError
    |   +-- BulkImportNotAllowedError
    |   +-- BulkRowLimitExceededError
    |   +-- TemplateNotFoundError
    |   +-- UnsupportedFileFormatError
    |
    +-- SyncError
    |   +-- SyncNotAllowedError
    |
    +-- ExternalSystemError
    |   +-- ExternalSystemTimeoutError
    |   +-- ExternalRecordNotFoundError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- RequestBusyError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Workflow        | NO_ACTIVE_WORKFLOW            | Zero or several active workflows
                | MALFORMED_WORKFLOW            | Level gap/duplicate, empty approvers
----------------|-------------------------------|---------------------------------------
Authorization   | SELF_APPROVAL_FORBIDDEN       | Requester acting on own request
                | NOT_AN_APPROVER               | Actor has no record at current level
                | APPROVER_ALREADY_ACTED        | Actor's record is not PENDING
                | NOT_REQUESTER                 | Someone else submits/edits a draft
----------------|-------------------------------|---------------------------------------
Validation      | REJECT_REASON_REQUIRED        | Empty reject reason
                | SEND_BACK_REASON_REQUIRED     | Empty send-back reason
                | FIELD_NOT_EDITABLE            | Edit outside level's editable set
                | INVALID_TARGET_LEVEL          | Send-back target out of range
                | ALTERATION_BASELINE_MISSING   | Alteration without original data
----------------|-------------------------------|---------------------------------------
State           | REGISTRATION_NOT_FOUND        | Unknown request id
                | INVALID_REGISTRATION_TRANSITION | Transition not in the table
                | APPROVAL_ALREADY_TERMINAL     | Acting after approval has ended
                | DRAFT_NOT_EDITABLE            | Editing/deleting a non-DRAFT request
                | SNAPSHOT_TAMPERED             | Snapshot hash mismatch on load
----------------|-------------------------------|---------------------------------------
Reconciliation  | NO_VALID_ROWS                 | Import produced no NEW/ALTERATION rows
                | RECONCILIATION_LOOKUP_FAILED  | ERP lookup failed; whole call aborted
                | BULK_IMPORT_NOT_ALLOWED       | Template disallows bulk import
                | BULK_ROW_LIMIT_EXCEEDED       | More rows than max_bulk_rows
                | TEMPLATE_NOT_FOUND            | Unknown template id
                | UNSUPPORTED_FILE_FORMAT       | Not .xlsx or .csv
----------------|-------------------------------|---------------------------------------
Sync            | SYNC_NOT_ALLOWED              | retry_sync outside SYNC_FAILED
----------------|-------------------------------|---------------------------------------
External        | EXTERNAL_SYSTEM_ERROR         | ERP call failed
                | EXTERNAL_SYSTEM_TIMEOUT       | ERP call exceeded its timeout
                | EXTERNAL_RECORD_NOT_FOUND     | Alteration target missing in ERP
----------------|-------------------------------|---------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT      | Concurrent modification detected
                | REQUEST_BUSY                  | Request lock not acquired in time
Immutability    | IMMUTABILITY_VIOLATION        | Modifying an append-only record

===============================================================================
"""


class RegistrationKernelError(Exception):
    """
    Base exception for all registration kernel errors.

    All subclasses must have a `code` class attribute for
    machine-readable error identification.
    """

    code: str = "REGISTRATION_KERNEL_ERROR"


# Workflow configuration exceptions


class WorkflowConfigurationError(RegistrationKernelError):
    """Base exception for workflow configuration errors."""

    code: str = "WORKFLOW_CONFIGURATION_ERROR"


class NoActiveWorkflowError(WorkflowConfigurationError):
    """No single active workflow exists for a template."""

    code: str = "NO_ACTIVE_WORKFLOW"

    def __init__(self, template_id: str, active_count: int = 0):
        self.template_id = template_id
        self.active_count = active_count
        if active_count == 0:
            detail = "no active workflow"
        else:
            detail = f"{active_count} active workflows, expected exactly one"
        super().__init__(f"Template {template_id}: {detail}")


class MalformedWorkflowError(WorkflowConfigurationError):
    """Workflow levels are not contiguous or a level has no approvers."""

    code: str = "MALFORMED_WORKFLOW"

    def __init__(self, workflow_id: str, reason: str, level: int | None = None):
        self.workflow_id = workflow_id
        self.reason = reason
        self.level = level
        where = f" (level {level})" if level is not None else ""
        super().__init__(f"Workflow {workflow_id} is malformed{where}: {reason}")


# Authorization exceptions


class ApprovalAuthorizationError(RegistrationKernelError):
    """Base exception for actor authorization failures."""

    code: str = "APPROVAL_AUTHORIZATION_ERROR"


class SelfApprovalForbiddenError(ApprovalAuthorizationError):
    """
    The requester may never approve, reject, or send back their own request.

    Also raised at submission when a level would have no approver
    other than the requester.
    """

    code: str = "SELF_APPROVAL_FORBIDDEN"

    def __init__(self, request_id: str, actor_id: str, level: int | None = None):
        self.request_id = request_id
        self.actor_id = actor_id
        self.level = level
        if level is None:
            msg = f"Actor {actor_id} is the requester of {request_id}"
        else:
            msg = (
                f"Level {level} of {request_id} has no approver other "
                f"than the requester {actor_id}"
            )
        super().__init__(msg)


class NotAnApproverError(ApprovalAuthorizationError):
    """Actor holds no approval record at the request's current level."""

    code: str = "NOT_AN_APPROVER"

    def __init__(self, request_id: str, actor_id: str, level: int):
        self.request_id = request_id
        self.actor_id = actor_id
        self.level = level
        super().__init__(
            f"Actor {actor_id} is not an approver of {request_id} at level {level}"
        )


class ApproverAlreadyActedError(ApprovalAuthorizationError):
    """Actor's record at the current level has already been decided."""

    code: str = "APPROVER_ALREADY_ACTED"

    def __init__(self, request_id: str, actor_id: str, level: int, action: str):
        self.request_id = request_id
        self.actor_id = actor_id
        self.level = level
        self.action = action
        super().__init__(
            f"Actor {actor_id} already acted on {request_id} at level {level}: {action}"
        )


class NotRequesterError(ApprovalAuthorizationError):
    """Only the requester may submit, edit, or delete a draft."""

    code: str = "NOT_REQUESTER"

    def __init__(self, request_id: str, actor_id: str):
        self.request_id = request_id
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} is not the requester of {request_id}")


# Validation exceptions


class RegistrationValidationError(RegistrationKernelError):
    """Base exception for invalid input to a lifecycle operation."""

    code: str = "REGISTRATION_VALIDATION_ERROR"


class RejectReasonRequiredError(RegistrationValidationError):
    """Reject requires a non-empty reason."""

    code: str = "REJECT_REASON_REQUIRED"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"A reason is required to reject {request_id}")


class SendBackReasonRequiredError(RegistrationValidationError):
    """Send-back requires a non-empty reason."""

    code: str = "SEND_BACK_REASON_REQUIRED"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"A reason is required to send back {request_id}")


class FieldNotEditableError(RegistrationValidationError):
    """One or more edited fields are outside the current level's editable set."""

    code: str = "FIELD_NOT_EDITABLE"

    def __init__(self, request_id: str, level: int, fields: list[str]):
        self.request_id = request_id
        self.level = level
        self.fields = fields
        super().__init__(
            f"Fields not editable at level {level} of {request_id}: {', '.join(fields)}"
        )


class InvalidTargetLevelError(RegistrationValidationError):
    """Send-back target must be 0 (draft) or a level below the current one."""

    code: str = "INVALID_TARGET_LEVEL"

    def __init__(self, request_id: str, target_level: int, current_level: int):
        self.request_id = request_id
        self.target_level = target_level
        self.current_level = current_level
        super().__init__(
            f"Invalid send-back target {target_level} for {request_id} "
            f"at level {current_level}"
        )


class AlterationBaselineMissingError(RegistrationValidationError):
    """An ALTERATION must carry the original record and its identifier."""

    code: str = "ALTERATION_BASELINE_MISSING"

    def __init__(self, request_id: str | None, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Alteration baseline missing for {request_id}: {reason}")


# State exceptions


class RegistrationStateError(RegistrationKernelError):
    """Base exception for operations invalid in the current lifecycle state."""

    code: str = "REGISTRATION_STATE_ERROR"


class RegistrationNotFoundError(RegistrationStateError):
    """Registration request with given ID was not found."""

    code: str = "REGISTRATION_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Registration request not found: {request_id}")


class InvalidRegistrationTransitionError(RegistrationStateError):
    """Requested status transition is not in the transition table."""

    code: str = "INVALID_REGISTRATION_TRANSITION"

    def __init__(self, request_id: str, from_status: str, to_status: str):
        self.request_id = request_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for {request_id}: {from_status} -> {to_status}"
        )


class ApprovalAlreadyTerminalError(RegistrationStateError):
    """
    Approval has already ended for this request.

    Raised for approve/reject/send-back once the request is REJECTED,
    APPROVED, or anywhere in the sync lifecycle.
    """

    code: str = "APPROVAL_ALREADY_TERMINAL"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Approval of {request_id} has already ended: {status}")


class DraftNotEditableError(RegistrationStateError):
    """Draft mutation attempted on a request that is no longer a DRAFT."""

    code: str = "DRAFT_NOT_EDITABLE"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Request {request_id} is {status}, not DRAFT")


class SnapshotTamperedError(RegistrationStateError):
    """Stored workflow snapshot no longer matches its hash."""

    code: str = "SNAPSHOT_TAMPERED"

    def __init__(self, request_id: str, expected_hash: str, computed_hash: str):
        self.request_id = request_id
        self.expected_hash = expected_hash
        self.computed_hash = computed_hash
        super().__init__(
            f"Workflow snapshot of {request_id} was modified: "
            f"expected {expected_hash}, computed {computed_hash}"
        )


# Reconciliation exceptions


class ReconciliationError(RegistrationKernelError):
    """Base exception for bulk classification/import failures."""

    code: str = "RECONCILIATION_ERROR"


class NoValidRowsError(ReconciliationError):
    """Import produced neither a NEW nor an ALTERATION batch."""

    code: str = "NO_VALID_ROWS"

    def __init__(self, template_id: str, error_count: int):
        self.template_id = template_id
        self.error_count = error_count
        super().__init__(
            f"No valid rows to import for template {template_id} "
            f"({error_count} row(s) with errors)"
        )


class ReconciliationLookupError(ReconciliationError):
    """
    An external lookup failed during classification.

    The whole call is aborted; no partial classification is returned.
    """

    code: str = "RECONCILIATION_LOOKUP_FAILED"
    retryable: bool = True

    def __init__(self, template_id: str, row_number: int | None, cause: str):
        self.template_id = template_id
        self.row_number = row_number
        self.cause = cause
        super().__init__(
            f"External lookup failed for template {template_id} "
            f"(row {row_number}): {cause}"
        )


class BulkImportNotAllowedError(ReconciliationError):
    """Template is not enabled for bulk import."""

    code: str = "BULK_IMPORT_NOT_ALLOWED"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} does not allow bulk import")


class BulkRowLimitExceededError(ReconciliationError):
    """Upload has more rows than the configured maximum."""

    code: str = "BULK_ROW_LIMIT_EXCEEDED"

    def __init__(self, row_count: int, max_rows: int):
        self.row_count = row_count
        self.max_rows = max_rows
        super().__init__(f"Upload has {row_count} rows, maximum is {max_rows}")


class TemplateNotFoundError(ReconciliationError):
    """Template metadata provider has no template with this id."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class UnsupportedFileFormatError(ReconciliationError):
    """Uploaded file is neither .xlsx nor .csv."""

    code: str = "UNSUPPORTED_FILE_FORMAT"

    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Unsupported file format: {filename} (use .xlsx or .csv)")


# Sync exceptions


class SyncError(RegistrationKernelError):
    """Base exception for sync lifecycle errors."""

    code: str = "SYNC_ERROR"


class SyncNotAllowedError(SyncError):
    """Sync or retry requested from a status that does not permit it."""

    code: str = "SYNC_NOT_ALLOWED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Cannot sync {request_id} from status {status}")


# External system exceptions


class ExternalSystemError(RegistrationKernelError):
    """
    The ERP rejected or failed a call.

    ``retryable`` tells callers whether repeating the call may succeed.
    """

    code: str = "EXTERNAL_SYSTEM_ERROR"

    def __init__(
        self,
        operation: str,
        table_name: str,
        message: str,
        retryable: bool = True,
        status_code: int | None = None,
        detail: dict | None = None,
    ):
        self.operation = operation
        self.table_name = table_name
        self.retryable = retryable
        self.status_code = status_code
        self.detail = detail or {}
        super().__init__(f"ERP {operation} on {table_name} failed: {message}")


class ExternalSystemTimeoutError(ExternalSystemError):
    """The ERP did not answer within the configured timeout."""

    code: str = "EXTERNAL_SYSTEM_TIMEOUT"

    def __init__(self, operation: str, table_name: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            operation,
            table_name,
            f"timed out after {timeout_seconds}s",
            retryable=True,
        )


class ExternalRecordNotFoundError(ExternalSystemError):
    """The ERP record targeted by an alteration does not exist."""

    code: str = "EXTERNAL_RECORD_NOT_FOUND"

    def __init__(self, table_name: str, identifier: str):
        self.identifier = identifier
        super().__init__(
            "get_by_identifier",
            table_name,
            f"record {identifier} not found",
            retryable=False,
        )


# Concurrency exceptions


class ConcurrencyError(RegistrationKernelError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Concurrent modification detected via the version column."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Concurrent modification detected for {entity_type} {entity_id}"
        )


class RequestBusyError(ConcurrencyError):
    """Another operation held the request for longer than the lock timeout."""

    code: str = "REQUEST_BUSY"

    def __init__(self, request_id: str, timeout_seconds: float):
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request {request_id} is busy; lock not acquired within {timeout_seconds}s"
        )


# Immutability exceptions


class ImmutabilityError(RegistrationKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
