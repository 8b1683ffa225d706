"""
Tests for ApprovalService.send_back.

Send-back discards the approval records at and above the target level,
copies them into the SENT_BACK audit event, and keeps field changes.
"""

import pytest

from registration_kernel.domain.registration import ApprovalAction, RegistrationStatus
from registration_kernel.exceptions import (
    ApprovalAlreadyTerminalError,
    InvalidTargetLevelError,
    NotAnApproverError,
    SendBackReasonRequiredError,
)
from registration_kernel.services.auditor_service import RegistrationAuditor
from tests.conftest import (
    APPROVER_A,
    APPROVER_B,
    APPROVER_C,
    REQUESTER,
    level,
    product_form,
)


@pytest.fixture
def at_level_three(approvals_without_sync, make_draft, three_level_workflow):
    draft = make_draft(product_form(price="10.00"))
    approvals_without_sync.submit(draft.request_id, REQUESTER)
    approvals_without_sync.approve(draft.request_id, APPROVER_A, field_edits={"PRICE": "11.00"})
    approvals_without_sync.approve(draft.request_id, APPROVER_B)
    return draft.request_id


def _sent_back_event(session, clock, request_id):
    events = RegistrationAuditor(session, clock).history(request_id)
    return [e for e in events if e.action == "sent_back"][-1]


class TestSendBackTargets:

    def test_default_target_is_previous_level(self, approvals_without_sync, at_level_three):
        result = approvals_without_sync.send_back(at_level_three, APPROVER_C, "check price")

        assert result.status == RegistrationStatus.IN_APPROVAL
        assert result.current_level == 2
        # Level 2 starts over with a fresh pending record
        assert [(r.approver_id, r.action) for r in result.approvals_at(2)] == [
            (APPROVER_B, ApprovalAction.PENDING)
        ]
        assert result.approvals_at(3) == ()
        assert result.approvals_at(1)[0].action == ApprovalAction.APPROVED

    def test_explicit_target_level(self, approvals_without_sync, at_level_three):
        result = approvals_without_sync.send_back(
            at_level_three, APPROVER_C, "start over", target_level=1,
        )
        assert result.current_level == 1
        assert [r.action for r in result.approvals_at(1)] == [ApprovalAction.PENDING]
        assert result.approvals_at(2) == ()

    def test_send_back_to_draft(self, approvals_without_sync, at_level_three):
        result = approvals_without_sync.send_back(
            at_level_three, APPROVER_C, "rework", target_level=0,
        )
        assert result.status == RegistrationStatus.DRAFT
        assert result.current_level == 0
        assert result.approvals == ()

    def test_from_level_one_default_is_draft(
        self, approvals_without_sync, make_draft, two_level_workflow,
    ):
        draft = make_draft()
        approvals_without_sync.submit(draft.request_id, REQUESTER)
        result = approvals_without_sync.send_back(draft.request_id, APPROVER_A, "incomplete")
        assert result.status == RegistrationStatus.DRAFT

    @pytest.mark.parametrize("target", [3, 4, -1])
    def test_invalid_target(self, approvals_without_sync, at_level_three, target):
        with pytest.raises(InvalidTargetLevelError) as exc_info:
            approvals_without_sync.send_back(
                at_level_three, APPROVER_C, "x", target_level=target,
            )
        assert exc_info.value.current_level == 3


class TestSendBackGuards:

    def test_reason_required(self, approvals_without_sync, at_level_three):
        with pytest.raises(SendBackReasonRequiredError):
            approvals_without_sync.send_back(at_level_three, APPROVER_C, " ")

    def test_only_current_level_approver(self, approvals_without_sync, at_level_three):
        with pytest.raises(NotAnApproverError):
            approvals_without_sync.send_back(at_level_three, APPROVER_A, "no")

    def test_not_after_rejection(self, approvals_without_sync, at_level_three):
        approvals_without_sync.reject(at_level_three, APPROVER_C, "no")
        with pytest.raises(ApprovalAlreadyTerminalError):
            approvals_without_sync.send_back(at_level_three, APPROVER_C, "again")


class TestSendBackHistory:

    def test_discarded_records_are_audited(
        self, approvals_without_sync, at_level_three, session, clock,
    ):
        approvals_without_sync.send_back(at_level_three, APPROVER_C, "check", target_level=1)

        event = _sent_back_event(session, clock, at_level_three)
        assert event.payload["from_level"] == 3
        assert event.payload["to_level"] == 1
        assert event.payload["reason"] == "check"
        discarded = {
            (r["level"], r["approver_id"], r["action"])
            for r in event.payload["discarded_records"]
        }
        assert discarded == {
            (1, APPROVER_A, "approved"),
            (2, APPROVER_B, "approved"),
            (3, APPROVER_C, "pending"),
        }
        assert RegistrationAuditor(session, clock).verify_chain(at_level_three)

    def test_field_changes_survive_send_back(
        self, approvals_without_sync, at_level_three, field_changes, registrations,
    ):
        approvals_without_sync.send_back(at_level_three, APPROVER_C, "rework", target_level=0)

        history = field_changes.history(at_level_three)
        assert [(c.field_name, c.new_value) for c in history] == [("PRICE", "11.00")]
        assert registrations.get(at_level_three).form_data["PRICE"] == "11.00"


class TestResubmission:

    def test_resubmission_reuses_snapshot(
        self, approvals_without_sync, make_draft, make_workflow, registrations,
    ):
        original = make_workflow(level(1, APPROVER_A), level(2, APPROVER_B))
        draft = make_draft()
        first = approvals_without_sync.submit(draft.request_id, REQUESTER)
        approvals_without_sync.send_back(draft.request_id, APPROVER_A, "fix it")

        # The live workflow changes while the request is back in draft
        make_workflow(level(1, APPROVER_C))
        registrations.update_draft(draft.request_id, REQUESTER, product_form(price="1.00"))

        again = approvals_without_sync.submit(draft.request_id, REQUESTER)
        assert again.workflow_snapshot.workflow_id == original.workflow_id
        assert again.snapshot_hash == first.snapshot_hash
        assert [r.approver_id for r in again.approvals_at(1)] == [APPROVER_A]

    def test_resubmission_is_flagged_in_audit(
        self, approvals_without_sync, make_draft, two_level_workflow, session, clock,
    ):
        draft = make_draft()
        approvals_without_sync.submit(draft.request_id, REQUESTER)
        approvals_without_sync.send_back(draft.request_id, APPROVER_A, "fix")
        approvals_without_sync.submit(draft.request_id, REQUESTER)

        submits = [
            e.payload["resubmission"]
            for e in RegistrationAuditor(session, clock).history(draft.request_id)
            if e.action == "submitted"
        ]
        assert submits == [False, True]
