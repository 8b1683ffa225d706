"""
Tests for RegistrationService -- draft CRUD, tracking numbers, queries.
"""

from uuid import uuid4

import pytest

from registration_kernel.domain.registration import (
    OperationType,
    RegistrationStatus,
)
from registration_kernel.exceptions import (
    AlterationBaselineMissingError,
    DraftNotEditableError,
    ExternalRecordNotFoundError,
    NotRequesterError,
    RegistrationNotFoundError,
    TemplateNotFoundError,
)
from registration_kernel.services.auditor_service import RegistrationAuditor
from registration_kernel.services.registration_service import RegistrationService
from registration_kernel.services.tracking_service import format_tracking_number
from tests.conftest import APPROVER_A, APPROVER_B, REQUESTER, product_form


class TestCreateDraft:

    def test_new_draft(self, registrations):
        draft = registrations.create_draft("products", REQUESTER, product_form("P-1"))

        assert draft.status == RegistrationStatus.DRAFT
        assert draft.operation_type == OperationType.NEW
        assert draft.table_name == "SB1"
        assert draft.current_level == 0
        assert draft.form_data["PRODUCT_CODE"] == "P-1"
        assert draft.original_form_data is None
        assert draft.workflow_snapshot is None
        assert draft.approvals == ()

    def test_tracking_numbers_are_sequential(self, registrations):
        first = registrations.create_draft("products", REQUESTER, product_form("P-1"))
        second = registrations.create_draft("customers", REQUESTER, {"CUSTOMER_CODE": "C1"})

        assert first.tracking_number == "2024-00001"
        assert second.tracking_number == "2024-00002"

    def test_tracking_number_restarts_each_year(self, registrations, clock):
        registrations.create_draft("products", REQUESTER, product_form("P-1"))
        clock.advance(366 * 24 * 3600)
        later = registrations.create_draft("products", REQUESTER, product_form("P-2"))
        assert later.tracking_number == "2025-00001"

    def test_format_tracking_number(self):
        assert format_tracking_number(2024, 42) == "2024-00042"

    def test_unknown_template(self, registrations):
        with pytest.raises(TemplateNotFoundError):
            registrations.create_draft("nope", REQUESTER, {})

    def test_creation_is_audited(self, registrations, session, clock):
        draft = registrations.create_draft("products", REQUESTER, product_form())
        events = RegistrationAuditor(session, clock).history(draft.request_id)
        assert [e.action for e in events] == ["draft_created"]
        assert events[0].payload["tracking_number"] == draft.tracking_number


class TestAlterationDraft:

    def test_baseline_comes_from_erp(self, registrations, erp):
        record_id = erp.add("SB1", product_form("P-9", price="5.00"))

        draft = registrations.create_alteration_draft(
            "products", REQUESTER, record_id, {"PRICE": "6.00"},
        )

        assert draft.operation_type == OperationType.ALTERATION
        assert draft.external_record_id == record_id
        assert draft.original_form_data["PRICE"] == "5.00"
        assert draft.form_data["PRICE"] == "6.00"
        assert draft.form_data["PRODUCT_CODE"] == "P-9"

    def test_missing_erp_record(self, registrations):
        with pytest.raises(ExternalRecordNotFoundError):
            registrations.create_alteration_draft("products", REQUESTER, "404")

    def test_without_record_store(self, session, templates, clock):
        service = RegistrationService(session, templates, None, clock)
        with pytest.raises(AlterationBaselineMissingError):
            service.create_alteration_draft("products", REQUESTER, "1")

    def test_erp_record_without_values(self, registrations, erp):
        record_id = erp.add("SB1", {})

        with pytest.raises(AlterationBaselineMissingError) as exc_info:
            registrations.create_alteration_draft(
                "products", REQUESTER, record_id, {"PRICE": "6.00"},
            )

        assert record_id in exc_info.value.reason
        assert registrations.list_requests() == []


class TestBulkDraft:

    def test_new_bulk_draft(self, make_bulk_draft):
        draft = make_bulk_draft(["P-1", "P-2", "P-3"])
        assert draft.is_bulk
        assert draft.form_data["_item_count"] == 3
        assert [i["row_number"] for i in draft.items] == [5, 6, 7]

    def test_alteration_bulk_requires_baselines(self, registrations):
        items = [{"row_number": 5, "values": product_form("P-1"), "external_record_id": "1"}]
        with pytest.raises(AlterationBaselineMissingError):
            registrations.create_bulk_draft(
                "products", REQUESTER, OperationType.ALTERATION, items, [],
            )

    def test_alteration_bulk_requires_external_reference(self, registrations):
        items = [{"row_number": 5, "values": product_form("P-1"), "external_record_id": None}]
        originals = [{"row_number": 5, "values": product_form("P-1"), "external_record_id": None}]
        with pytest.raises(AlterationBaselineMissingError):
            registrations.create_bulk_draft(
                "products", REQUESTER, OperationType.ALTERATION, items, originals,
            )

    def test_alteration_bulk_keeps_baselines(self, registrations):
        items = [{"row_number": 5, "values": product_form("P-1", "2.00"), "external_record_id": "7"}]
        originals = [{"row_number": 5, "values": product_form("P-1", "1.00"), "external_record_id": "7"}]
        draft = registrations.create_bulk_draft(
            "products", REQUESTER, OperationType.ALTERATION, items, originals,
        )
        assert draft.original_form_data["items"][0]["values"]["PRICE"] == "1.00"
        assert draft.items[0]["values"]["PRICE"] == "2.00"


class TestUpdateAndDelete:

    def test_update_by_requester(self, registrations, make_draft):
        draft = make_draft()
        updated = registrations.update_draft(
            draft.request_id, REQUESTER, product_form(price="99.00"),
        )
        assert updated.form_data["PRICE"] == "99.00"

    def test_update_by_other_user(self, registrations, make_draft):
        draft = make_draft()
        with pytest.raises(NotRequesterError):
            registrations.update_draft(draft.request_id, APPROVER_A, product_form())

    def test_update_after_submit(self, registrations, approvals_without_sync, make_draft, two_level_workflow):
        draft = make_draft()
        approvals_without_sync.submit(draft.request_id, REQUESTER)
        with pytest.raises(DraftNotEditableError):
            registrations.update_draft(draft.request_id, REQUESTER, product_form())

    def test_bulk_draft_stays_bulk(self, registrations, make_bulk_draft):
        draft = make_bulk_draft(["P-1"])
        with pytest.raises(ValueError):
            registrations.update_draft(draft.request_id, REQUESTER, product_form())

    def test_delete_keeps_audit_trail(self, registrations, make_draft, session, clock):
        draft = make_draft()
        registrations.delete_draft(draft.request_id, REQUESTER)

        with pytest.raises(RegistrationNotFoundError):
            registrations.get(draft.request_id)
        actions = [
            e.action for e in RegistrationAuditor(session, clock).history(draft.request_id)
        ]
        assert actions == ["draft_created", "draft_deleted"]

    def test_delete_by_other_user(self, registrations, make_draft):
        draft = make_draft()
        with pytest.raises(NotRequesterError):
            registrations.delete_draft(draft.request_id, APPROVER_B)


class TestQueries:

    def test_get_unknown(self, registrations):
        with pytest.raises(RegistrationNotFoundError):
            registrations.get(uuid4())

    def test_list_filters(self, registrations, make_draft, clock):
        mine = make_draft(product_form("P-1"))
        clock.tick()
        make_draft(product_form("P-2"), requester_id="other.user")
        clock.tick()
        customer = registrations.create_draft("customers", REQUESTER, {"CUSTOMER_CODE": "C1"})

        by_requester = registrations.list_requests(requester_id=REQUESTER)
        assert [r.request_id for r in by_requester] == [customer.request_id, mine.request_id]

        by_template = registrations.list_requests(template_id="customers")
        assert [r.request_id for r in by_template] == [customer.request_id]

        drafts = registrations.list_requests(status=RegistrationStatus.DRAFT)
        assert len(drafts) == 3
        assert registrations.list_requests(status=RegistrationStatus.SYNCED) == []

    def test_pending_approvals_follow_current_level(
        self, registrations, approvals_without_sync, make_draft, two_level_workflow,
    ):
        draft = make_draft()
        approvals_without_sync.submit(draft.request_id, REQUESTER)

        assert [r.request_id for r in registrations.pending_approvals_for(APPROVER_A)] == [
            draft.request_id
        ]
        assert registrations.pending_approvals_for(APPROVER_B) == []

        approvals_without_sync.approve(draft.request_id, APPROVER_A)
        assert registrations.pending_approvals_for(APPROVER_A) == []
        assert [r.request_id for r in registrations.pending_approvals_for(APPROVER_B)] == [
            draft.request_id
        ]
