"""
Tests for ReconciliationEngine -- bulk classification and import.

The ERP is the in-memory FakeRecordStore; rows are plain dicts, numbered
from 1 in the order given.
"""

import pytest

from registration_ingestion.adapters.base import SourceRow
from registration_ingestion.services.reconciliation_service import ReconciliationEngine
from registration_kernel.domain.external import FieldType, TemplateDefinition, TemplateField
from registration_kernel.domain.reconciliation import RowErrorCode, RowOperation
from registration_kernel.domain.registration import OperationType, RegistrationStatus
from registration_kernel.exceptions import (
    BulkImportNotAllowedError,
    BulkRowLimitExceededError,
    NoValidRowsError,
    ReconciliationLookupError,
    TemplateNotFoundError,
)
from registration_kernel.services.auditor_service import RegistrationAuditor
from registration_kernel.utils.timeouts import GuardedRecordStore
from tests.conftest import REQUESTER, StaticTemplateProvider, product_form

_BATCHES = TemplateDefinition(
    template_id="batches",
    name="Batches",
    table_name="ZB1",
    fields=(
        TemplateField("BATCH_NO", "Batch number", FieldType.NUMBER, required=True),
        TemplateField("LABEL", "Label"),
    ),
    key_fields=("BATCH_NO",),
)


@pytest.fixture
def reconciliation(session, templates, erp, clock):
    return ReconciliationEngine(session, templates, erp, clock, lookup_workers=4)


@pytest.fixture
def ten_rows(erp):
    """Ten uploaded products: three already in the ERP, one without a code."""
    for code in ("P-02", "P-05", "P-08"):
        erp.add("SB1", product_form(code, price="1.00"))
    rows = [product_form(f"P-{n:02d}", price="2.00") for n in range(1, 10)]
    rows.insert(6, product_form("", price="2.00"))
    return rows


def _codes(records):
    return [r.values.get("PRODUCT_CODE") for r in records]


class TestClassify:

    def test_mixed_upload(self, reconciliation, ten_rows):
        result = reconciliation.classify("products", ten_rows)

        assert result.summary.total == 10
        assert result.summary.new == 6
        assert result.summary.alteration == 3
        assert result.summary.error == 1
        assert [r.row_number for r in result.records] == list(range(1, 11))

        alterations = result.by_operation(RowOperation.ALTERATION)
        assert _codes(alterations) == ["P-02", "P-05", "P-08"]
        assert all(r.external_record_id for r in alterations)
        assert alterations[0].original_values["PRICE"] == "1.00"
        assert alterations[0].values["PRICE"] == "2.00"

        (error,) = result.by_operation(RowOperation.ERROR)
        assert error.row_number == 7
        assert error.errors[0].code == RowErrorCode.INCOMPLETE_KEY
        assert error.errors[0].field == "PRODUCT_CODE"

    def test_validation_errors_are_not_looked_up(self, reconciliation, erp):
        rows = [product_form("P-1", price="abc"), product_form("P-2", UNIT="XX")]

        result = reconciliation.classify("products", rows)

        assert [e.code for e in result.errors] == [
            RowErrorCode.INVALID_NUMBER,
            RowErrorCode.INVALID_OPTION,
        ]
        assert erp.calls_for("search") == []

    def test_duplicate_keys_mark_every_row(self, reconciliation, erp):
        rows = [
            product_form("P-1"),
            product_form("p-1 "),
            product_form("P-2"),
        ]

        result = reconciliation.classify("products", rows)

        duplicates = [r for r in result.records if r.is_error]
        assert [r.row_number for r in duplicates] == [1, 2]
        assert all(
            r.errors[0].code == RowErrorCode.DUPLICATE_KEY_IN_BATCH for r in duplicates
        )
        assert "1, 2" in duplicates[0].errors[0].message
        searched = {c[2]["PRODUCT_CODE"].upper() for c in erp.calls_for("search")}
        assert searched == {"P-2"}

    def test_ambiguous_match(self, reconciliation, erp):
        erp.add("SB1", product_form("P-1"))
        erp.add("SB1", product_form("P-1"))

        result = reconciliation.classify("products", [product_form("P-1")])

        (record,) = result.records
        assert record.operation == RowOperation.ERROR
        assert record.errors[0].code == RowErrorCode.AMBIGUOUS_KEY

    def test_composite_key(self, reconciliation, erp):
        erp.add("SA1", {"CUSTOMER_CODE": "C1", "STORE": "01", "NAME": "Acme"})
        rows = [
            {"CUSTOMER_CODE": "C1", "STORE": "01", "NAME": "Acme Ltd"},
            {"CUSTOMER_CODE": "C1", "STORE": "02", "NAME": "Acme North"},
            {"CUSTOMER_CODE": "C2", "STORE": "", "NAME": "Other"},
        ]

        result = reconciliation.classify("customers", rows)

        assert [r.operation for r in result.records] == [
            RowOperation.ALTERATION,
            RowOperation.NEW,
            RowOperation.ERROR,
        ]
        assert result.records[2].errors[0].field == "STORE"

    def test_source_rows_keep_their_numbers(self, reconciliation):
        rows = [SourceRow(row_number=12, values=product_form("P-1"))]
        assert reconciliation.classify("products", rows).records[0].row_number == 12

    def test_template_without_keys_is_all_new(self, reconciliation, erp):
        result = reconciliation.classify("notes", [{"TEXT": "a"}, {"TEXT": "a"}])

        assert result.summary.new == 2
        assert any("no key fields" in w for w in result.warnings)
        assert erp.calls_for("search") == []


class TestKeyNormalization:

    def test_key_in_other_case_matches(self, reconciliation, erp):
        record_id = erp.add("SB1", product_form("P-001"))

        result = reconciliation.classify("products", [product_form(" p-001 ")])

        (record,) = result.records
        assert record.operation == RowOperation.ALTERATION
        assert record.external_record_id == record_id
        assert record.original_values == product_form("P-001")

    def test_number_key_with_decimal_comma_matches(self, session, erp, clock):
        record_id = erp.add("ZB1", {"BATCH_NO": "10.5", "LABEL": "Old"})
        engine = ReconciliationEngine(
            session, StaticTemplateProvider(_BATCHES), erp, clock,
        )

        result = engine.classify("batches", [
            {"BATCH_NO": "10,50", "LABEL": "New"},
            {"BATCH_NO": "11", "LABEL": "Other"},
        ])

        assert [r.operation for r in result.records] == [
            RowOperation.ALTERATION,
            RowOperation.NEW,
        ]
        assert result.records[0].external_record_id == record_id

    def test_case_variants_in_erp_are_ambiguous(self, reconciliation, erp):
        erp.add("SB1", product_form("P-001"))
        erp.add("SB1", product_form("p-001"))

        (record,) = reconciliation.classify("products", [product_form("P-001")]).records

        assert record.errors[0].code == RowErrorCode.AMBIGUOUS_KEY

    def test_import_of_recased_key_creates_no_new_record(self, reconciliation, erp):
        erp.add("SB1", product_form("P-001"))

        result = reconciliation.import_rows(
            "products", [product_form("p-001", price="20.00")], REQUESTER,
        )

        assert result.new_request is None
        assert len(result.alteration_request.items) == 1


class TestWarnings:

    def test_missing_columns(self, reconciliation):
        result = reconciliation.classify(
            "products",
            [{"PRODUCT_CODE": "P-1"}],
            columns=["PRODUCT_CODE"],
        )
        assert result.warnings == ("missing required column(s): DESCRIPTION",)

    def test_template_mismatch(self, reconciliation):
        result = reconciliation.classify(
            "products", [product_form("P-1")], source_template_id="customers",
        )
        assert any("'customers'" in w for w in result.warnings)

    def test_clean_upload_has_no_warnings(self, reconciliation):
        result = reconciliation.classify(
            "products", [product_form("P-1")], source_template_id="products",
        )
        assert result.warnings == ()


class TestGuards:

    def test_unknown_template(self, reconciliation):
        with pytest.raises(TemplateNotFoundError):
            reconciliation.classify("nope", [])

    def test_bulk_not_allowed(self, reconciliation):
        with pytest.raises(BulkImportNotAllowedError):
            reconciliation.classify("price_tables", [{"TABLE_CODE": "T1"}])

    def test_row_limit(self, session, templates, erp, clock):
        engine = ReconciliationEngine(session, templates, erp, clock, max_bulk_rows=2)
        engine.classify("products", [product_form("P-1"), product_form("P-2")])
        with pytest.raises(BulkRowLimitExceededError) as exc_info:
            engine.classify("products", [product_form(f"P-{n}") for n in range(3)])
        assert exc_info.value.max_rows == 2

    def test_invalid_worker_count(self, session, templates, erp, clock):
        with pytest.raises(ValueError):
            ReconciliationEngine(session, templates, erp, clock, lookup_workers=0)


class TestLookupFailure:

    def test_erp_error_aborts_classification(self, reconciliation, erp):
        erp.fail("search", when=lambda filters: filters["PRODUCT_CODE"] == "P-3")
        rows = [product_form(f"P-{n}") for n in range(1, 6)]

        with pytest.raises(ReconciliationLookupError) as exc_info:
            reconciliation.classify("products", rows)
        assert exc_info.value.row_number == 3
        assert exc_info.value.retryable is True

    def test_timeout_aborts_classification(self, session, templates, erp, clock):
        erp.delay("search", 0.5)
        engine = ReconciliationEngine(
            session, templates, GuardedRecordStore(erp, 0.05), clock,
        )
        with pytest.raises(ReconciliationLookupError) as exc_info:
            engine.classify("products", [product_form("P-1")])
        assert "timed out" in exc_info.value.cause

    def test_import_after_failure_creates_nothing(self, reconciliation, registrations, erp):
        erp.fail("search")
        with pytest.raises(ReconciliationLookupError):
            reconciliation.import_rows("products", [product_form("P-1")], REQUESTER)
        assert registrations.list_requests() == []


class TestImport:

    def test_creates_one_draft_per_operation(self, reconciliation, ten_rows, session, clock):
        result = reconciliation.import_rows("products", ten_rows, REQUESTER)

        new, alteration = result.new_request, result.alteration_request
        assert new.operation_type == OperationType.NEW
        assert new.status == RegistrationStatus.DRAFT
        assert new.form_data["_item_count"] == 6
        assert alteration.operation_type == OperationType.ALTERATION
        assert [i["row_number"] for i in alteration.items] == [2, 5, 9]
        assert alteration.original_form_data["items"][0]["values"]["PRICE"] == "1.00"
        assert [e.code for e in result.errors] == [RowErrorCode.INCOMPLETE_KEY]
        assert len(result.created_requests) == 2
        assert RegistrationAuditor(session, clock).history(new.request_id)[0].action == (
            "draft_created"
        )

    def test_no_empty_batch(self, reconciliation):
        result = reconciliation.import_rows(
            "products", [product_form("P-1"), product_form("P-2")], REQUESTER,
        )
        assert result.alteration_request is None
        assert result.created_requests == (result.new_request,)

    def test_all_rows_invalid(self, reconciliation):
        with pytest.raises(NoValidRowsError) as exc_info:
            reconciliation.import_rows(
                "products", [product_form(""), product_form("P-1", price="x")], REQUESTER,
            )
        assert exc_info.value.error_count == 2
