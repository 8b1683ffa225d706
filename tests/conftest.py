"""
Pytest fixtures for the registration test suite.

Provides:
- SQLite database per test (in-memory; file-backed for concurrency tests)
- Deterministic clock
- In-memory ERP record store with failure and delay injection
- Static template provider with a products and a customers template
- Workflow / draft factories wired to the kernel services
- Structured log capture

Environment Variables:
- DATABASE_URL: optional database URL for the file-backed engine used by
  concurrency tests.  Defaults to a SQLite file under pytest's tmp_path.
"""

import json
import logging
import os
import threading
import time
from collections import defaultdict
from decimal import Decimal
from io import StringIO
from typing import Any, Callable

import pytest

from registration_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from registration_kernel.domain.clock import DeterministicClock
from registration_kernel.domain.external import (
    ExternalRecord,
    FieldRules,
    FieldType,
    TemplateDefinition,
    TemplateField,
)
from registration_kernel.domain.registration import OperationType
from registration_kernel.domain.workflow import (
    LevelApprovalMode,
    WorkflowLevelDefinition,
)
from registration_kernel.exceptions import ExternalSystemError, TemplateNotFoundError
from registration_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from registration_kernel.services.approval_group_service import ApprovalGroupDirectory
from registration_kernel.services.approval_service import ApprovalService
from registration_kernel.services.field_change_recorder import FieldChangeRecorder
from registration_kernel.services.registration_service import RegistrationService
from registration_kernel.services.sync_orchestrator import SyncOrchestrator
from registration_kernel.services.workflow_definition_service import (
    WorkflowDefinitionService,
)
from registration_kernel.services.workflow_resolver import WorkflowSnapshotResolver


REQUESTER = "joao.silva"
APPROVER_A = "ana.souza"
APPROVER_B = "bruno.lima"
APPROVER_C = "carla.mendes"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture registration_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, approvals):
            approvals.submit(...)
            logs = captured_logs()
            assert any(r["message"] == "registration_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("registration_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine():
    """Fresh in-memory SQLite database for one test."""
    eng = init_engine_from_url("sqlite://")
    create_tables()
    yield eng
    reset_engine()


@pytest.fixture
def file_db_engine(tmp_path):
    """File-backed database for tests that use several connections at once."""
    url = os.environ.get("DATABASE_URL", f"sqlite:///{tmp_path / 'registration.db'}")
    eng = init_engine_from_url(url, pool_timeout=30)
    drop_tables()
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session(db_engine):
    """Session bound to the per-test database; rolled back afterwards."""
    s = get_session()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


# =============================================================================
# Clock
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


# =============================================================================
# ERP fake
# =============================================================================


class FakeRecordStore:
    """
    In-memory ExternalRecordStore.

    Records live per table; identifiers are allocated from 1000 upwards.
    ``fail`` and ``delay`` inject faults per operation.  Thread-safe.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str, Any]] = []
        self._next_id = 1000
        self._lock = threading.Lock()
        self._failures: list[dict[str, Any]] = []
        self._delays: dict[str, float] = {}

    # -- setup helpers -------------------------------------------------------

    def add(self, table_name: str, values: dict[str, Any], identifier: str | None = None) -> str:
        with self._lock:
            if identifier is None:
                identifier = str(self._next_id)
                self._next_id += 1
            self.tables[table_name][identifier] = dict(values)
            return identifier

    def fail(
        self,
        operation: str,
        error: Exception | None = None,
        when: Callable[[Any], bool] | None = None,
        times: int | None = None,
    ) -> None:
        """Make ``operation`` raise ``error`` (default: retryable HTTP 500)."""
        self._failures.append({
            "operation": operation,
            "error": error,
            "when": when,
            "remaining": times,
        })

    def clear_failures(self) -> None:
        self._failures.clear()

    def delay(self, operation: str, seconds: float) -> None:
        self._delays[operation] = seconds

    def calls_for(self, operation: str) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == operation]

    # -- ExternalRecordStore -------------------------------------------------

    def search(self, table_name: str, filters: dict[str, Any]) -> list[ExternalRecord]:
        self._enter("search", table_name, filters)
        with self._lock:
            return [
                ExternalRecord(identifier=rid, values=dict(values))
                for rid, values in self.tables[table_name].items()
                if all(
                    str(values.get(k, "")).strip() == str(v).strip()
                    for k, v in filters.items()
                )
            ]

    def get_by_identifier(self, table_name: str, identifier: str) -> ExternalRecord | None:
        self._enter("get_by_identifier", table_name, identifier)
        with self._lock:
            values = self.tables[table_name].get(identifier)
            if values is None:
                return None
            return ExternalRecord(identifier=identifier, values=dict(values))

    def create(self, table_name: str, data: dict[str, Any]) -> str:
        self._enter("create", table_name, data)
        return self.add(table_name, data)

    def update(self, table_name: str, identifier: str, data: dict[str, Any]) -> None:
        self._enter("update", table_name, (identifier, data))
        with self._lock:
            if identifier not in self.tables[table_name]:
                raise ExternalSystemError(
                    "update", table_name, "HTTP 404", retryable=False, status_code=404,
                )
            self.tables[table_name][identifier] = {
                **self.tables[table_name][identifier], **data,
            }

    def _enter(self, operation: str, table_name: str, argument: Any) -> None:
        with self._lock:
            self.calls.append((operation, table_name, argument))
            rule = next(
                (
                    r for r in self._failures
                    if r["operation"] == operation
                    and (r["when"] is None or r["when"](argument))
                    and (r["remaining"] is None or r["remaining"] > 0)
                ),
                None,
            )
            if rule is not None and rule["remaining"] is not None:
                rule["remaining"] -= 1
        seconds = self._delays.get(operation)
        if seconds:
            time.sleep(seconds)
        if rule is not None:
            raise rule["error"] or ExternalSystemError(
                operation, table_name, "HTTP 500", retryable=True, status_code=500,
            )


@pytest.fixture
def erp() -> FakeRecordStore:
    return FakeRecordStore()


# =============================================================================
# Templates
# =============================================================================


PRODUCTS = TemplateDefinition(
    template_id="products",
    name="Products",
    table_name="SB1",
    fields=(
        TemplateField(
            "PRODUCT_CODE", "Product code", required=True,
            rules=FieldRules(max_length=15), example="PRD-0001",
        ),
        TemplateField(
            "DESCRIPTION", "Description", required=True,
            rules=FieldRules(max_length=60), example="Bolt M8",
        ),
        TemplateField(
            "PRICE", "Unit price", FieldType.NUMBER,
            rules=FieldRules(min_value=Decimal("0")), example="10.00",
        ),
        TemplateField(
            "UNIT", "Unit of measure",
            rules=FieldRules(options=("UN", "KG", "CX")), example="UN",
        ),
        TemplateField("ACTIVE", "Active", FieldType.BOOLEAN, example="true"),
    ),
    key_fields=("PRODUCT_CODE",),
)

CUSTOMERS = TemplateDefinition(
    template_id="customers",
    name="Customers",
    table_name="SA1",
    fields=(
        TemplateField("CUSTOMER_CODE", "Customer code", required=True),
        TemplateField("STORE", "Store", required=True),
        TemplateField("NAME", "Company name", required=True),
        TemplateField("SINCE", "Customer since", FieldType.DATE),
    ),
    key_fields=("CUSTOMER_CODE", "STORE"),
)

PRICE_TABLES = TemplateDefinition(
    template_id="price_tables",
    name="Price tables",
    table_name="DA0",
    fields=(TemplateField("TABLE_CODE", "Table code", required=True),),
    key_fields=("TABLE_CODE",),
    allow_bulk_import=False,
)

NOTES = TemplateDefinition(
    template_id="notes",
    name="Notes",
    table_name="ZZ1",
    fields=(TemplateField("TEXT", "Text", required=True),),
)


class StaticTemplateProvider:
    def __init__(self, *templates: TemplateDefinition) -> None:
        self._templates = {t.template_id: t for t in templates}

    def get_template(self, template_id: str) -> TemplateDefinition:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFoundError(template_id) from None


@pytest.fixture
def templates() -> StaticTemplateProvider:
    return StaticTemplateProvider(PRODUCTS, CUSTOMERS, PRICE_TABLES, NOTES)


# =============================================================================
# Kernel services
# =============================================================================


@pytest.fixture
def directory(session, clock) -> ApprovalGroupDirectory:
    return ApprovalGroupDirectory(session, clock)


@pytest.fixture
def workflows(session, clock) -> WorkflowDefinitionService:
    return WorkflowDefinitionService(session, clock)


@pytest.fixture
def resolver(session, directory) -> WorkflowSnapshotResolver:
    return WorkflowSnapshotResolver(session, directory)


@pytest.fixture
def registrations(session, templates, erp, clock) -> RegistrationService:
    return RegistrationService(session, templates, erp, clock)


@pytest.fixture
def sync_orchestrator(session, erp, clock) -> SyncOrchestrator:
    return SyncOrchestrator(session, erp, clock)


@pytest.fixture
def approvals(session, resolver, sync_orchestrator, clock) -> ApprovalService:
    return ApprovalService(session, resolver, sync_orchestrator, clock)


@pytest.fixture
def approvals_without_sync(session, resolver, clock) -> ApprovalService:
    """Approval service that leaves approved requests in APPROVED."""
    return ApprovalService(session, resolver, None, clock)


@pytest.fixture
def field_changes(session, clock) -> FieldChangeRecorder:
    return FieldChangeRecorder(session, clock)


# =============================================================================
# Factories
# =============================================================================


def level(
    order: int,
    *approvers: str,
    groups: tuple[str, ...] = (),
    editable: tuple[str, ...] = (),
    mode: LevelApprovalMode = LevelApprovalMode.ALL,
) -> WorkflowLevelDefinition:
    return WorkflowLevelDefinition(
        level_order=order,
        name=f"Level {order}",
        approver_ids=tuple(approvers),
        approver_group_ids=groups,
        editable_fields=editable,
        approval_mode=mode,
    )


@pytest.fixture
def make_workflow(workflows):
    """Create (and activate) a workflow for a template."""

    def _make(*levels: WorkflowLevelDefinition, template_id: str = "products", name: str = "Default"):
        return workflows.create_workflow(template_id, name, list(levels))

    return _make


@pytest.fixture
def two_level_workflow(make_workflow):
    """Level 1: ana (may edit PRICE); level 2: bruno."""
    return make_workflow(
        level(1, APPROVER_A, editable=("PRICE",)),
        level(2, APPROVER_B),
    )


@pytest.fixture
def three_level_workflow(make_workflow):
    return make_workflow(
        level(1, APPROVER_A, editable=("PRICE",)),
        level(2, APPROVER_B, editable=("DESCRIPTION",)),
        level(3, APPROVER_C),
    )


def product_form(code: str = "P-001", price: str = "10.00", **extra: Any) -> dict[str, Any]:
    return {
        "PRODUCT_CODE": code,
        "DESCRIPTION": f"Product {code}",
        "PRICE": price,
        "UNIT": "UN",
        **extra,
    }


@pytest.fixture
def make_draft(registrations):
    def _make(form_data: dict[str, Any] | None = None, requester_id: str = REQUESTER, template_id: str = "products"):
        return registrations.create_draft(template_id, requester_id, form_data or product_form())

    return _make


@pytest.fixture
def make_bulk_draft(registrations):
    def _make(codes: list[str], requester_id: str = REQUESTER):
        items = [
            {"row_number": i + 5, "values": product_form(code), "external_record_id": None}
            for i, code in enumerate(codes)
        ]
        return registrations.create_bulk_draft("products", requester_id, OperationType.NEW, items)

    return _make
