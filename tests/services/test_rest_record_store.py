"""
Tests for RestRecordStore against an httpx.MockTransport ERP.
"""

import json

import httpx
import pytest

from registration_config.schema import ErpSettings
from registration_kernel.exceptions import (
    ExternalSystemError,
    ExternalSystemTimeoutError,
)
from registration_services.erp_client import (
    RestRecordStore,
    build_filter,
    extract_identifier,
    extract_items,
)

BASE_URL = "https://erp.example.com"


class FakeErp:
    """Request handler for httpx.MockTransport with scripted answers."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_requests = 0
        self.tokens = ["token-1", "token-2", "token-3"]
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}
        self.raise_on: dict[tuple[str, str], Exception] = {}

    def answer(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/rest/api/oauth2/v1/token":
            self.token_requests += 1
            token = self.tokens[self.token_requests - 1]
            return httpx.Response(200, json={"access_token": token, "expires_in": 3600})

        self.requests.append(request)
        key = (request.method, request.url.path)
        if key in self.raise_on:
            raise self.raise_on[key]
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        scripted = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(
            scripted.status_code, headers=scripted.headers, content=scripted.content,
        )


@pytest.fixture
def fake_erp():
    return FakeErp()


@pytest.fixture
def store(fake_erp):
    settings = ErpSettings(
        base_url=BASE_URL,
        oauth_url=BASE_URL,
        username="integration",
        password="secret",
        endpoints={"ZZ1": "/rest/custom/notes"},
    )
    client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(fake_erp))
    rest_store = RestRecordStore(settings, client=client)
    yield rest_store
    rest_store.close()


class TestHelpers:

    def test_build_filter_quotes_values(self):
        assert build_filter({"A1_COD": "C1", "A1_NOME": "D'Avila"}) == (
            "A1_COD='C1' AND A1_NOME='D''Avila'"
        )

    def test_extract_identifier_order(self):
        assert extract_identifier({"recno": 7, "id": "x"}) == "7"
        assert extract_identifier({"R_E_C_N_O_": " 12 "}) == "12"
        assert extract_identifier({"id": ""}) is None

    def test_extract_items_shapes(self):
        rows = [{"recno": 1}]
        assert extract_items(rows) == rows
        assert extract_items({"items": rows}) == rows
        assert extract_items({"value": rows}) == rows
        assert extract_items({"other": rows}) == []


class TestAuthentication:

    def test_token_is_requested_once_and_sent(self, store, fake_erp):
        fake_erp.answer("GET", "/rest/MATA010", httpx.Response(200, json={"items": []}))

        store.search("SB1", {"B1_COD": "P1"})
        store.search("SB1", {"B1_COD": "P2"})

        assert fake_erp.token_requests == 1
        assert all(
            r.headers["Authorization"] == "Bearer token-1" for r in fake_erp.requests
        )

    def test_401_refreshes_token_once(self, store, fake_erp):
        fake_erp.answer(
            "GET", "/rest/MATA010",
            httpx.Response(401),
            httpx.Response(200, json=[{"recno": 5, "B1_COD": "P1"}]),
        )

        records = store.search("SB1", {"B1_COD": "P1"})

        assert [r.identifier for r in records] == ["5"]
        assert fake_erp.token_requests == 2
        assert fake_erp.requests[-1].headers["Authorization"] == "Bearer token-2"

    def test_token_without_access_token(self):
        def handler(request):
            return httpx.Response(200, json={"expires_in": 3600})

        settings = ErpSettings(base_url=BASE_URL, oauth_url=BASE_URL, username="u")
        client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        rest_store = RestRecordStore(settings, client=client)

        with pytest.raises(ExternalSystemError) as exc_info:
            rest_store.search("SB1", {"B1_COD": "P1"})
        assert exc_info.value.operation == "authenticate"
        assert exc_info.value.retryable is False


class TestSearch:

    def test_filter_and_limit_are_sent(self, store, fake_erp):
        fake_erp.answer("GET", "/rest/MATA030", httpx.Response(200, json={"items": []}))

        store.search("SA1", {"A1_COD": "C1", "A1_LOJA": "01"})

        params = fake_erp.requests[0].url.params
        assert params["$filter"] == "A1_COD='C1' AND A1_LOJA='01'"
        assert params["$top"] == "10"

    def test_items_without_identifier_are_skipped(self, store, fake_erp):
        fake_erp.answer(
            "GET", "/rest/MATA010",
            httpx.Response(200, json={"value": [
                {"R_E_C_N_O_": 1, "B1_COD": "P1"},
                {"B1_COD": "orphan"},
            ]}),
        )

        records = store.search("SB1", {"B1_COD": "P1"})

        assert len(records) == 1
        assert records[0].values == {"B1_COD": "P1"}

    def test_404_means_no_match(self, store):
        assert store.search("SB1", {"B1_COD": "P1"}) == []

    def test_custom_endpoint(self, store, fake_erp):
        fake_erp.answer("GET", "/rest/custom/notes", httpx.Response(200, json=[]))
        store.search("ZZ1", {"TEXT": "x"})
        assert fake_erp.requests[0].url.path == "/rest/custom/notes"

    def test_unknown_table_uses_table_name(self, store):
        assert store.endpoint_for("XX9") == "/rest/XX9"


class TestGetByIdentifier:

    def test_found(self, store, fake_erp):
        fake_erp.answer(
            "GET", "/rest/MATA010/42",
            httpx.Response(200, json={"recno": 42, "B1_COD": "P1", "B1_DESC": "Bolt"}),
        )
        record = store.get_by_identifier("SB1", "42")
        assert record.identifier == "42"
        assert record.values == {"B1_COD": "P1", "B1_DESC": "Bolt"}

    def test_missing(self, store):
        assert store.get_by_identifier("SB1", "42") is None


class TestWrites:

    def test_create_returns_identifier(self, store, fake_erp):
        fake_erp.answer("POST", "/rest/MATA010", httpx.Response(201, json={"recno": 99}))

        assert store.create("SB1", {"B1_COD": "P1"}) == "99"
        assert json.loads(fake_erp.requests[0].content) == {"B1_COD": "P1"}

    def test_create_without_identifier(self, store, fake_erp):
        fake_erp.answer("POST", "/rest/MATA010", httpx.Response(201, json={"ok": True}))

        with pytest.raises(ExternalSystemError) as exc_info:
            store.create("SB1", {"B1_COD": "P1"})
        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 201

    def test_update_puts_to_record_path(self, store, fake_erp):
        fake_erp.answer("PUT", "/rest/MATA010/7", httpx.Response(200, json={}))

        store.update("SB1", "7", {"B1_DESC": "New"})

        assert fake_erp.requests[0].method == "PUT"
        assert json.loads(fake_erp.requests[0].content) == {"B1_DESC": "New"}

    @pytest.mark.parametrize("method,call", [
        ("POST", lambda s: s.create("SB1", {})),
        ("PUT", lambda s: s.update("SB1", "7", {})),
    ])
    def test_write_404_is_not_retryable(self, store, method, call):
        with pytest.raises(ExternalSystemError) as exc_info:
            call(store)
        assert exc_info.value.status_code == 404
        assert exc_info.value.retryable is False


class TestFailures:

    @pytest.mark.parametrize("status,retryable", [
        (500, True),
        (503, True),
        (429, True),
        (400, False),
        (422, False),
    ])
    def test_status_classification(self, store, fake_erp, status, retryable):
        fake_erp.answer("POST", "/rest/MATA010", httpx.Response(status, text="boom"))

        with pytest.raises(ExternalSystemError) as exc_info:
            store.create("SB1", {"B1_COD": "P1"})
        assert exc_info.value.retryable is retryable
        assert exc_info.value.status_code == status
        assert exc_info.value.detail["body"] == "boom"

    def test_timeout(self, store, fake_erp):
        fake_erp.raise_on[("POST", "/rest/MATA010")] = httpx.ReadTimeout("slow")

        with pytest.raises(ExternalSystemTimeoutError) as exc_info:
            store.create("SB1", {"B1_COD": "P1"})
        assert exc_info.value.retryable is True

    def test_transport_error(self, store, fake_erp):
        fake_erp.raise_on[("GET", "/rest/MATA010")] = httpx.ConnectError("refused")

        with pytest.raises(ExternalSystemError) as exc_info:
            store.search("SB1", {"B1_COD": "P1"})
        assert exc_info.value.retryable is True
        assert not isinstance(exc_info.value, ExternalSystemTimeoutError)
