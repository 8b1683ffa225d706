"""
RestRecordStore -- ERP REST API client implementing ExternalRecordStore.

Responsibility:
    Translate the kernel's record-store calls (search, get_by_identifier,
    create, update) into calls against the ERP's REST API, authenticating
    with an OAuth2 password grant.

Architecture position:
    Services -- outer I/O adapter.  Implements
    ``registration_kernel.domain.external.ExternalRecordStore``; the kernel
    never imports this module.

Invariants enforced:
    - Every failure surfaces as ``ExternalSystemError`` (timeouts as
      ``ExternalSystemTimeoutError``); httpx exceptions never escape.
    - 5xx and 429 responses are retryable, other 4xx are not.
    - The bearer token is cached until 60 seconds before it expires and is
      refreshed once when a call answers 401.

Failure modes:
    - ExternalSystemTimeoutError on connect/read timeouts.  A timed-out
      write may still have been applied by the ERP.
    - ExternalSystemError on transport errors, non-2xx answers, or a
      create response that carries no record identifier.
"""

from __future__ import annotations

import threading
import time
from typing import Any

import httpx

from registration_config.schema import ErpSettings
from registration_kernel.domain.external import ExternalRecord
from registration_kernel.exceptions import (
    ExternalSystemError,
    ExternalSystemTimeoutError,
)
from registration_kernel.logging_config import get_logger

logger = get_logger("services.erp_client")

TOKEN_PATH = "/rest/api/oauth2/v1/token"
TOKEN_EXPIRY_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3600

# Response keys that carry the ERP record number, in lookup order.
IDENTIFIER_KEYS = ("recno", "R_E_C_N_O_", "id")
# Response keys that wrap search results.
COLLECTION_KEYS = ("items", "value")

DEFAULT_ENDPOINTS: dict[str, str] = {
    "SB1": "/rest/MATA010",
    "SA1": "/rest/MATA030",
    "SA2": "/rest/MATA020",
    "DA0": "/rest/MATA140",
    "DA1": "/rest/MATA141",
}


def build_filter(filters: dict[str, Any]) -> str:
    """``{"A": "x", "B": "y"}`` -> ``A='x' AND B='y'`` (quotes doubled)."""
    clauses = []
    for name, value in filters.items():
        text = str(value).replace("'", "''")
        clauses.append(f"{name}='{text}'")
    return " AND ".join(clauses)


def extract_identifier(payload: dict[str, Any]) -> str | None:
    for key in IDENTIFIER_KEYS:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def extract_items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        for key in COLLECTION_KEYS:
            items = payload.get(key)
            if isinstance(items, list):
                return [item for item in items if isinstance(item, dict)]
    return []


def to_external_record(item: dict[str, Any]) -> ExternalRecord | None:
    identifier = extract_identifier(item)
    if identifier is None:
        return None
    values = {k: v for k, v in item.items() if k not in IDENTIFIER_KEYS}
    return ExternalRecord(identifier=identifier, values=values)


class RestRecordStore:
    """
    ExternalRecordStore over the ERP REST API.

    Contract:
        Thread-safe: the reconciliation engine calls ``search`` from
        several worker threads at once.  The underlying ``httpx.Client``
        is shared; token refresh is serialized by a lock.

    Non-goals:
        No retries beyond the single 401 re-authentication.  Sync retry
        is a user decision.
    """

    def __init__(
        self,
        settings: ErpSettings,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._endpoints = {**DEFAULT_ENDPOINTS, **settings.endpoints}
        self._client = client or httpx.Client(
            base_url=settings.base_url,
            timeout=settings.request_timeout_seconds,
        )
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------
    # ExternalRecordStore
    # ------------------------------------------------------------------

    def search(self, table_name: str, filters: dict[str, Any]) -> list[ExternalRecord]:
        params = {
            "$filter": build_filter(filters),
            "$top": str(self._settings.search_limit),
        }
        response = self._request(
            "search", table_name, "GET", self.endpoint_for(table_name), params=params,
        )
        if response.status_code == 404:
            return []
        records = []
        for item in extract_items(response.json()):
            record = to_external_record(item)
            if record is not None:
                records.append(record)
        logger.debug(
            "erp_search",
            extra={"table_name": table_name, "result_count": len(records)},
        )
        return records

    def get_by_identifier(self, table_name: str, identifier: str) -> ExternalRecord | None:
        path = f"{self.endpoint_for(table_name)}/{identifier}"
        response = self._request("get_by_identifier", table_name, "GET", path)
        if response.status_code == 404:
            return None
        payload = response.json()
        if not isinstance(payload, dict):
            return None
        values = {k: v for k, v in payload.items() if k not in IDENTIFIER_KEYS}
        return ExternalRecord(identifier=str(identifier), values=values)

    def create(self, table_name: str, data: dict[str, Any]) -> str:
        response = self._request(
            "create", table_name, "POST", self.endpoint_for(table_name), json=data,
        )
        self._raise_for_not_found(response, "create", table_name)
        payload = response.json() if response.content else {}
        identifier = extract_identifier(payload) if isinstance(payload, dict) else None
        if identifier is None:
            raise ExternalSystemError(
                "create",
                table_name,
                "response carried no record identifier",
                retryable=False,
                status_code=response.status_code,
                detail={"body": _body_excerpt(response)},
            )
        logger.info(
            "erp_record_created",
            extra={"table_name": table_name, "external_record_id": identifier},
        )
        return identifier

    def update(self, table_name: str, identifier: str, data: dict[str, Any]) -> None:
        path = f"{self.endpoint_for(table_name)}/{identifier}"
        response = self._request("update", table_name, "PUT", path, json=data)
        self._raise_for_not_found(response, "update", table_name)
        logger.info(
            "erp_record_updated",
            extra={"table_name": table_name, "external_record_id": identifier},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def endpoint_for(self, table_name: str) -> str:
        return self._endpoints.get(table_name, f"/rest/{table_name}")

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        operation: str,
        table_name: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authenticated request.

        Returns the response for 2xx and 404; every other outcome raises.
        """
        try:
            response = self._send(method, path, **kwargs)
            if response.status_code == 401:
                self._invalidate_token()
                response = self._send(method, path, **kwargs)
            if response.status_code == 404:
                return response
            response.raise_for_status()
            return response
        except httpx.TimeoutException as exc:
            logger.warning(
                "erp_call_timeout",
                extra={"operation": operation, "table_name": table_name},
            )
            raise ExternalSystemTimeoutError(
                operation, table_name, self._settings.request_timeout_seconds,
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ExternalSystemError(
                operation,
                table_name,
                f"HTTP {status}",
                retryable=status >= 500 or status == 429,
                status_code=status,
                detail={"body": _body_excerpt(exc.response)},
            ) from exc
        except httpx.RequestError as exc:
            raise ExternalSystemError(
                operation, table_name, str(exc) or type(exc).__name__, retryable=True,
            ) from exc

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        return self._client.request(method, path, headers=headers, **kwargs)

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token is not None and time.monotonic() < self._token_expires_at:
                return self._token
            response = self._client.post(
                f"{self._settings.oauth_url.rstrip('/')}{TOKEN_PATH}",
                params={
                    "grant_type": "password",
                    "username": self._settings.username,
                    "password": self._settings.password,
                },
            )
            response.raise_for_status()
            payload = response.json()
            token = payload.get("access_token")
            if not token:
                raise ExternalSystemError(
                    "authenticate", "-", "token response carried no access_token",
                    retryable=False, status_code=response.status_code,
                )
            ttl = int(payload.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
            self._token = token
            self._token_expires_at = time.monotonic() + max(
                ttl - TOKEN_EXPIRY_MARGIN_SECONDS, 0,
            )
            logger.info("erp_token_acquired", extra={"expires_in": ttl})
            return token

    def _invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    @staticmethod
    def _raise_for_not_found(
        response: httpx.Response, operation: str, table_name: str,
    ) -> None:
        if response.status_code == 404:
            raise ExternalSystemError(
                operation,
                table_name,
                "HTTP 404",
                retryable=False,
                status_code=404,
                detail={"body": _body_excerpt(response)},
            )


def _body_excerpt(response: httpx.Response, limit: int = 500) -> str:
    try:
        return response.text[:limit]
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
