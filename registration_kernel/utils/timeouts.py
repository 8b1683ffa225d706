"""
GuardedRecordStore -- bounded-time access to the ERP record store.

Every call runs on a small worker pool and is awaited for at most the
configured timeout.  Failures surface as ``ExternalSystemError`` (or its
timeout subclass); nothing is retried here.

A timed-out call is not cancelled: the worker thread may still finish
the write.  Callers that write (sync) must treat a timeout as a possible
partial write.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from registration_kernel.domain.external import ExternalRecord, ExternalRecordStore
from registration_kernel.exceptions import (
    ExternalSystemError,
    ExternalSystemTimeoutError,
)
from registration_kernel.logging_config import get_logger

logger = get_logger("utils.timeouts")

T = TypeVar("T")


class GuardedRecordStore:
    """ExternalRecordStore wrapper applying a per-call timeout."""

    def __init__(
        self,
        store: ExternalRecordStore,
        timeout_seconds: float,
        max_workers: int = 4,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")
        self._store = store
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="erp-call",
        )

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def search(self, table_name: str, filters: dict[str, Any]) -> list[ExternalRecord]:
        return self._call("search", table_name, self._store.search, table_name, filters)

    def get_by_identifier(self, table_name: str, identifier: str) -> ExternalRecord | None:
        return self._call(
            "get_by_identifier", table_name,
            self._store.get_by_identifier, table_name, identifier,
        )

    def create(self, table_name: str, data: dict[str, Any]) -> str:
        return self._call("create", table_name, self._store.create, table_name, data)

    def update(self, table_name: str, identifier: str, data: dict[str, Any]) -> None:
        self._call(
            "update", table_name, self._store.update, table_name, identifier, data,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _call(
        self,
        operation: str,
        table_name: str,
        fn: Callable[..., T],
        *args: Any,
    ) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            logger.warning(
                "external_call_timeout",
                extra={
                    "operation": operation,
                    "table_name": table_name,
                    "timeout_seconds": self._timeout,
                },
            )
            raise ExternalSystemTimeoutError(operation, table_name, self._timeout) from exc
        except ExternalSystemError:
            raise
        except Exception as exc:
            logger.warning(
                "external_call_failed",
                extra={
                    "operation": operation,
                    "table_name": table_name,
                    "error": str(exc),
                },
            )
            raise ExternalSystemError(operation, table_name, str(exc)) from exc
