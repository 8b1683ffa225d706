"""
RequestLockRegistry -- per-request mutual exclusion inside one process.

Responsibility:
    Hand out one mutex per request key so that two lifecycle operations
    on the same request never interleave, while operations on different
    requests run fully in parallel.

Architecture position:
    Kernel > Services -- concurrency infrastructure.  Used by
    ``registration_services.registration_commands`` to hold a request's
    lock across load -> mutation -> commit.

Invariants enforced:
    - At most one holder per key at a time.
    - No global lock is held while a caller works: the registry lock only
      guards the key map, never the critical section.
    - Entries are reference counted and dropped when the last holder
      releases, so the map does not grow with request history.

Failure modes:
    - TimeoutError when ``timeout`` elapses before the key is acquired.

Audit relevance:
    None directly.  Cross-process exclusion comes from row locks
    (SELECT ... FOR UPDATE) and the request's optimistic version column.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator, Hashable

from registration_kernel.logging_config import get_logger

logger = get_logger("services.request_lock")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class RequestLockRegistry:
    """Keyed mutex map with reference-counted entries."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(
        self,
        key: Hashable,
        timeout: float | None = None,
    ) -> Generator[None, None, None]:
        """Hold the mutex for ``key`` for the duration of the block.

        Raises:
            TimeoutError: if the mutex is not acquired within ``timeout``.
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1

        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                logger.warning(
                    "request_lock_timeout",
                    extra={"lock_key": str(key), "timeout_seconds": timeout},
                )
                raise TimeoutError(f"Could not lock {key} within {timeout}s")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        with self._guard:
            return len(self._entries)
