"""
Single-flight locking per (terminal, period).

Runs of the same scope would race on the same unmatched records, so only one
may be in flight at a time. Different scopes never contend: each scope has its
own lock, created on demand and dropped once nobody holds or waits on it.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple

import structlog

from ..exceptions import ConflictError

logger = structlog.get_logger()

Scope = Tuple[str, str]


@dataclass
class _ScopeLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0  # holders plus waiters


class ScopeLockRegistry:
    """Arena of per-scope locks keyed by (terminal_id, period)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Scope, _ScopeLock] = {}

    @contextmanager
    def hold(
        self,
        terminal_id: str,
        period: str,
        blocking: bool = False,
        timeout: Optional[float] = None,
    ) -> Iterator[None]:
        """
        Hold the scope lock for the duration of the block.

        Raises ConflictError when the lock cannot be taken: immediately in
        fail-fast mode, or after ``timeout`` seconds in blocking mode.
        """
        scope = (terminal_id, period)
        entry = self._checkout(scope)

        if blocking:
            acquired = entry.lock.acquire(True, timeout if timeout is not None else -1)
        else:
            acquired = entry.lock.acquire(False)

        if not acquired:
            self._checkin(scope)
            logger.warning(
                "Scope busy",
                terminal_id=terminal_id,
                period=period,
                blocking=blocking,
            )
            raise ConflictError(
                "reconciliation already running for this terminal and period",
                details={"terminal_id": terminal_id, "period": period},
            )

        try:
            yield
        finally:
            entry.lock.release()
            self._checkin(scope)

    def is_locked(self, terminal_id: str, period: str) -> bool:
        with self._guard:
            entry = self._locks.get((terminal_id, period))
            return entry is not None and entry.lock.locked()

    def active_scopes(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, scope: Scope) -> _ScopeLock:
        with self._guard:
            entry = self._locks.get(scope)
            if entry is None:
                entry = self._locks[scope] = _ScopeLock()
            entry.users += 1
            return entry

    def _checkin(self, scope: Scope) -> None:
        with self._guard:
            entry = self._locks[scope]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[scope]
