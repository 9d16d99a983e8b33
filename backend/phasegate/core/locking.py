"""Per-phase mutual exclusion for gate writes.

This module provides:
- One asyncio.Lock per (project_id, phase_number), created lazily and
  dropped once nobody holds or waits for it
- An async context manager with an optional acquisition timeout
- Lock status checking

Only writers (override, seal) take these locks. Gate evaluation never waits
on them.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from phasegate.core.exceptions import StorageError


class PhaseLocks:
    """Manages in-process locks keyed by phase identity.

    An entry lives only while someone holds or waits for it.
    """

    DEFAULT_TIMEOUT = 30.0  # seconds

    def __init__(self, timeout: float | None = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}
        self._users: dict[tuple[str, int], int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: tuple[str, int]) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: tuple[str, int]) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    def is_locked(self, project_id: str, phase_number: int) -> bool:
        lock = self._locks.get((project_id, phase_number))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, project_id: str, phase_number: int) -> AsyncGenerator[None, None]:
        """Hold the phase lock for the duration of the block.

        Raises:
            StorageError: If the lock is not acquired within the timeout

        Example:
            async with locks.hold("J1", 3):
                # re-check gate state and commit
                pass
        """
        key = (project_id, phase_number)
        lock = self._checkout(key)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except TimeoutError as exc:
                raise StorageError(
                    f"Timed out waiting for the gate lock of phase {phase_number} of project '{project_id}'"
                ) from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


# Singleton instance
_phase_locks: PhaseLocks | None = None


def get_phase_locks() -> PhaseLocks:
    """Get the process-wide PhaseLocks instance."""
    global _phase_locks
    if _phase_locks is None:
        _phase_locks = PhaseLocks()
    return _phase_locks
