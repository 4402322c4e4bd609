"""
Short-lived key-value storage for pending authorization attempts.

Entries are keyed by the OAuth ``state`` token and live for at most their TTL.
The only atomic operation the rest of the system relies on is ``take_once``:
a value can be retrieved exactly once, and concurrent callers racing for the
same key cannot both receive it.

The in-memory backend is the bundled implementation. Any other backend
(Redis GETDEL, a database row with DELETE ... RETURNING) only has to honour
the same contract.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Union

import structlog

from connect_core.errors import StateStoreUnavailable

logger = structlog.get_logger(__name__)

DEFAULT_STATE_TTL_SECONDS = 600


class _Missing(Enum):
    NOT_FOUND = "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


# Returned by take_once for unknown, expired, or already-taken keys
NOT_FOUND = _Missing.NOT_FOUND


class StateStore(Protocol):
    """Storage contract used by the authorization state service."""

    async def put(
        self, key: str, value: Any, ttl_seconds: Optional[float] = None
    ) -> None: ...

    async def take_once(self, key: str) -> Union[Any, _Missing]: ...

    async def delete_where(self, predicate: Callable[[str, Any], bool]) -> int: ...

    async def sweep(self) -> int: ...


@dataclass
class StoredEntry:
    value: Any
    stored_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        # An entry exactly ttl_seconds old is still valid
        return now - self.stored_at > self.ttl_seconds


class InMemoryStateStore:
    """
    Process-local StateStore guarded by a threading lock.

    The lock makes ``take_once`` atomic across threads as well as asyncio
    tasks. Expired entries are invisible to ``take_once`` even before the
    sweeper removes them.

    Args:
        default_ttl_seconds: TTL applied when ``put`` is called without one
        clock: Returns the current time in seconds; injectable for tests
    """

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, StoredEntry] = {}
        self._lock = threading.Lock()
        self._sweeper_task: Optional[asyncio.Task] = None
        self._closed = False

    async def put(
        self, key: str, value: Any, ttl_seconds: Optional[float] = None
    ) -> None:
        """Store a value, replacing any existing entry under the same key."""
        self._ensure_open()
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = StoredEntry(
                value=value, stored_at=self._clock(), ttl_seconds=ttl
            )

    async def take_once(self, key: str) -> Union[Any, _Missing]:
        """
        Atomically retrieve and delete a value.

        Returns:
            The stored value, or NOT_FOUND if the key is unknown, expired,
            or was already taken
        """
        self._ensure_open()
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry.is_expired(self._clock()):
            return NOT_FOUND
        return entry.value

    async def delete_where(self, predicate: Callable[[str, Any], bool]) -> int:
        """
        Delete every entry whose ``(key, value)`` satisfies the predicate.

        Returns:
            Number of entries removed
        """
        self._ensure_open()
        with self._lock:
            doomed = [k for k, e in self._entries.items() if predicate(k, e.value)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    async def sweep(self) -> int:
        """Remove expired entries and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug("Swept expired state entries", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ===== Background sweeper =====

    def start_sweeper(self, interval_seconds: float = 60) -> None:
        """Start a background task that sweeps expired entries periodically."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            logger.warning("State store sweeper already running")
            return

        self._sweeper_task = asyncio.create_task(self._sweep_loop(interval_seconds))
        logger.info("State store sweeper started", interval_seconds=interval_seconds)

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("State store sweep failed", error=str(e))

    async def close(self) -> None:
        """Stop the sweeper and drop all entries."""
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
            logger.info("State store sweeper stopped")

        with self._lock:
            self._entries.clear()
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise StateStoreUnavailable("State store has been closed")
