"""Correlation of outgoing requests with their confirmations."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from .config import REQUEST_TIMEOUT
from .errors import KlfTimeout
from .protocol import KlfRecord
from .registry import name_for_opcode

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _PendingRequest:
    """Waiter for a single confirmation."""

    confirmation: int
    future: asyncio.Future[KlfRecord]
    timer: asyncio.TimerHandle | None = None


class PendingRequestTable:
    """Outstanding requests keyed by confirmation opcode.

    Several requests of the same type may be in flight; their waiters are
    queued and resolved in the order they were registered. Each waiter
    fails with KlfTimeout when no confirmation arrives in time.
    """

    def __init__(self, *, timeout: float = REQUEST_TIMEOUT) -> None:
        self._timeout = timeout
        self._entries: dict[int, deque[_PendingRequest]] = {}

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._entries.values())

    def pending_for(self, confirmation: int) -> int:
        """Return the number of live waiters for ``confirmation``."""
        return len(self._entries.get(confirmation, ()))

    def register(self, confirmation: int) -> asyncio.Future[KlfRecord]:
        """Register a waiter and start its timeout.

        Must be called from within the running event loop.
        """
        loop = asyncio.get_running_loop()
        entry = _PendingRequest(confirmation=confirmation, future=loop.create_future())
        entry.timer = loop.call_later(self._timeout, self._expire, entry)
        entry.future.add_done_callback(lambda _fut: self._discard(entry))
        self._entries.setdefault(confirmation, deque()).append(entry)
        return entry.future

    def resolve(self, record: KlfRecord) -> bool:
        """Hand ``record`` to the oldest waiter for its opcode.

        Returns:
            False when no waiter is pending (unsolicited confirmation)
        """
        if record.opcode is None:
            return False

        queue = self._entries.get(record.opcode)
        while queue:
            entry = queue.popleft()
            if entry.future.done():
                continue
            if entry.timer is not None:
                entry.timer.cancel()
            entry.future.set_result(record)
            if not queue:
                self._entries.pop(record.opcode, None)
            return True

        self._entries.pop(record.opcode, None)
        return False

    def _expire(self, entry: _PendingRequest) -> None:
        entry.timer = None
        if entry.future.done():
            return
        name = name_for_opcode(entry.confirmation) or f"0x{entry.confirmation:04x}"
        _LOGGER.debug("Timeout waiting for %s", name)
        entry.future.set_exception(KlfTimeout(f"timeout {name}"))

    def _discard(self, entry: _PendingRequest) -> None:
        """Drop a finished waiter (resolved, expired or cancelled)."""
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        queue = self._entries.get(entry.confirmation)
        if queue is None:
            return
        if entry in queue:
            queue.remove(entry)
        if not queue:
            del self._entries[entry.confirmation]
