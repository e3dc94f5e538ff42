"""Routing of gateway notifications to subscribers."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .events import CallbackList
from .protocol import KlfRecord
from .registry import KlfOpcode, name_for_opcode

_LOGGER = logging.getLogger(__name__)

NotificationCallback = Callable[[KlfRecord], None]


class NotificationRouter:
    """Fan out ``_NTF`` records.

    Generic subscribers receive every notification, opcode subscribers only
    the notifications carrying their opcode. Routing never touches pending
    requests.
    """

    def __init__(self) -> None:
        self._all: CallbackList[[KlfRecord]] = CallbackList("notification")
        self._by_opcode: dict[int, CallbackList[[KlfRecord]]] = {}

    def subscribe(
        self,
        callback: NotificationCallback,
        opcode: KlfOpcode | int | None = None,
    ) -> Callable[[], None]:
        """Register ``callback`` for all notifications or a single opcode.

        Returns:
            Function removing the subscription
        """
        if opcode is None:
            return self._all.add(callback)

        listeners = self._by_opcode.get(opcode)
        if listeners is None:
            label = name_for_opcode(opcode) or f"0x{opcode:04x}"
            listeners = self._by_opcode[opcode] = CallbackList(label)
        return listeners.add(callback)

    def dispatch(self, record: KlfRecord) -> None:
        """Deliver ``record`` to generic, then opcode specific subscribers."""
        _LOGGER.debug("Notification %s", record.name)
        self._all.fire(record)
        if record.opcode is not None and record.opcode in self._by_opcode:
            self._by_opcode[record.opcode].fire(record)
