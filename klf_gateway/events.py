"""Callback registration helpers for session signals."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, ParamSpec

_LOGGER = logging.getLogger(__name__)

P = ParamSpec("P")


class CallbackList(Generic[P]):
    """Ordered set of listeners for one signal.

    Listener exceptions are logged and never reach the emitter.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._callbacks: list[Callable[P, None]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def add(self, callback: Callable[P, None]) -> Callable[[], None]:
        """Register ``callback``; the returned function unregisters it."""
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def fire(self, *args: P.args, **kwargs: P.kwargs) -> None:
        """Invoke every listener in registration order."""
        for callback in list(self._callbacks):
            try:
                callback(*args, **kwargs)
            except Exception as err:
                _LOGGER.exception("%s callback error: %s", self.name, err)
