"""Session configuration for the KLF gateway engine."""

from __future__ import annotations

from dataclasses import dataclass

KLF_PORT = 51200

CONNECT_TIMEOUT = 15.0
REQUEST_TIMEOUT = 5.0
RECONNECT_DELAY = 5.0
KEEPALIVE_INTERVAL = 5 * 60.0


@dataclass(frozen=True, slots=True)
class KlfSessionConfig:
    """Behavioural switches for a KlfSession.

    Attributes:
        auto_reconnect: Reconnect 5 s after any close not caused by end(),
            destroy() or a refused login (default: False)
        auto_connect: Start connecting as soon as the session is created
            inside a running event loop (default: False)
    """

    auto_reconnect: bool = False
    auto_connect: bool = False
