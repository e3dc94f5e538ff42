"""Client error types for KLF gateway interactions."""

from __future__ import annotations


class KlfClientError(Exception):
    """Base error for KLF gateway client failures."""


class KlfTimeout(KlfClientError):
    """Timeout while communicating with the gateway."""


class KlfConnectionError(KlfClientError):
    """Network or TLS connection to the gateway failed."""


class KlfProtocolError(KlfClientError):
    """Malformed frame or envelope received from the gateway."""


class KlfEncodeError(KlfProtocolError):
    """Request could not be encoded into an envelope."""


class KlfLoginRefused(KlfClientError):
    """Gateway rejected the password."""

    def __init__(self, status: int | None, message: str = "Login was refused") -> None:
        super().__init__(message)
        self.status = status
