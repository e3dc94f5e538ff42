"""TLS stream wrapper delivering SLIP frames from the gateway."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .config import KLF_PORT
from .errors import KlfConnectionError
from .slip import SlipStreamSplitter
from .tls import open_tls_connection

if TYPE_CHECKING:
    import asyncio
    import ssl
    from collections.abc import AsyncIterator

READ_SIZE = 4096


class KlfTlsMessageType(Enum):
    """Normalized transport events."""

    FRAME = "frame"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class KlfTlsMessage:
    """Normalized transport event payload."""

    type: KlfTlsMessageType
    data: bytes | None = None
    error: Exception | None = None


class KlfTlsClient:
    """Wrapper around an asyncio TLS stream for the KLF gateway.

    Iterating the client yields one FRAME message per complete SLIP frame,
    then exactly one CLOSED (peer or local close) or ERROR message.
    """

    def __init__(self) -> None:
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._splitter = SlipStreamSplitter()

    async def connect(
        self,
        host: str,
        port: int = KLF_PORT,
        *,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float | None = None,
    ) -> None:
        """Open the TLS connection."""
        self._reader, self._writer = await open_tls_connection(
            host,
            port,
            ssl_context=ssl_context,
            timeout=timeout,
        )

    @property
    def is_open(self) -> bool:
        """Return True while the stream accepts writes."""
        return self._writer is not None and not self._writer.is_closing()

    async def write(self, frame: bytes) -> None:
        """Write a packed frame to the gateway."""
        if self._writer is None or self._writer.is_closing():
            raise KlfConnectionError("Transport is not connected")
        self._writer.write(frame)
        try:
            await self._writer.drain()
        except OSError as err:
            raise KlfConnectionError(f"Write failed: {err}") from err

    def close(self) -> None:
        """Close the stream after flushing buffered data."""
        if self._writer is not None:
            self._writer.close()

    def abort(self) -> None:
        """Close the stream immediately, discarding buffered data."""
        if self._writer is not None:
            self._writer.transport.abort()

    def __aiter__(self) -> AsyncIterator[KlfTlsMessage]:
        if self._reader is None:
            raise KlfConnectionError("Transport is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[KlfTlsMessage]:
        if self._reader is None:
            raise KlfConnectionError("Transport is not connected")

        while True:
            try:
                data = await self._reader.read(READ_SIZE)
            except OSError as err:
                yield KlfTlsMessage(type=KlfTlsMessageType.ERROR, error=err)
                return

            if not data:
                yield KlfTlsMessage(type=KlfTlsMessageType.CLOSED)
                return

            for frame in self._splitter.feed(data):
                yield KlfTlsMessage(type=KlfTlsMessageType.FRAME, data=frame)
