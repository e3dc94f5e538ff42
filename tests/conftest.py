"""Pytest configuration and fixtures for klf_gateway tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from functools import reduce
from operator import xor
from typing import Any
from unittest.mock import patch

import pytest

from klf_gateway import slip
from klf_gateway.errors import KlfConnectionError
from klf_gateway.registry import KlfOpcode
from klf_gateway.tls_client import KlfTlsMessage, KlfTlsMessageType

GET_STATE_PAYLOAD = bytes([0x02, 0x00, 0x00, 0x00, 0x00, 0x00])


def make_envelope(opcode: int, payload: bytes = b"", *, session_id: int = 0) -> bytes:
    """Build a gateway envelope with a correct checksum.

    Args:
        opcode: Numeric opcode
        payload: Raw payload bytes
        session_id: Value of the reserved first byte

    Returns:
        Envelope bytes including the trailing checksum
    """
    body = bytes([session_id, len(payload) + 3, opcode >> 8, opcode & 0xFF]) + payload
    return body + bytes([reduce(xor, body, 0)])


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


class FakeTlsClient:
    """In-memory stand-in for KlfTlsClient driven by a FakeGateway."""

    def __init__(self, gateway: FakeGateway) -> None:
        self.gateway = gateway
        self.written: list[bytes] = []
        self.connect_calls: list[tuple[str, int]] = []
        self.closed = False
        self.aborted = False
        self._queue: asyncio.Queue[KlfTlsMessage] = asyncio.Queue()

    async def connect(
        self,
        host: str,
        port: int,
        *,
        ssl_context: Any = None,
        timeout: float | None = None,
    ) -> None:
        self.connect_calls.append((host, port))
        if self.gateway.connect_hang:
            await asyncio.Event().wait()
        if self.gateway.connect_error is not None:
            raise self.gateway.connect_error

    async def write(self, frame: bytes) -> None:
        if self.closed or self.aborted:
            raise KlfConnectionError("Transport is not connected")
        envelope = slip.unpack(frame)
        self.written.append(envelope)
        reply = self.gateway.reply_for(int.from_bytes(envelope[2:4], "big"))
        if reply is not None:
            self.feed(reply)

    def close(self) -> None:
        if not (self.closed or self.aborted):
            self.closed = True
            self._queue.put_nowait(KlfTlsMessage(type=KlfTlsMessageType.CLOSED))

    def abort(self) -> None:
        if not (self.closed or self.aborted):
            self.aborted = True
            self._queue.put_nowait(KlfTlsMessage(type=KlfTlsMessageType.CLOSED))

    def feed(self, envelope: bytes) -> None:
        """Deliver an envelope from the gateway."""
        self.feed_frame(slip.pack(envelope))

    def feed_frame(self, frame: bytes) -> None:
        """Deliver a raw (already framed) byte sequence."""
        self._queue.put_nowait(KlfTlsMessage(type=KlfTlsMessageType.FRAME, data=frame))

    def fail(self, error: Exception) -> None:
        """Simulate a socket error followed by the close."""
        self.aborted = True
        self._queue.put_nowait(KlfTlsMessage(type=KlfTlsMessageType.ERROR, error=error))

    def written_opcodes(self) -> list[int]:
        return [int.from_bytes(envelope[2:4], "big") for envelope in self.written]

    def __aiter__(self):
        return self._iter_messages()

    async def _iter_messages(self):
        while True:
            message = await self._queue.get()
            yield message
            if message.type is not KlfTlsMessageType.FRAME:
                return


class FakeGateway:
    """Factory replacing KlfTlsClient; answers requests like a gateway would."""

    def __init__(self) -> None:
        self.clients: list[FakeTlsClient] = []
        self.login_status: int | None = 1
        self.replies: dict[int, bytes] = {
            KlfOpcode.GW_GET_STATE_REQ: make_envelope(
                KlfOpcode.GW_GET_STATE_CFM, GET_STATE_PAYLOAD
            ),
        }
        self.connect_error: Exception | None = None
        self.connect_hang = False

    def __call__(self) -> FakeTlsClient:
        client = FakeTlsClient(self)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeTlsClient:
        return self.clients[-1]

    def reply_for(self, opcode: int) -> bytes | None:
        if opcode == KlfOpcode.GW_PASSWORD_ENTER_REQ:
            if self.login_status is None:
                return None
            return make_envelope(
                KlfOpcode.GW_PASSWORD_ENTER_CFM, bytes([self.login_status])
            )
        return self.replies.get(opcode)


@pytest.fixture
def gateway() -> Iterator[FakeGateway]:
    """Patch the session transport with an in-memory gateway."""
    fake = FakeGateway()
    with patch("klf_gateway.session.KlfTlsClient", fake):
        yield fake
