"""Tests for the TLS transport helpers and KlfTlsClient."""

from __future__ import annotations

import asyncio
import ssl
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from klf_gateway.errors import KlfConnectionError, KlfTimeout
from klf_gateway.tls import create_ssl_context, open_tls_connection
from klf_gateway.tls_client import KlfTlsClient, KlfTlsMessage, KlfTlsMessageType


def make_writer() -> MagicMock:
    writer = MagicMock()
    writer.is_closing.return_value = False
    writer.drain = AsyncMock()
    return writer


async def connected_client(reader: asyncio.StreamReader, writer: MagicMock):
    with patch(
        "klf_gateway.tls_client.open_tls_connection",
        return_value=(reader, writer),
    ):
        client = KlfTlsClient()
        await client.connect("192.168.1.20")
    return client


class TestCreateSslContext:
    """Tests for create_ssl_context()."""

    def test_gateway_certificate_not_verified(self):
        """Test the self-signed gateway certificate is accepted."""
        context = create_ssl_context()

        assert context.check_hostname is False
        assert context.verify_mode == ssl.CERT_NONE

    def test_client_certificate_loaded(self):
        """Test a client certificate is offered when configured."""
        with patch.object(ssl.SSLContext, "load_cert_chain") as mock_load:
            create_ssl_context(certfile="client.pem", keyfile="client.key")

        mock_load.assert_called_once_with("client.pem", "client.key")


class TestOpenTlsConnection:
    """Tests for open_tls_connection() error mapping."""

    @pytest.mark.asyncio
    async def test_open_success(self):
        """Test the stream pair is returned with the default port."""
        streams = (MagicMock(), MagicMock())
        context = create_ssl_context()

        with patch(
            "klf_gateway.tls.asyncio.open_connection",
            AsyncMock(return_value=streams),
        ) as mock_open:
            result = await open_tls_connection("192.168.1.20", ssl_context=context)

        assert result == streams
        mock_open.assert_called_once_with("192.168.1.20", 51200, ssl=context)

    @pytest.mark.asyncio
    async def test_open_timeout(self):
        """Test a slow handshake raises KlfTimeout."""

        async def hang(*args, **kwargs):
            await asyncio.Event().wait()

        with patch("klf_gateway.tls.asyncio.open_connection", hang):
            with pytest.raises(KlfTimeout, match="timed out"):
                await open_tls_connection("192.168.1.20", timeout=0.01)

    @pytest.mark.asyncio
    async def test_open_refused(self):
        """Test socket errors raise KlfConnectionError."""
        with patch(
            "klf_gateway.tls.asyncio.open_connection",
            AsyncMock(side_effect=ConnectionRefusedError("refused")),
        ):
            with pytest.raises(KlfConnectionError, match="refused"):
                await open_tls_connection("192.168.1.20")


class TestKlfTlsMessage:
    """Tests for KlfTlsMessage dataclass."""

    def test_create_closed_message(self):
        """Test creating a closed message."""
        msg = KlfTlsMessage(type=KlfTlsMessageType.CLOSED)
        assert msg.data is None
        assert msg.error is None

    def test_message_is_frozen(self):
        """Test that messages are immutable."""
        msg = KlfTlsMessage(type=KlfTlsMessageType.FRAME, data=b"\xc0\x01\xc0")
        with pytest.raises(AttributeError):
            msg.data = b""  # type: ignore[misc]


class TestKlfTlsClientConnect:
    """Tests for KlfTlsClient.connect()."""

    @pytest.mark.asyncio
    async def test_connect_passes_options(self):
        """Test connection parameters reach the TLS helper."""
        context = create_ssl_context()

        with patch(
            "klf_gateway.tls_client.open_tls_connection",
            return_value=(MagicMock(), make_writer()),
        ) as mock_open:
            client = KlfTlsClient()
            await client.connect("10.0.0.1", 51201, ssl_context=context, timeout=5.0)

        mock_open.assert_called_once_with(
            "10.0.0.1", 51201, ssl_context=context, timeout=5.0
        )
        assert client.is_open

    @pytest.mark.asyncio
    async def test_connect_propagates_errors(self):
        """Test that connection errors are propagated."""
        with patch(
            "klf_gateway.tls_client.open_tls_connection",
            side_effect=KlfConnectionError("TLS connection failed"),
        ):
            client = KlfTlsClient()
            with pytest.raises(KlfConnectionError, match="TLS connection failed"):
                await client.connect("192.168.1.20")
        assert not client.is_open


class TestKlfTlsClientWrite:
    """Tests for KlfTlsClient.write()."""

    @pytest.mark.asyncio
    async def test_write_success(self):
        """Test frames are written and drained."""
        writer = make_writer()
        client = await connected_client(asyncio.StreamReader(), writer)

        await client.write(b"\xc0\x00\x03\x00\x0c\x0f\xc0")

        writer.write.assert_called_once_with(b"\xc0\x00\x03\x00\x0c\x0f\xc0")
        writer.drain.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_write_not_connected(self):
        """Test write raises when not connected."""
        client = KlfTlsClient()
        with pytest.raises(KlfConnectionError, match="not connected"):
            await client.write(b"\xc0\x01\xc0")

    @pytest.mark.asyncio
    async def test_write_while_closing(self):
        """Test write raises once the stream is closing."""
        writer = make_writer()
        writer.is_closing.return_value = True
        client = await connected_client(asyncio.StreamReader(), writer)

        with pytest.raises(KlfConnectionError, match="not connected"):
            await client.write(b"\xc0\x01\xc0")
        writer.write.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_drain_failure(self):
        """Test socket errors during drain are wrapped."""
        writer = make_writer()
        writer.drain.side_effect = BrokenPipeError("broken")
        client = await connected_client(asyncio.StreamReader(), writer)

        with pytest.raises(KlfConnectionError, match="Write failed"):
            await client.write(b"\xc0\x01\xc0")


class TestKlfTlsClientClose:
    """Tests for close() and abort()."""

    @pytest.mark.asyncio
    async def test_close_and_abort(self):
        """Test close flushes and abort drops the transport."""
        writer = make_writer()
        client = await connected_client(asyncio.StreamReader(), writer)

        client.close()
        writer.close.assert_called_once()

        client.abort()
        writer.transport.abort.assert_called_once()

    def test_close_not_connected(self):
        """Test closing when not connected (no error)."""
        client = KlfTlsClient()
        client.close()
        client.abort()


class TestKlfTlsClientIteration:
    """Tests for KlfTlsClient async iteration."""

    def test_iter_not_connected(self):
        """Test iteration raises when not connected."""
        client = KlfTlsClient()
        with pytest.raises(KlfConnectionError, match="not connected"):
            client.__aiter__()

    @pytest.mark.asyncio
    async def test_iter_frames_then_closed(self):
        """Test chunked data yields whole frames followed by CLOSED."""
        reader = asyncio.StreamReader()
        client = await connected_client(reader, make_writer())

        reader.feed_data(b"\xc0\x00\x03\x00")
        reader.feed_data(b"\x0d\x0e\xc0\xc0\x00\x04\x00\x00\x07\x03\xc0")
        reader.feed_eof()

        messages = [msg async for msg in client]

        assert [msg.type for msg in messages] == [
            KlfTlsMessageType.FRAME,
            KlfTlsMessageType.FRAME,
            KlfTlsMessageType.CLOSED,
        ]
        assert messages[0].data == b"\xc0\x00\x03\x00\x0d\x0e\xc0"
        assert messages[1].data == b"\xc0\x00\x04\x00\x00\x07\x03\xc0"

    @pytest.mark.asyncio
    async def test_iter_shared_delimiter(self):
        """Test frames sharing one delimiter are both delivered."""
        reader = asyncio.StreamReader()
        client = await connected_client(reader, make_writer())

        reader.feed_data(b"\xc0\x01\x02\xc0\x03\x04\xc0")
        reader.feed_eof()

        frames = [msg.data async for msg in client if msg.type is KlfTlsMessageType.FRAME]

        assert frames == [b"\xc0\x01\x02\xc0", b"\xc0\x03\x04\xc0"]

    @pytest.mark.asyncio
    async def test_iter_socket_error(self):
        """Test read errors end iteration with a single ERROR."""
        reader = asyncio.StreamReader()
        client = await connected_client(reader, make_writer())
        error = ConnectionResetError("reset")
        reader.set_exception(error)

        messages = [msg async for msg in client]

        assert len(messages) == 1
        assert messages[0].type is KlfTlsMessageType.ERROR
        assert messages[0].error is error
