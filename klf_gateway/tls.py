"""TLS socket helpers for the KLF gateway transport."""

from __future__ import annotations

import asyncio
import ssl

from .config import KLF_PORT
from .errors import KlfConnectionError, KlfTimeout


def create_ssl_context(
    *,
    certfile: str | None = None,
    keyfile: str | None = None,
) -> ssl.SSLContext:
    """Create the client TLS context.

    The gateway presents a self-signed certificate, so the server chain and
    hostname are not verified. A client certificate is offered when given.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    if certfile is not None:
        context.load_cert_chain(certfile, keyfile)
    return context


async def open_tls_connection(
    host: str,
    port: int = KLF_PORT,
    *,
    ssl_context: ssl.SSLContext | None = None,
    timeout: float | None = None,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a TLS stream to the gateway.

    Args:
        host: Gateway hostname or IP
        port: Gateway port
        ssl_context: Context to use (default: create_ssl_context())
        timeout: Optional connection timeout in seconds

    Raises:
        KlfTimeout: If the connection is not established within ``timeout``
        KlfConnectionError: If the socket or TLS handshake fails
    """
    if ssl_context is None:
        ssl_context = create_ssl_context()
    try:
        return await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ssl_context),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise KlfTimeout("TLS connection timed out") from err
    except OSError as err:
        raise KlfConnectionError(f"TLS connection failed: {err}") from err
