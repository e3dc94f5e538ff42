"""Session engine for a KLF gateway connection.

This module owns the single TLS connection to the gateway. It handles:
- Connection management and password login
- Request/confirmation correlation
- Notification routing
- Keepalive and reconnect logic

All reactions (incoming frames, transport close, timers) run on one asyncio
event loop, so session state, the pending table and the timers are never
mutated concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Callable
from enum import Enum
from typing import Any

from . import slip
from .config import (
    CONNECT_TIMEOUT,
    KEEPALIVE_INTERVAL,
    KLF_PORT,
    RECONNECT_DELAY,
    REQUEST_TIMEOUT,
    KlfSessionConfig,
)
from .errors import (
    KlfClientError,
    KlfConnectionError,
    KlfEncodeError,
    KlfLoginRefused,
    KlfProtocolError,
    KlfTimeout,
)
from .events import CallbackList
from .notifications import NotificationCallback, NotificationRouter
from .pending import PendingRequestTable
from .protocol import KlfRecord, build_envelope, parse_envelope
from .registry import KlfOpcode, confirmation_for, lookup_opcode
from .tls import create_ssl_context
from .tls_client import KlfTlsClient, KlfTlsMessageType

_LOGGER = logging.getLogger(__name__)


class KlfSessionState(Enum):
    """Connection lifecycle states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


def _consume_exception(future: asyncio.Future[Any]) -> None:
    """Mark a future's exception as retrieved."""
    if not future.cancelled():
        future.exception()


class KlfSession:
    """Persistent session with a KLF gateway.

    Usage:
        session = KlfSession("192.168.1.20", "velux123", KlfSessionConfig(auto_reconnect=True))
        session.on_notification(my_handler, KlfOpcode.GW_NODE_STATE_POSITION_CHANGED_NTF)
        await session.connect()
        state = await session.send_command(KlfOpcode.GW_GET_STATE_REQ)
        session.end()
    """

    def __init__(
        self,
        host: str,
        password: str,
        config: KlfSessionConfig | None = None,
        *,
        port: int = KLF_PORT,
        certfile: str | None = None,
        keyfile: str | None = None,
        ssl_context: ssl.SSLContext | None = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        reconnect_delay: float = RECONNECT_DELAY,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
    ) -> None:
        """Initialize session.

        Args:
            host: Gateway hostname or IP
            password: Gateway password (at most 32 bytes)
            config: Reconnect / auto connect switches
            port: Gateway TLS port
            certfile: Optional client certificate offered to the gateway
            keyfile: Private key for ``certfile``
            ssl_context: Prebuilt TLS context, overrides certfile/keyfile
            connect_timeout: Seconds to wait for the transport to open
            request_timeout: Seconds to wait for each confirmation
            reconnect_delay: Seconds between a close and the reconnect attempt
            keepalive_interval: Seconds of inbound silence before a keepalive

        With ``config.auto_connect`` the session must be created inside a
        running event loop; the connect starts on the next loop iteration.
        """
        self.host = host
        self.port = port
        self.password = password
        self.config = config or KlfSessionConfig()

        self._ssl_context = ssl_context or create_ssl_context(
            certfile=certfile, keyfile=keyfile
        )
        self._connect_timeout = connect_timeout
        self._reconnect_delay = reconnect_delay
        self._keepalive_interval = keepalive_interval

        # Connection state
        self._state = KlfSessionState.IDLE
        self._login_failed = False
        self._should_stay_connected = False
        self._transport: KlfTlsClient | None = None
        self._failed_transport: KlfTlsClient | None = None
        self._connect_future: asyncio.Future[None] | None = None

        # Tasks
        self._attempt_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._background_task: asyncio.Task[None] | None = None

        # Timers
        self._connect_timer: asyncio.TimerHandle | None = None
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._keepalive_timer: asyncio.TimerHandle | None = None

        # Routing
        self._pending = PendingRequestTable(timeout=request_timeout)
        self._router = NotificationRouter()

        # Lifecycle signals
        self._on_connecting: CallbackList[[bool]] = CallbackList("connecting")
        self._on_connected: CallbackList[[bool]] = CallbackList("connected")
        self._on_disconnect: CallbackList[[bool, bool]] = CallbackList("disconnect")
        self._on_connection_failed: CallbackList[[]] = CallbackList(
            "connection_failed"
        )

        # Diagnostic signals
        self._on_unsolicited: CallbackList[[KlfRecord]] = CallbackList(
            "unsolicited_confirmation"
        )
        self._on_transport_error: CallbackList[[Exception]] = CallbackList(
            "transport_error"
        )
        self._on_protocol_error: CallbackList[[KlfProtocolError]] = CallbackList(
            "protocol_error"
        )

        if self.config.auto_connect:
            asyncio.get_running_loop().call_soon(
                self._start_background_connect, False
            )

    async def __aenter__(self) -> KlfSession:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.end()
        await self.wait_closed()

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> KlfSessionState:
        """Get current lifecycle state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the session is connected and logged in."""
        return self._state is KlfSessionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        """Check if a connection attempt is in progress."""
        return self._state is KlfSessionState.CONNECTING

    @property
    def login_failed(self) -> bool:
        """Check if the last login attempt was refused or timed out."""
        return self._login_failed

    # -------------------------------------------------------------------------
    # Public API: Signals
    # -------------------------------------------------------------------------

    def on_connecting(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register callback fired when an attempt starts.

        Callback receives: is_reconnect
        """
        return self._on_connecting.add(callback)

    def on_connected(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register callback fired after a successful login.

        Callback receives: is_reconnect
        """
        return self._on_connected.add(callback)

    def on_disconnect(
        self, callback: Callable[[bool, bool], None]
    ) -> Callable[[], None]:
        """Register callback fired when the transport closes.

        Callback receives: had_error, will_reconnect
        """
        return self._on_disconnect.add(callback)

    def on_connection_failed(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback fired when the connect timeout expires."""
        return self._on_connection_failed.add(callback)

    def on_notification(
        self,
        callback: NotificationCallback,
        opcode: KlfOpcode | int | None = None,
    ) -> Callable[[], None]:
        """Register callback for all notifications or a single opcode."""
        return self._router.subscribe(callback, opcode)

    def on_unsolicited_confirmation(
        self, callback: Callable[[KlfRecord], None]
    ) -> Callable[[], None]:
        """Register callback for confirmations nobody is waiting for."""
        return self._on_unsolicited.add(callback)

    def on_transport_error(
        self, callback: Callable[[Exception], None]
    ) -> Callable[[], None]:
        """Register callback for socket and TLS errors."""
        return self._on_transport_error.add(callback)

    def on_protocol_error(
        self, callback: Callable[[KlfProtocolError], None]
    ) -> Callable[[], None]:
        """Register callback for dropped (malformed or corrupt) frames."""
        return self._on_protocol_error.add(callback)

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect and log in to the gateway.

        Returns immediately when already connected and joins the running
        attempt when one is in progress.

        Raises:
            KlfTimeout: If the transport or the login confirmation timed out
            KlfConnectionError: If the transport failed or closed during login
            KlfLoginRefused: If the gateway rejected the password
        """
        await self._connect(is_reconnect=False)

    def end(self) -> None:
        """Close the connection gracefully without reconnecting."""
        _LOGGER.info("[%s] Ending connection", self.host)
        self._prepare_end()
        if self._transport is not None:
            self._state = KlfSessionState.DISCONNECTING
            self._transport.close()
        else:
            self._abort_attempt()

    def destroy(self) -> None:
        """Drop the connection immediately without reconnecting."""
        _LOGGER.info("[%s] Destroying connection", self.host)
        self._prepare_end()
        if self._transport is not None:
            self._state = KlfSessionState.DISCONNECTING
            self._transport.abort()
        else:
            self._abort_attempt()

    async def wait_closed(self) -> None:
        """Wait until the current transport has been closed and handled."""
        task = self._reader_task
        if task is not None:
            await asyncio.shield(task)

    # -------------------------------------------------------------------------
    # Public API: Commands
    # -------------------------------------------------------------------------

    async def send_command(
        self, command: KlfOpcode | int | str, **fields: Any
    ) -> KlfRecord:
        """Send a request and wait for its confirmation.

        Args:
            command: Request opcode, numeric id or name (``"GW_GET_STATE_REQ"``)
            **fields: Payload fields for the request encoder

        Returns:
            The decoded confirmation record

        Raises:
            KlfEncodeError: If the command is unknown or cannot be encoded
            KlfConnectionError: If there is no open transport
            KlfTimeout: If no confirmation arrives in time
        """
        opcode = lookup_opcode(command)
        if opcode is None:
            raise KlfEncodeError(f"Unknown command {command!r}")

        confirmation = confirmation_for(opcode)
        if confirmation is None:
            raise KlfEncodeError(f"{opcode.name} is not a request")

        envelope = build_envelope(opcode, fields)
        if not envelope:
            raise KlfEncodeError(f"No encoder registered for {opcode.name}")
        frame = slip.pack(envelope)

        transport = self._transport
        if transport is None:
            raise KlfConnectionError("Not connected")

        future = self._pending.register(confirmation)
        try:
            await transport.write(frame)
        except KlfClientError:
            future.cancel()
            raise

        _LOGGER.debug("[%s] Sent %s: %s", self.host, opcode.name, frame.hex())
        return await future

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    async def _connect(self, is_reconnect: bool) -> None:
        if self._state is KlfSessionState.CONNECTED:
            _LOGGER.debug("[%s] Already connected, ignoring connect", self.host)
            return

        pending = self._connect_future
        if (
            self._state is KlfSessionState.CONNECTING
            and pending is not None
            and not pending.done()
        ):
            _LOGGER.debug("[%s] Already connecting, joining attempt", self.host)
            await asyncio.shield(pending)
            return

        loop = asyncio.get_running_loop()
        self._cancel_reconnect_timer()
        if (
            self._state is KlfSessionState.DISCONNECTING
            and self._transport is not None
        ):
            # The ended transport still owes its close signal
            _LOGGER.debug("[%s] Finishing pending close before connect", self.host)
            self._handle_close(had_error=False)
        self._release_transport()

        self._should_stay_connected = True
        self._state = KlfSessionState.CONNECTING

        future: asyncio.Future[None] = loop.create_future()
        future.add_done_callback(_consume_exception)
        self._connect_future = future

        _LOGGER.info(
            "[%s] Connecting to %s:%s%s",
            self.host,
            self.host,
            self.port,
            " (reconnect)" if is_reconnect else "",
        )
        self._on_connecting.fire(is_reconnect)

        self._connect_timer = loop.call_later(
            self._connect_timeout, self._handle_connect_timeout
        )
        self._attempt_task = asyncio.create_task(self._run_attempt(is_reconnect))
        await asyncio.shield(future)

    async def _run_attempt(self, is_reconnect: bool) -> None:
        """Open the transport and log in."""
        client = KlfTlsClient()
        try:
            await client.connect(self.host, self.port, ssl_context=self._ssl_context)
        except KlfClientError as err:
            _LOGGER.warning("[%s] Connection failed: %s", self.host, err)
            self._cancel_connect_timer()
            self._on_transport_error.fire(err)
            self._fail_connect(err)
            self._handle_close(had_error=True)
            return

        self._cancel_connect_timer()
        _LOGGER.debug("[%s] Transport open, logging in", self.host)
        self._attach_transport(client)

        try:
            await self._login(client)
        except KlfClientError as err:
            _LOGGER.error("[%s] Login failed: %s", self.host, err)
            self._fail_connect(err)
            return

        self._state = KlfSessionState.CONNECTED
        self._reset_keepalive()
        _LOGGER.info("[%s] Connected", self.host)
        self._on_connected.fire(is_reconnect)

        future = self._connect_future
        if future is not None and not future.done():
            future.set_result(None)

    async def _login(self, client: KlfTlsClient) -> None:
        """Send the password; abort the transport when it is not accepted."""
        self._login_failed = False
        try:
            record = await self.send_command(
                KlfOpcode.GW_PASSWORD_ENTER_REQ, password=self.password
            )
            if not record.get("status"):
                raise KlfLoginRefused(record.get("status"))
        except KlfClientError:
            self._login_failed = True
            self._failed_transport = client
            client.abort()
            raise

        self._login_failed = False
        _LOGGER.debug("[%s] Login successful", self.host)

    def _attach_transport(self, client: KlfTlsClient) -> None:
        """Take ownership of ``client`` and start reading from it."""
        self._release_transport()
        self._transport = client
        self._reader_task = asyncio.create_task(self._listen(client))

    def _release_transport(self) -> None:
        """Drop the owned transport without running the close path."""
        transport, self._transport = self._transport, None
        if transport is not None:
            _LOGGER.debug("[%s] Releasing previous transport", self.host)
            self._stop_keepalive()
            transport.abort()

    def _handle_connect_timeout(self) -> None:
        self._connect_timer = None
        _LOGGER.warning("[%s] Failed to connect to device", self.host)
        self._on_connection_failed.fire()
        self._fail_connect(KlfTimeout("Connection timed out"))
        self._handle_close(had_error=True)

    def _handle_close(self, had_error: bool) -> None:
        """Single close path: decide about reconnecting."""
        self._transport = None
        self._stop_keepalive()
        self._cancel_connect_timer()

        attempt = self._attempt_task
        if (
            attempt is not None
            and not attempt.done()
            and attempt is not asyncio.current_task()
        ):
            attempt.cancel()
        self._fail_connect(KlfConnectionError("Connection closed during login"))

        should_reconnect = (
            self._should_stay_connected
            and not self._login_failed
            and self.config.auto_reconnect
        )
        self._state = KlfSessionState.IDLE

        _LOGGER.info(
            "[%s] Disconnected (error=%s, reconnect=%s)",
            self.host,
            had_error,
            should_reconnect,
        )
        self._on_disconnect.fire(had_error, should_reconnect)

        if should_reconnect:
            self._reconnect_timer = asyncio.get_running_loop().call_later(
                self._reconnect_delay, self._handle_reconnect_due
            )

    def _handle_reconnect_due(self) -> None:
        self._reconnect_timer = None
        _LOGGER.debug("[%s] Reconnecting", self.host)
        self._start_background_connect(True)

    def _start_background_connect(self, is_reconnect: bool) -> None:
        self._background_task = asyncio.create_task(
            self._background_connect(is_reconnect)
        )

    async def _background_connect(self, is_reconnect: bool) -> None:
        """Connect without a caller; failures surface through signals."""
        try:
            await self._connect(is_reconnect)
        except KlfClientError as err:
            _LOGGER.debug("[%s] Background connect failed: %s", self.host, err)

    def _fail_connect(self, err: Exception) -> None:
        future = self._connect_future
        if future is not None and not future.done():
            future.set_exception(err)

    def _abort_attempt(self) -> None:
        """Stop an attempt whose transport has not opened yet."""
        attempt = self._attempt_task
        if attempt is None or attempt.done():
            return
        attempt.cancel()
        self._fail_connect(KlfConnectionError("Connection attempt aborted"))
        self._handle_close(had_error=False)

    def _prepare_end(self) -> None:
        self._should_stay_connected = False
        self._cancel_connect_timer()
        self._cancel_reconnect_timer()
        self._stop_keepalive()

    def _cancel_connect_timer(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self, client: KlfTlsClient) -> None:
        """Read frames from ``client`` until it closes."""
        had_error = False
        try:
            async for message in client:
                if message.type is KlfTlsMessageType.FRAME and message.data:
                    self._handle_frame(message.data)
                elif message.type is KlfTlsMessageType.ERROR:
                    had_error = True
                    _LOGGER.warning(
                        "[%s] Transport error: %s", self.host, message.error
                    )
                    if message.error is not None:
                        self._on_transport_error.fire(message.error)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self.host, err)
            had_error = True
            client.abort()

        if client is self._failed_transport:
            # Dropped after a failed login
            had_error = True
            self._failed_transport = None
        if client is not self._transport:
            _LOGGER.debug("[%s] Released transport closed", self.host)
            return
        self._handle_close(had_error)

    def _handle_frame(self, frame: bytes) -> None:
        """Decode one frame and route it."""
        if self._state is KlfSessionState.CONNECTED:
            self._reset_keepalive()

        _LOGGER.debug("[%s] Received: %s", self.host, frame.hex())
        try:
            record = parse_envelope(slip.unpack(frame))
        except KlfProtocolError as err:
            self._report_protocol_error(err)
            return

        if record.opcode is None:
            self._report_protocol_error(
                KlfProtocolError(f"Envelope too short: {frame.hex()}")
            )
            return
        if not record.checksum_valid:
            self._report_protocol_error(
                KlfProtocolError(
                    f"Checksum mismatch for {record.name or hex(record.opcode)}"
                )
            )
            return

        if record.is_notification:
            self._router.dispatch(record)
            return

        if not self._pending.resolve(record):
            _LOGGER.debug("[%s] Unsolicited confirmation: %s", self.host, record.name)
            self._on_unsolicited.fire(record)

    def _report_protocol_error(self, err: KlfProtocolError) -> None:
        _LOGGER.warning("[%s] Dropping frame: %s", self.host, err)
        self._on_protocol_error.fire(err)

    # -------------------------------------------------------------------------
    # Internal: Keepalive
    # -------------------------------------------------------------------------

    def _reset_keepalive(self) -> None:
        if self._keepalive_timer is not None:
            self._keepalive_timer.cancel()
        self._keepalive_timer = asyncio.get_running_loop().call_later(
            self._keepalive_interval, self._handle_keepalive_due
        )

    def _stop_keepalive(self) -> None:
        if self._keepalive_timer is not None:
            self._keepalive_timer.cancel()
            self._keepalive_timer = None

        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _handle_keepalive_due(self) -> None:
        self._keepalive_timer = None
        transport = self._transport
        if self._state is not KlfSessionState.CONNECTED or transport is None:
            return
        if self._keepalive_task is not None and not self._keepalive_task.done():
            return
        self._keepalive_task = asyncio.create_task(self._send_keepalive(transport))

    async def _send_keepalive(self, transport: KlfTlsClient) -> None:
        """Probe the gateway; drop the transport when it does not answer."""
        _LOGGER.debug("[%s] Sending keepalive", self.host)
        try:
            await self.send_command(KlfOpcode.GW_GET_STATE_REQ)
        except KlfClientError as err:
            _LOGGER.warning("[%s] Keepalive failed: %s", self.host, err)
            transport.abort()
            return

        if self._state is KlfSessionState.CONNECTED and transport is self._transport:
            self._reset_keepalive()
