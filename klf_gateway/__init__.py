"""Client engine for KLF gateway sessions."""

__version__ = "0.1.0"

from .config import KLF_PORT, KlfSessionConfig
from .errors import (
    KlfClientError,
    KlfConnectionError,
    KlfEncodeError,
    KlfLoginRefused,
    KlfProtocolError,
    KlfTimeout,
)
from .notifications import NotificationRouter
from .pending import PendingRequestTable
from .protocol import KlfRecord, build_envelope, calc_checksum, parse_envelope
from .registry import (
    KlfOpcode,
    confirmation_for,
    percent_to_position,
    position_to_percent,
)
from .session import KlfSession, KlfSessionState
from .tls import create_ssl_context, open_tls_connection
from .tls_client import KlfTlsClient, KlfTlsMessage, KlfTlsMessageType

__all__ = [
    "KLF_PORT",
    "KlfClientError",
    "KlfConnectionError",
    "KlfEncodeError",
    "KlfLoginRefused",
    "KlfOpcode",
    "KlfProtocolError",
    "KlfRecord",
    "KlfSession",
    "KlfSessionConfig",
    "KlfSessionState",
    "KlfTimeout",
    "KlfTlsClient",
    "KlfTlsMessage",
    "KlfTlsMessageType",
    "NotificationRouter",
    "PendingRequestTable",
    "__version__",
    "build_envelope",
    "calc_checksum",
    "confirmation_for",
    "create_ssl_context",
    "open_tls_connection",
    "parse_envelope",
    "percent_to_position",
    "position_to_percent",
]
