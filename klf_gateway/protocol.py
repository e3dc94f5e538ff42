"""Envelope codec for KLF gateway commands.

Envelope layout (multi-byte fields big-endian):

    [0]      session id, always 0 in requests
    [1]      total envelope length - 2
    [2-3]    opcode
    [4..N-1] opcode specific payload
    [N]      XOR of bytes [0, N)
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import reduce
from operator import xor
from typing import Any

from .errors import KlfEncodeError, KlfProtocolError
from .registry import (
    KlfOpcode,
    is_notification_name,
    lookup_opcode,
    name_for_opcode,
    payload_decoder,
    payload_encoder,
)

_LOGGER = logging.getLogger(__name__)

HEADER_LENGTH = 4
MIN_ENVELOPE_LENGTH = HEADER_LENGTH + 1
MAX_ENVELOPE_LENGTH = 0xFF + 2


@dataclass(frozen=True, slots=True)
class KlfRecord:
    """Decoded incoming envelope."""

    id: int | None = None
    opcode: int | None = None
    name: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    checksum_valid: bool = False

    @property
    def is_notification(self) -> bool:
        """Return True when the record is an unsolicited notification."""
        return is_notification_name(self.name)

    def get(self, key: str, default: Any = None) -> Any:
        """Return a decoded payload field."""
        return self.fields.get(key, default)


def calc_checksum(data: bytes) -> int:
    """XOR-fold every byte of ``data`` starting from byte 0."""
    return reduce(xor, data, 0)


def build_envelope(
    command: KlfOpcode | int | str, fields: Mapping[str, Any] | None = None
) -> bytes:
    """Encode a request into an envelope.

    ``command`` may be an opcode, its numeric id or its name. Returns b""
    when the command is unknown or no payload encoder is registered for it;
    callers must treat that as an encode failure.

    Raises:
        KlfEncodeError: If the payload fields are missing or out of range
    """
    opcode = lookup_opcode(command)
    if opcode is None:
        _LOGGER.debug("Unknown command %r", command)
        return b""

    encoder = payload_encoder(opcode)
    if encoder is None:
        _LOGGER.debug("No encoder for opcode 0x%04x", opcode)
        return b""

    try:
        payload = encoder(fields or {})
    except (KeyError, ValueError, TypeError, struct.error) as err:
        raise KlfEncodeError(f"Cannot encode {opcode.name}: {err}") from err

    total = MIN_ENVELOPE_LENGTH + len(payload)
    if total > MAX_ENVELOPE_LENGTH:
        raise KlfEncodeError(f"{opcode.name} payload too long ({len(payload)} bytes)")

    body = struct.pack(">BBH", 0x00, total - 2, opcode) + payload
    envelope = body + bytes([calc_checksum(body)])
    _LOGGER.debug("Encoded %s: %s", opcode.name, envelope.hex())
    return envelope


def parse_envelope(data: bytes) -> KlfRecord:
    """Decode an incoming envelope.

    Envelopes of 4 bytes or fewer produce an empty record. The payload is only
    decoded when the checksum matches, a payload is present and a decoder is
    registered; otherwise the record carries header fields only.

    Raises:
        KlfProtocolError: If a registered decoder rejects the payload
    """
    if len(data) <= HEADER_LENGTH:
        _LOGGER.debug("Envelope too short: %s", data.hex())
        return KlfRecord()

    opcode = struct.unpack_from(">H", data, 2)[0]
    name = name_for_opcode(opcode)
    checksum_valid = data[-1] == calc_checksum(data[:-1])

    fields: dict[str, Any] = {}
    decoder = payload_decoder(opcode) if name is not None else None
    if checksum_valid and len(data) > MIN_ENVELOPE_LENGTH and decoder is not None:
        try:
            fields = decoder(bytes(data[HEADER_LENGTH:-1]))
        except (ValueError, struct.error) as err:
            raise KlfProtocolError(f"Cannot decode {name}: {err}") from err

    record = KlfRecord(
        id=data[0],
        opcode=opcode,
        name=name,
        fields=fields,
        checksum_valid=checksum_valid,
    )
    _LOGGER.debug("Decoded %s", record)
    return record
