"""SLIP framing for the gateway byte stream (RFC 1055)."""

from __future__ import annotations

from .errors import KlfProtocolError

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD


def pack(envelope: bytes) -> bytes:
    """Wrap an envelope into a single SLIP frame."""
    if not envelope:
        raise KlfProtocolError("Cannot frame an empty envelope")
    escaped = (
        bytes(envelope)
        .replace(bytes([SLIP_ESC]), bytes([SLIP_ESC, SLIP_ESC_ESC]))
        .replace(bytes([SLIP_END]), bytes([SLIP_ESC, SLIP_ESC_END]))
    )
    return bytes([SLIP_END]) + escaped + bytes([SLIP_END])


def unpack(frame: bytes) -> bytes:
    """Strip the delimiters of a SLIP frame and undo byte stuffing.

    Raises:
        KlfProtocolError: If the frame is not delimited or contains an
            invalid escape sequence
    """
    if len(frame) < 2 or frame[0] != SLIP_END or frame[-1] != SLIP_END:
        raise KlfProtocolError(f"Frame is not SLIP delimited: {frame.hex()}")

    body = frame[1:-1]
    if SLIP_END in body:
        raise KlfProtocolError("Embedded frame delimiter")

    decoded = bytearray()
    escape = False
    for byte in body:
        if escape:
            if byte == SLIP_ESC_END:
                decoded.append(SLIP_END)
            elif byte == SLIP_ESC_ESC:
                decoded.append(SLIP_ESC)
            else:
                raise KlfProtocolError(f"Invalid escape sequence 0xdb 0x{byte:02x}")
            escape = False
        elif byte == SLIP_ESC:
            escape = True
        else:
            decoded.append(byte)

    if escape:
        raise KlfProtocolError("Frame ends inside an escape sequence")
    if not decoded:
        raise KlfProtocolError("Empty frame")
    return bytes(decoded)


class SlipStreamSplitter:
    """Cut a streaming byte sequence into complete SLIP frames.

    TLS records do not line up with frames, so incoming chunks are buffered
    until a closing delimiter arrives. Returned frames keep both delimiters
    so they can be passed to unpack() unchanged.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        """Add received bytes and return every frame completed by them."""
        self._buffer.extend(data)
        frames: list[bytes] = []

        while True:
            try:
                start = self._buffer.index(SLIP_END)
            except ValueError:
                # Bytes outside a frame carry nothing
                self._buffer.clear()
                break
            try:
                end = self._buffer.index(SLIP_END, start + 1)
            except ValueError:
                del self._buffer[:start]
                break

            if end == start + 1:
                # Back-to-back delimiters: the second one opens the next frame
                del self._buffer[:end]
                continue

            frames.append(bytes(self._buffer[start : end + 1]))
            # Keep the closing delimiter, peers may share it with the next frame
            del self._buffer[:end]

        return frames

    def reset(self) -> None:
        """Drop any partially received frame."""
        self._buffer.clear()
