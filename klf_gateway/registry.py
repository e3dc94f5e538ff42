"""Opcode registry for the KLF gateway command set.

Maps numeric opcodes to names and holds the per-opcode payload encoders
(outgoing requests) and decoders (incoming confirmations and notifications).

Message roles are carried by the opcode name suffix:
- ``_REQ``: request sent by the client
- ``_CFM``: confirmation answering a request
- ``_NTF``: unsolicited notification from the gateway
"""

from __future__ import annotations

import struct
from collections.abc import Callable, Mapping, Sequence
from enum import IntEnum
from typing import Any

PayloadEncoder = Callable[[Mapping[str, Any]], bytes]
PayloadDecoder = Callable[[bytes], dict[str, Any]]

REQUEST_SUFFIX = "_REQ"
CONFIRMATION_SUFFIX = "_CFM"
NOTIFICATION_SUFFIX = "_NTF"

PASSWORD_LENGTH = 32
NODE_NAME_LENGTH = 64
MAX_COMMAND_NODES = 20
MAX_FUNCTIONAL_PARAMETERS = 16

# Raw actuator position range and special values
POSITION_MAX = 0xC800
POSITION_TARGET = 0xD100
POSITION_CURRENT = 0xD200
POSITION_DEFAULT = 0xD300
POSITION_IGNORE = 0xD400
POSITION_UNKNOWN = 0xF7FF


class KlfOpcode(IntEnum):
    """Numeric command identifiers understood by the gateway."""

    GW_ERROR_NTF = 0x0000
    GW_REBOOT_REQ = 0x0001
    GW_REBOOT_CFM = 0x0002
    GW_GET_VERSION_REQ = 0x0008
    GW_GET_VERSION_CFM = 0x0009
    GW_GET_PROTOCOL_VERSION_REQ = 0x000A
    GW_GET_PROTOCOL_VERSION_CFM = 0x000B
    GW_GET_STATE_REQ = 0x000C
    GW_GET_STATE_CFM = 0x000D

    GW_GET_NODE_INFORMATION_REQ = 0x0200
    GW_GET_NODE_INFORMATION_CFM = 0x0201
    GW_GET_ALL_NODES_INFORMATION_REQ = 0x0202
    GW_GET_ALL_NODES_INFORMATION_CFM = 0x0203
    GW_GET_ALL_NODES_INFORMATION_NTF = 0x0204
    GW_GET_ALL_NODES_INFORMATION_FINISHED_NTF = 0x0205
    GW_NODE_INFORMATION_CHANGED_NTF = 0x020C
    GW_GET_NODE_INFORMATION_NTF = 0x0210
    GW_NODE_STATE_POSITION_CHANGED_NTF = 0x0211

    GW_HOUSE_STATUS_MONITOR_ENABLE_REQ = 0x0240
    GW_HOUSE_STATUS_MONITOR_ENABLE_CFM = 0x0241
    GW_HOUSE_STATUS_MONITOR_DISABLE_REQ = 0x0242
    GW_HOUSE_STATUS_MONITOR_DISABLE_CFM = 0x0243

    GW_COMMAND_SEND_REQ = 0x0300
    GW_COMMAND_SEND_CFM = 0x0301
    GW_COMMAND_RUN_STATUS_NTF = 0x0302
    GW_COMMAND_REMAINING_TIME_NTF = 0x0303
    GW_SESSION_FINISHED_NTF = 0x0304

    GW_SET_UTC_REQ = 0x2000
    GW_SET_UTC_CFM = 0x2001
    GW_GET_LOCAL_TIME_REQ = 0x2004
    GW_GET_LOCAL_TIME_CFM = 0x2005

    GW_PASSWORD_ENTER_REQ = 0x3000
    GW_PASSWORD_ENTER_CFM = 0x3001
    GW_PASSWORD_CHANGE_REQ = 0x3002
    GW_PASSWORD_CHANGE_CFM = 0x3003
    GW_PASSWORD_CHANGE_NTF = 0x3004


# -----------------------------------------------------------------------------
# Lookup
# -----------------------------------------------------------------------------


def name_for_opcode(opcode: int) -> str | None:
    """Return the registered name for a numeric opcode, or None."""
    try:
        return KlfOpcode(opcode).name
    except ValueError:
        return None


def opcode_for_name(name: str) -> KlfOpcode | None:
    """Return the opcode registered under ``name``, or None."""
    return KlfOpcode.__members__.get(name)


def lookup_opcode(command: KlfOpcode | int | str) -> KlfOpcode | None:
    """Resolve an opcode given as enum member, numeric id or name."""
    if isinstance(command, str):
        return opcode_for_name(command)
    try:
        return KlfOpcode(command)
    except ValueError:
        return None


def confirmation_for(opcode: KlfOpcode) -> KlfOpcode | None:
    """Derive the confirmation opcode answering a request opcode."""
    if not opcode.name.endswith(REQUEST_SUFFIX):
        return None
    return opcode_for_name(
        opcode.name[: -len(REQUEST_SUFFIX)] + CONFIRMATION_SUFFIX
    )


def is_notification_name(name: str | None) -> bool:
    """Return True when ``name`` follows the notification naming convention."""
    return name is not None and name.endswith(NOTIFICATION_SUFFIX)


def payload_encoder(opcode: KlfOpcode | int) -> PayloadEncoder | None:
    """Return the payload encoder for ``opcode`` if one is registered."""
    return _ENCODERS.get(opcode)  # type: ignore[call-overload]


def payload_decoder(opcode: KlfOpcode | int) -> PayloadDecoder | None:
    """Return the payload decoder for ``opcode`` if one is registered."""
    return _DECODERS.get(opcode)  # type: ignore[call-overload]


# -----------------------------------------------------------------------------
# Position helpers
# -----------------------------------------------------------------------------


def position_to_percent(raw: int) -> float | None:
    """Convert a raw actuator position to percent closed.

    Returns None for the special (target/current/ignore/unknown) values.
    """
    if raw < 0 or raw > POSITION_MAX:
        return None
    return round(raw * 100 / POSITION_MAX, 2)


def percent_to_position(percent: float) -> int:
    """Convert a percentage (0-100) into a raw actuator position."""
    if not 0 <= percent <= 100:
        raise ValueError(f"Position must be between 0 and 100, got {percent}")
    return round(percent * POSITION_MAX / 100)


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------


def _fixed_string(value: str, length: int) -> bytes:
    encoded = value.encode("utf-8")
    if len(encoded) > length:
        raise ValueError(f"Value longer than {length} bytes")
    return encoded.ljust(length, b"\x00")


def _read_string(data: bytes) -> str:
    return data.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def _require(payload: bytes, size: int) -> None:
    if len(payload) < size:
        raise ValueError(f"Payload too short: {len(payload)} < {size} bytes")


def _empty(_fields: Mapping[str, Any]) -> bytes:
    return b""


# -----------------------------------------------------------------------------
# Encoders
# -----------------------------------------------------------------------------


def _encode_password_enter(fields: Mapping[str, Any]) -> bytes:
    return _fixed_string(fields["password"], PASSWORD_LENGTH)


def _encode_password_change(fields: Mapping[str, Any]) -> bytes:
    return _fixed_string(fields["current_password"], PASSWORD_LENGTH) + _fixed_string(
        fields["new_password"], PASSWORD_LENGTH
    )


def _encode_node_id(fields: Mapping[str, Any]) -> bytes:
    return struct.pack(">B", fields["node_id"])


def _encode_set_utc(fields: Mapping[str, Any]) -> bytes:
    return struct.pack(">I", int(fields["utc_time"]))


def _encode_command_send(fields: Mapping[str, Any]) -> bytes:
    """Build the fixed 66 byte GW_COMMAND_SEND_REQ payload."""
    node_ids: Sequence[int] = fields["node_ids"]
    if not node_ids or len(node_ids) > MAX_COMMAND_NODES:
        raise ValueError(f"Between 1 and {MAX_COMMAND_NODES} node ids are required")

    functional: Sequence[int | None] = fields.get("functional_parameters") or ()
    if len(functional) > MAX_FUNCTIONAL_PARAMETERS:
        raise ValueError(
            f"At most {MAX_FUNCTIONAL_PARAMETERS} functional parameters are allowed"
        )

    indicator = 0
    values = [0] * MAX_FUNCTIONAL_PARAMETERS
    for idx, value in enumerate(functional):
        if value is None:
            continue
        indicator |= 1 << (MAX_FUNCTIONAL_PARAMETERS - 1 - idx)
        values[idx] = value

    return b"".join(
        (
            struct.pack(
                ">HBBBBBH",
                fields["session_id"],
                fields.get("originator", 1),
                fields.get("priority_level", 3),
                fields.get("parameter_active", 0),
                indicator >> 8,
                indicator & 0xFF,
                fields["main_parameter"],
            ),
            struct.pack(f">{MAX_FUNCTIONAL_PARAMETERS}H", *values),
            struct.pack(">B", len(node_ids)),
            bytes(node_ids).ljust(MAX_COMMAND_NODES, b"\x00"),
            struct.pack(
                ">BBBB",
                fields.get("priority_level_lock", 0),
                fields.get("priority_levels_0_3", 0),
                fields.get("priority_levels_4_7", 0),
                fields.get("lock_time", 0),
            ),
        )
    )


_ENCODERS: dict[KlfOpcode, PayloadEncoder] = {
    KlfOpcode.GW_REBOOT_REQ: _empty,
    KlfOpcode.GW_GET_VERSION_REQ: _empty,
    KlfOpcode.GW_GET_PROTOCOL_VERSION_REQ: _empty,
    KlfOpcode.GW_GET_STATE_REQ: _empty,
    KlfOpcode.GW_GET_NODE_INFORMATION_REQ: _encode_node_id,
    KlfOpcode.GW_GET_ALL_NODES_INFORMATION_REQ: _empty,
    KlfOpcode.GW_HOUSE_STATUS_MONITOR_ENABLE_REQ: _empty,
    KlfOpcode.GW_HOUSE_STATUS_MONITOR_DISABLE_REQ: _empty,
    KlfOpcode.GW_COMMAND_SEND_REQ: _encode_command_send,
    KlfOpcode.GW_SET_UTC_REQ: _encode_set_utc,
    KlfOpcode.GW_GET_LOCAL_TIME_REQ: _empty,
    KlfOpcode.GW_PASSWORD_ENTER_REQ: _encode_password_enter,
    KlfOpcode.GW_PASSWORD_CHANGE_REQ: _encode_password_change,
}


# -----------------------------------------------------------------------------
# Decoders
# -----------------------------------------------------------------------------


def _decode_status(payload: bytes) -> dict[str, Any]:
    _require(payload, 1)
    return {"status": payload[0]}


def _decode_error(payload: bytes) -> dict[str, Any]:
    _require(payload, 1)
    return {"error_number": payload[0]}


def _decode_version(payload: bytes) -> dict[str, Any]:
    _require(payload, 9)
    return {
        "software_version": ".".join(str(part) for part in payload[:6]),
        "hardware_version": payload[6],
        "product_group": payload[7],
        "product_type": payload[8],
    }


def _decode_protocol_version(payload: bytes) -> dict[str, Any]:
    _require(payload, 4)
    major, minor = struct.unpack_from(">HH", payload)
    return {"major_version": major, "minor_version": minor}


def _decode_state(payload: bytes) -> dict[str, Any]:
    _require(payload, 6)
    return {
        "gateway_state": payload[0],
        "sub_state": payload[1],
        "state_data": bytes(payload[2:6]),
    }


def _decode_node_information_cfm(payload: bytes) -> dict[str, Any]:
    _require(payload, 2)
    return {"status": payload[0], "node_id": payload[1]}


def _decode_all_nodes_information_cfm(payload: bytes) -> dict[str, Any]:
    _require(payload, 2)
    return {"status": payload[0], "total_number_of_nodes": payload[1]}


_NODE_INFORMATION = struct.Struct(">BHB64sBHBBBBB8sBHHHHHHHIB20s")


def _decode_node_information(payload: bytes) -> dict[str, Any]:
    _require(payload, _NODE_INFORMATION.size)
    (
        node_id,
        order,
        placement,
        name,
        velocity,
        node_type_sub_type,
        product_group,
        product_type,
        node_variation,
        power_mode,
        build_number,
        serial_number,
        state,
        current_position,
        target,
        fp1,
        fp2,
        fp3,
        fp4,
        remaining_time,
        timestamp,
        alias_count,
        alias_array,
    ) = _NODE_INFORMATION.unpack_from(payload)
    return {
        "node_id": node_id,
        "order": order,
        "placement": placement,
        "name": _read_string(name),
        "velocity": velocity,
        "node_type": node_type_sub_type >> 6,
        "sub_type": node_type_sub_type & 0x3F,
        "product_group": product_group,
        "product_type": product_type,
        "node_variation": node_variation,
        "power_mode": power_mode,
        "build_number": build_number,
        "serial_number": serial_number.hex(),
        "state": state,
        "current_position": current_position,
        "target": target,
        "functional_positions": [fp1, fp2, fp3, fp4],
        "remaining_time": remaining_time,
        "timestamp": timestamp,
        "aliases": [
            struct.unpack_from(">HH", alias_array, idx * 4)
            for idx in range(min(alias_count, 5))
        ],
    }


def _decode_node_information_changed(payload: bytes) -> dict[str, Any]:
    _require(payload, 69)
    order, placement, node_variation = struct.unpack_from(">HBB", payload, 65)
    return {
        "node_id": payload[0],
        "name": _read_string(payload[1:65]),
        "order": order,
        "placement": placement,
        "node_variation": node_variation,
    }


def _decode_node_state_position_changed(payload: bytes) -> dict[str, Any]:
    _require(payload, 20)
    (
        node_id,
        state,
        current_position,
        target,
        fp1,
        fp2,
        fp3,
        fp4,
        remaining_time,
        timestamp,
    ) = struct.unpack_from(">BBHHHHHHHI", payload)
    return {
        "node_id": node_id,
        "state": state,
        "current_position": current_position,
        "target": target,
        "functional_positions": [fp1, fp2, fp3, fp4],
        "remaining_time": remaining_time,
        "timestamp": timestamp,
    }


def _decode_command_send_cfm(payload: bytes) -> dict[str, Any]:
    _require(payload, 3)
    session_id, status = struct.unpack_from(">HB", payload)
    return {"session_id": session_id, "status": status}


def _decode_command_run_status(payload: bytes) -> dict[str, Any]:
    _require(payload, 13)
    (
        session_id,
        status_id,
        index,
        node_parameter,
        parameter_value,
        run_status,
        status_reply,
        information_code,
    ) = struct.unpack_from(">HBBBHBBI", payload)
    return {
        "session_id": session_id,
        "status_id": status_id,
        "index": index,
        "node_parameter": node_parameter,
        "parameter_value": parameter_value,
        "run_status": run_status,
        "status_reply": status_reply,
        "information_code": information_code,
    }


def _decode_command_remaining_time(payload: bytes) -> dict[str, Any]:
    _require(payload, 6)
    session_id, index, node_parameter, seconds = struct.unpack_from(">HBBH", payload)
    return {
        "session_id": session_id,
        "index": index,
        "node_parameter": node_parameter,
        "seconds": seconds,
    }


def _decode_session_finished(payload: bytes) -> dict[str, Any]:
    _require(payload, 2)
    return {"session_id": struct.unpack_from(">H", payload)[0]}


def _decode_local_time(payload: bytes) -> dict[str, Any]:
    _require(payload, 15)
    (
        utc_time,
        second,
        minute,
        hour,
        day_of_month,
        month,
        year,
        week_day,
        day_of_year,
        daylight_saving,
    ) = struct.unpack_from(">IBBBBBHBHb", payload)
    return {
        "utc_time": utc_time,
        "second": second,
        "minute": minute,
        "hour": hour,
        "day_of_month": day_of_month,
        "month": month + 1,
        "year": year + 1900,
        "week_day": week_day,
        "day_of_year": day_of_year,
        "daylight_saving": daylight_saving,
    }


def _decode_password_change_ntf(payload: bytes) -> dict[str, Any]:
    _require(payload, PASSWORD_LENGTH)
    return {"new_password": _read_string(payload[:PASSWORD_LENGTH])}


_DECODERS: dict[KlfOpcode, PayloadDecoder] = {
    KlfOpcode.GW_ERROR_NTF: _decode_error,
    KlfOpcode.GW_GET_VERSION_CFM: _decode_version,
    KlfOpcode.GW_GET_PROTOCOL_VERSION_CFM: _decode_protocol_version,
    KlfOpcode.GW_GET_STATE_CFM: _decode_state,
    KlfOpcode.GW_GET_NODE_INFORMATION_CFM: _decode_node_information_cfm,
    KlfOpcode.GW_GET_ALL_NODES_INFORMATION_CFM: _decode_all_nodes_information_cfm,
    KlfOpcode.GW_GET_ALL_NODES_INFORMATION_NTF: _decode_node_information,
    KlfOpcode.GW_GET_NODE_INFORMATION_NTF: _decode_node_information,
    KlfOpcode.GW_NODE_INFORMATION_CHANGED_NTF: _decode_node_information_changed,
    KlfOpcode.GW_NODE_STATE_POSITION_CHANGED_NTF: _decode_node_state_position_changed,
    KlfOpcode.GW_COMMAND_SEND_CFM: _decode_command_send_cfm,
    KlfOpcode.GW_COMMAND_RUN_STATUS_NTF: _decode_command_run_status,
    KlfOpcode.GW_COMMAND_REMAINING_TIME_NTF: _decode_command_remaining_time,
    KlfOpcode.GW_SESSION_FINISHED_NTF: _decode_session_finished,
    KlfOpcode.GW_GET_LOCAL_TIME_CFM: _decode_local_time,
    KlfOpcode.GW_PASSWORD_ENTER_CFM: _decode_status,
    KlfOpcode.GW_PASSWORD_CHANGE_CFM: _decode_status,
    KlfOpcode.GW_PASSWORD_CHANGE_NTF: _decode_password_change_ntf,
}
