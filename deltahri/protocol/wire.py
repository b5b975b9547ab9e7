"""
Wire protocol for the delta robot microcontroller link.

This module contains all serial protocol definitions:
- Frame escaping and packet encode/decode
- Packet ids for commands (PC -> MCU) and unsolicited packets (MCU -> PC)
- Payload packing for the typed commands

Frame format (one line, terminated by LF):
  [0xF2 if asynchronous] [tag] [id] [escaped payload] 0x0A

Payload bytes equal to LF (0x0A) or the escape introducer (0x10) are sent as
the pairs 0x10 0x8A and 0x10 0x90. Tag and id bytes are never escaped.
"""

import logging
import struct
from enum import IntEnum

import msgspec

from deltahri.errors import MalformedPacket
from deltahri.protocol.types import ForceSample, ImpedanceSetting, JointAngles, Position

logger = logging.getLogger(__name__)


# =============================================================================
# Framing constants
# =============================================================================

DELIMITER: int = 0x0A
ESCAPE: int = 0x10
# '≥' in code page 437, which is how the MCU marks unsolicited packets
ASYNC_MARKER: int = 0xF2

_ESCAPE_PAIRS: dict[int, int] = {DELIMITER: 0x8A, ESCAPE: 0x90}
_UNESCAPE_PAIRS: dict[int, int] = {v: k for k, v in _ESCAPE_PAIRS.items()}

LINE_TERMINATOR: bytes = bytes([DELIMITER])
HEARTBEAT: bytes = b"robo!"
_HEARTBEAT_FRAMES: frozenset[bytes] = frozenset(
    {HEARTBEAT, bytes([ASYNC_MARKER]) + HEARTBEAT}
)
_NULL_FRAMES: frozenset[bytes] = frozenset({b"", bytes([ASYNC_MARKER, 0x00])})

# Outbound packets carry a constant tag; replies are matched by order, not tag
DEFAULT_TAG: int = ord("0")

_VEC3 = struct.Struct("<3f")
_VEC6 = struct.Struct("<6f")


class CommandId(IntEnum):
    """Packet ids sent to the MCU."""

    SET_TARGET_POSITION = ord("R")
    SET_IMPEDANCE = ord("Z")
    ENABLE = ord("A")
    SET_TARGET_FORCE = ord("F")
    RESET = ord("M")


class AsyncId(IntEnum):
    """Packet ids the MCU sends unsolicited."""

    JOINT_ANGLES = ord("A")
    FORCE = ord("F")
    PRINT = ord("p")


# =============================================================================
# Packet
# =============================================================================


class Packet(msgspec.Struct, frozen=True):
    """A decoded frame."""

    synchronous: bool
    tag: int
    id: int
    payload: bytes

    def describe(self) -> str:
        kind = "sync" if self.synchronous else "async"
        return (
            f"{kind} packet tag={_printable(self.tag)} id={_printable(self.id)} "
            f"payload={self.payload!r}"
        )


def _printable(value: int) -> str:
    ch = chr(value)
    return ch if ch.isprintable() else f"0x{value:02X}"


# =============================================================================
# Escaping
# =============================================================================


def escape(payload: bytes) -> bytes:
    """Escape the delimiter and escape-introducer bytes of a payload."""
    # Escape byte first so the pairs introduced for the delimiter are not re-escaped
    return payload.replace(b"\x10", b"\x10\x90").replace(b"\x0a", b"\x10\x8a")


def unescape(data: bytes) -> bytes:
    """Invert escape(). Raises MalformedPacket on a truncated or unknown pair."""
    if ESCAPE not in data:
        return bytes(data)
    out = bytearray()
    i = 0
    n = len(data)
    while i < n:
        b = data[i]
        if b != ESCAPE:
            out.append(b)
            i += 1
            continue
        if i + 1 >= n:
            raise MalformedPacket("frame ends inside an escape sequence", bytes(data))
        original = _UNESCAPE_PAIRS.get(data[i + 1])
        if original is None:
            raise MalformedPacket(
                f"unknown escape pair 0x10 0x{data[i + 1]:02X}", bytes(data)
            )
        out.append(original)
        i += 2
    return bytes(out)


# =============================================================================
# Frames
# =============================================================================


def encode(tag: int, packet_id: int, payload: bytes = b"", synchronous: bool = True) -> bytes:
    """
    Build a frame (without the line terminator).

    Args:
        tag: Tag byte
        packet_id: Packet id byte
        payload: Raw payload bytes; any value is allowed
        synchronous: False prefixes the asynchronous marker

    Raises:
        ValueError: If tag or id cannot be represented unescaped
    """
    for name, value in (("tag", tag), ("id", packet_id)):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"{name} must be a byte, got {value}")
        if value == DELIMITER:
            raise ValueError(f"{name} cannot be the frame delimiter")
    if synchronous and tag == ASYNC_MARKER:
        raise ValueError("tag of a synchronous frame cannot be the async marker")

    head = bytes([tag, packet_id]) if synchronous else bytes([ASYNC_MARKER, tag, packet_id])
    return head + escape(payload)


def decode(frame: bytes) -> Packet:
    """
    Decode one received frame (line terminator already stripped).

    Raises:
        MalformedPacket: Frame too short or ends mid-escape
    """
    index = 0
    synchronous = True
    if frame and frame[0] == ASYNC_MARKER:
        synchronous = False
        index = 1
    if len(frame) - index < 2:
        raise MalformedPacket(f"frame too short ({len(frame)} bytes)", bytes(frame))
    return Packet(
        synchronous=synchronous,
        tag=frame[index],
        id=frame[index + 1],
        payload=unescape(frame[index + 2 :]),
    )


def is_heartbeat(frame: bytes) -> bool:
    return bytes(frame) in _HEARTBEAT_FRAMES


def is_null_frame(frame: bytes) -> bool:
    return bytes(frame) in _NULL_FRAMES


# =============================================================================
# Payloads
# =============================================================================


def pack_vec3(a: float, b: float, c: float) -> bytes:
    return _VEC3.pack(a, b, c)


def unpack_vec3(payload: bytes) -> tuple[float, float, float]:
    if len(payload) != _VEC3.size:
        raise MalformedPacket(
            f"expected {_VEC3.size} payload bytes, got {len(payload)}", payload
        )
    return _VEC3.unpack(payload)


def pack_target_position(position: Position) -> bytes:
    return pack_vec3(position.x, position.y, position.z)


def pack_impedance(setting: ImpedanceSetting) -> bytes:
    return pack_vec3(setting.mass, setting.damping, setting.stiffness)


def pack_enable(enabled: bool) -> bytes:
    return b"\x01" if enabled else b"\x00"


def unpack_enable(payload: bytes) -> bool:
    if len(payload) < 1:
        raise MalformedPacket("enable reply carries no state byte", payload)
    return payload[0] != 0


def pack_target_force(position: Position, force: tuple[float, float, float]) -> bytes:
    return _VEC6.pack(position.x, position.y, position.z, *force)


def unpack_joint_angles(payload: bytes) -> JointAngles:
    return JointAngles(*unpack_vec3(payload))


def unpack_force(payload: bytes, timestamp: float) -> ForceSample:
    fx, fy, fz = unpack_vec3(payload)
    return ForceSample(fx, fy, fz, timestamp)


def decode_text(payload: bytes) -> str:
    """MCU print payloads are code page 437 text."""
    return payload.decode("cp437", errors="replace")
