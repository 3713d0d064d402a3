"""
SLCAN Protocol Implementation
ASCII frame codec and per-id payload layouts for the AI2VCU/VCU2AI interface
"""

import math
import struct
import string
from typing import Callable, Dict, Optional, Sequence, Tuple, Union
from dataclasses import dataclass
from enum import IntEnum

from dvbridge.lib.errors import FrameParseError, InvalidCanId, ConfigValidationError


# ============================================================================
# PROTOCOL CONSTANTS
# ============================================================================

CAN_ID_MAX = 0x7FF
MAX_DLC = 8
FRAME_MARKERS = ("t", "T")
HEX_DIGITS = frozenset(string.hexdigits)

# Bare acknowledgement / error bytes
SLCAN_CR = "\r"
SLCAN_BEL = "\x07"


class CanId(IntEnum):
    AI2VCU_STATUS = 0x510
    AI2VCU_DRIVE_F = 0x511
    AI2VCU_DRIVE_R = 0x512
    AI2VCU_STEER = 0x513
    AI2VCU_BRAKE = 0x514
    VCU2AI_STATUS = 0x520


class SlcanCommand:
    VERSION = "V"
    OPEN = "O"
    CLOSE = "C"
    AUTO_STREAM = "X1"
    POLL = "A"
    ACCEPT_MASK_ALL = "M00000000"
    ACCEPT_FILTER_ALL = "mFFFFFFFF"

    @staticmethod
    def bitrate(code: str) -> str:
        return f"S{code}"


# Tokens the adapter sends that are not data frames
ACK_OK_TOKENS = ("OK",)
ACK_ERROR_TOKENS = ("ERROR", "ERR")
STREAM_ACK_TOKENS = ("z", "Z")
POLL_TOKEN = "A"


# ============================================================================
# HELPERS
# ============================================================================

def clamp_byte(value) -> int:
    """Clamp to 0..255, non-numeric values become 0"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    if number > 255:
        return 255
    return int(number)


def clamp(value: float, low: int, high: int) -> int:
    """Saturating conversion to an integer field"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(max(low, min(high, round(number))))


def _is_hex(text: str) -> bool:
    return bool(text) and all(ch in HEX_DIGITS for ch in text)


def parse_can_id(value: Union[int, str]) -> int:
    """
    Parse a CAN id from an int or a hex string ("0x520", "520").
    Raises ConfigValidationError on anything outside 0..0x7FF.
    """
    if isinstance(value, bool):
        raise ConfigValidationError(f"Invalid CAN id: {value!r}")

    if isinstance(value, int):
        if 0 <= value <= CAN_ID_MAX:
            return value
        raise ConfigValidationError(f"CAN id out of range: {value:#x}")

    if not isinstance(value, str):
        raise ConfigValidationError(f"Invalid CAN id: {value!r}")

    normalized = value.strip()
    if normalized[:2].lower() == "0x":
        normalized = normalized[2:]
    if not (1 <= len(normalized) <= 3) or not _is_hex(normalized):
        raise ConfigValidationError(f"Invalid CAN id: {value!r}")

    parsed = int(normalized, 16)
    if parsed > CAN_ID_MAX:
        raise ConfigValidationError(f"CAN id out of range: {value!r}")
    return parsed


def format_can_id(can_id: int) -> str:
    return f"0x{can_id:03X}"


def format_payload(data: Sequence[int]) -> str:
    if not data:
        return "(empty)"
    return " ".join(f"{clamp_byte(b):02X}" for b in data)


# ============================================================================
# FRAME STRUCTURES
# ============================================================================

@dataclass
class CanFrame:
    """Standard 11-bit CAN frame"""
    can_id: int
    data: bytes

    def __post_init__(self):
        if not 0 <= self.can_id <= CAN_ID_MAX:
            raise InvalidCanId(f"CAN id out of range: {self.can_id}")
        self.data = bytes(self.data)
        if len(self.data) > MAX_DLC:
            raise FrameParseError(f"Payload too long: {len(self.data)}")

    @property
    def dlc(self) -> int:
        return len(self.data)


# ============================================================================
# FRAME ENCODER / PARSER
# ============================================================================

def encode_frame(can_id: int, payload: Sequence[int]) -> str:
    """
    Encode a standard frame as an SLCAN line (without the trailing CR).

    t<3 hex id><1 hex dlc><2*dlc hex bytes>, uppercase, bytes clamped to 0..255.
    """
    if not isinstance(can_id, int) or not 0 <= can_id <= CAN_ID_MAX:
        raise InvalidCanId(f"CAN id out of range: {can_id!r}")

    dlc = min(MAX_DLC, len(payload))
    data_hex = "".join(f"{clamp_byte(b):02X}" for b in list(payload)[:dlc])
    return f"t{can_id:03X}{dlc:X}{data_hex}"


def parse_frame(line: str) -> CanFrame:
    """Strict SLCAN frame parser. Raises FrameParseError."""
    if not isinstance(line, str) or len(line) < 5:
        raise FrameParseError(f"Frame line too short: {line!r}")
    if line[0] not in FRAME_MARKERS:
        raise FrameParseError(f"Not a frame line: {line!r}")

    id_hex = line[1:4]
    if not _is_hex(id_hex):
        raise FrameParseError(f"Invalid id digits: {id_hex!r}")
    can_id = int(id_hex, 16)
    if can_id > CAN_ID_MAX:
        raise FrameParseError(f"CAN id out of range: {id_hex!r}")

    dlc_hex = line[4]
    if not _is_hex(dlc_hex):
        raise FrameParseError(f"Invalid DLC digit: {dlc_hex!r}")
    dlc = int(dlc_hex, 16)
    if dlc > MAX_DLC:
        raise FrameParseError(f"DLC out of range: {dlc}")

    expected_length = 5 + dlc * 2
    if len(line) < expected_length:
        raise FrameParseError(f"Frame line shorter than DLC {dlc}: {line!r}")

    data = bytearray()
    for index in range(dlc):
        offset = 5 + index * 2
        byte_hex = line[offset:offset + 2]
        if not _is_hex(byte_hex):
            raise FrameParseError(f"Invalid data digits: {byte_hex!r}")
        data.append(int(byte_hex, 16))

    return CanFrame(can_id=can_id, data=bytes(data))


def decode_frame(line: str) -> Optional[CanFrame]:
    """Parse an SLCAN frame line, returning None on any malformed input"""
    try:
        return parse_frame(line)
    except FrameParseError:
        return None


def find_frame(line: str) -> Optional[CanFrame]:
    """
    Scan for a frame marker at any offset and decode the first valid frame.
    Adapters sometimes prefix frames with stray ack bytes or timestamps.
    """
    for offset, marker in enumerate(line):
        if marker not in FRAME_MARKERS:
            continue
        frame = decode_frame(line[offset:])
        if frame is not None:
            return frame
    return None


# ============================================================================
# RX PAYLOADS
# ============================================================================

@dataclass
class VcuStatus:
    """VCU2AI status frame fields"""
    handshake: bool
    go_signal: bool
    as_state: int
    ami_state: int

    @staticmethod
    def decode(data: bytes) -> 'VcuStatus':
        """Missing bytes read as zero"""
        padded = bytes(data) + bytes(max(0, 3 - len(data)))
        return VcuStatus(
            handshake=bool(padded[0] & 0x01),
            go_signal=bool(padded[1] & 0x08),
            as_state=padded[2] & 0x0F,
            ami_state=(padded[2] >> 4) & 0x0F,
        )


# ============================================================================
# TX PAYLOADS
# ============================================================================

def pack_status(handshake: bool, estop: int, mission_status: int, direction: int) -> bytes:
    """AI2VCU status word"""
    byte0 = 0x01 if handshake else 0x00
    byte1 = (
        (clamp(estop, 0, 1) & 0x01)
        | ((clamp(mission_status, 0, 3) & 0x03) << 4)
        | ((clamp(direction, 0, 3) & 0x03) << 6)
    )
    return bytes([byte0, byte1]) + bytes(6)


def pack_drive_rear(torque: int, speed: int) -> bytes:
    """Torque and speed as saturating unsigned 16-bit little-endian"""
    return struct.pack('<HH', clamp(torque, 0, 0xFFFF), clamp(speed, 0, 0xFFFF)) + bytes(4)


def pack_steer(steer: int) -> bytes:
    """Steer as saturating signed 16-bit little-endian"""
    return struct.pack('<h', clamp(steer, -32768, 32767)) + bytes(6)


def pack_brake(brake: int) -> bytes:
    # Byte 1 repeats the low byte
    low = clamp(brake, 0, 0xFFFF) & 0xFF
    return bytes([low, low]) + bytes(6)


def pack_generic(event_bytes: Sequence[int], state_byte: int) -> bytes:
    """Gamepad event bytes 0-6 plus current AS state in byte 7"""
    head = [clamp_byte(b) for b in list(event_bytes)[:7]]
    head += [0] * (7 - len(head))
    return bytes(head + [clamp_byte(state_byte)])


def _build_status(ctx) -> bytes:
    return pack_status(
        ctx.mission_state.handshake,
        ctx.control.estop_request,
        ctx.control.mission_status,
        ctx.control.direction_request,
    )


def _build_drive_rear(ctx) -> bytes:
    return pack_drive_rear(ctx.control.torque_request, ctx.control.speed_request)


def _build_steer(ctx) -> bytes:
    return pack_steer(ctx.control.steer_request)


def _build_brake(ctx) -> bytes:
    return pack_brake(ctx.control.brake_request)


def _build_generic(ctx) -> bytes:
    return pack_generic(ctx.gamepad_event.to_bytes(), ctx.mission_state.as_state)


PAYLOAD_BUILDERS: Dict[int, Callable[..., bytes]] = {
    CanId.AI2VCU_STATUS: _build_status,
    CanId.AI2VCU_DRIVE_R: _build_drive_rear,
    CanId.AI2VCU_STEER: _build_steer,
    CanId.AI2VCU_BRAKE: _build_brake,
}


def build_outgoing_payload(can_id: int, ctx) -> bytes:
    """Build the 8-byte payload for can_id from the shared context"""
    builder = PAYLOAD_BUILDERS.get(can_id, _build_generic)
    return builder(ctx)


def pack_periodic_frame(can_id: int, ctx) -> Tuple[str, bytes]:
    """Return (line, payload) for a periodic transmission"""
    payload = build_outgoing_payload(can_id, ctx)
    return encode_frame(can_id, payload), payload
