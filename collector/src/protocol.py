"""
PZEM-004T wire protocol -- single source of truth for frames and fields.

The meter speaks a Modbus RTU subset over a serial link. The collector sends
an 8-byte "read input registers" request for 10 registers starting at 0x0000
and receives a 25-byte response:

    [addr][0x04][0x14][20 data bytes][crcLo][crcHi]

Each 16-bit register is big-endian. The 32-bit quantities (current, power,
energy) are sent as two registers with the LOW word first, then the HIGH
word. This matches the meter's register map and must not be reordered.

Everything here is pure: no I/O, no clock unless the caller omits ``ts``.

CHANGELOG:
- 2026-10-13: Move field layout into declarative FIELDS table (STORY-103)
- 2026-10-12: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from collector.src.errors import ProtocolError
from collector.src.models import Reading, utcnow

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_ADDRESS: int = 0x01
"""Factory default slave address of the meter."""

READ_INPUT_REGISTERS: int = 0x04
"""Modbus function code used for measurement reads."""

REGISTER_COUNT: int = 0x0A
"""Number of 16-bit input registers requested per read."""

COMMAND_LENGTH: int = 8
"""Length in bytes of a request frame."""

RESPONSE_LENGTH: int = 25
"""Length in bytes of a full measurement response frame."""

ALARM_OFFSET: int = 21
"""Byte offset of the alarm status in the response frame."""

_CRC_INIT = 0xFFFF
_CRC_POLY = 0xA001


# ---------------------------------------------------------------------------
# Field definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FieldDef:
    """Layout and physical limits of one measurement in the response frame.

    Attributes:
        name: Reading attribute the decoded value is stored in.
        offset: Byte offset of the first (or only) 16-bit word.
        word_count: 1 for a plain big-endian register, 2 for a 32-bit value
            sent low word first.
        divisor: Raw integer is divided by this to get engineering units.
        unit: Engineering unit string.
        valid_range: Inclusive ``(min, max)`` of plausible scaled values.
    """

    name: str
    offset: int
    word_count: int
    divisor: float
    unit: str
    valid_range: tuple[float, float]


FIELDS: tuple[FieldDef, ...] = (
    FieldDef("voltage", offset=3, word_count=1, divisor=10, unit="V", valid_range=(0, 300)),
    FieldDef("current", offset=5, word_count=2, divisor=1000, unit="A", valid_range=(0, 100)),
    FieldDef("power", offset=9, word_count=2, divisor=10, unit="W", valid_range=(0, 30000)),
    FieldDef("energy", offset=13, word_count=2, divisor=1, unit="Wh", valid_range=(0, float("inf"))),
    FieldDef("frequency", offset=17, word_count=1, divisor=10, unit="Hz", valid_range=(45, 65)),
    FieldDef("power_factor", offset=19, word_count=1, divisor=100, unit="", valid_range=(0, 1)),
)
"""All numeric measurements in frame order."""


# ---------------------------------------------------------------------------
# CRC
# ---------------------------------------------------------------------------


def crc16(data: bytes) -> int:
    """Compute the Modbus CRC16 of *data*.

    Initial value 0xFFFF, reflected polynomial 0xA001.
    """
    crc = _CRC_INIT
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ _CRC_POLY
            else:
                crc >>= 1
    return crc


def verify_crc(frame: bytes) -> bool:
    """Return True when the trailing little-endian CRC matches the frame body."""
    if len(frame) < 5:
        return False
    received = frame[-2] | (frame[-1] << 8)
    return received == crc16(frame[:-2])


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


def build_command(address: int = DEFAULT_ADDRESS) -> bytes:
    """Build the 8-byte request that reads all measurement registers.

    Args:
        address: Slave address of the meter (0x01-0xF7).

    Returns:
        ``[address, 0x04, 0x00, 0x00, 0x00, 0x0A, crcLo, crcHi]``.
    """
    body = bytes([address & 0xFF, READ_INPUT_REGISTERS, 0x00, 0x00, 0x00, REGISTER_COUNT])
    return body + crc16(body).to_bytes(2, "little")


def _word(frame: bytes, offset: int) -> int:
    """Big-endian 16-bit word starting at *offset*."""
    return (frame[offset] << 8) | frame[offset + 1]


def _raw_value(frame: bytes, field: FieldDef) -> int:
    if field.word_count == 1:
        return _word(frame, field.offset)
    low = _word(frame, field.offset)
    high = _word(frame, field.offset + 2)
    return (high << 16) | low


def decode(frame: bytes, ts: datetime | None = None) -> Reading:
    """Decode a measurement response into a Reading.

    Args:
        frame: Raw response bytes, at least :data:`RESPONSE_LENGTH` long.
        ts: Timestamp to embed; defaults to the current UTC time.

    Raises:
        ProtocolError: If the frame is too short or its CRC does not match.
    """
    if len(frame) < RESPONSE_LENGTH:
        raise ProtocolError(
            f"insufficient data length: got {len(frame)} bytes, expected {RESPONSE_LENGTH}"
        )
    if not verify_crc(frame):
        raise ProtocolError("CRC verification failed")

    values = {field.name: _raw_value(frame, field) / field.divisor for field in FIELDS}
    return Reading(
        timestamp=ts if ts is not None else utcnow(),
        alarm=frame[ALARM_OFFSET] != 0,
        **values,
    )
