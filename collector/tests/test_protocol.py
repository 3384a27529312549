"""
Unit tests for the PZEM-004T wire protocol module.

Tests verify:
- build_command produces the documented 8-byte request with trailing CRC.
- crc16 matches reference vectors.
- verify_crc rejects any single flipped byte.
- decode reconstructs scaled values, including the low-word-first 32-bit
  fields, and rejects short or corrupted frames.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from collector.src.errors import ProtocolError
from collector.src.protocol import (
    FIELDS,
    RESPONSE_LENGTH,
    build_command,
    crc16,
    decode,
    verify_crc,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_frame(
    *,
    voltage: int = 2200,
    current: int = 1500,
    power: int = 3300,
    energy: int = 12345,
    frequency: int = 500,
    power_factor: int = 95,
    alarm: bool = False,
    address: int = 0x01,
) -> bytes:
    """Build a 25-byte response frame from raw register values."""
    body = bytearray([address, 0x04, 0x14])
    body += voltage.to_bytes(2, "big")
    for value in (current, power, energy):
        body += (value & 0xFFFF).to_bytes(2, "big")
        body += (value >> 16).to_bytes(2, "big")
    body += frequency.to_bytes(2, "big")
    body += power_factor.to_bytes(2, "big")
    body += b"\xff\xff" if alarm else b"\x00\x00"
    return bytes(body) + crc16(bytes(body)).to_bytes(2, "little")


_TS = datetime(2026, 10, 12, 8, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# CRC
# ---------------------------------------------------------------------------


class TestCrc16:
    """Modbus CRC16 reference values."""

    def test_read_command_reference_vector(self) -> None:
        """The factory-address read command has the well-known CRC 70 0D."""
        assert crc16(bytes([0x01, 0x04, 0x00, 0x00, 0x00, 0x0A])) == 0x0D70

    def test_modbus_check_string(self) -> None:
        """CRC-16/MODBUS check value for ASCII '123456789'."""
        assert crc16(b"123456789") == 0x4B37

    def test_empty_input_is_initial_value(self) -> None:
        assert crc16(b"") == 0xFFFF


class TestVerifyCrc:
    """verify_crc accepts intact frames and rejects corrupted ones."""

    def test_valid_frame_passes(self) -> None:
        assert verify_crc(_make_frame()) is True

    def test_any_flipped_byte_fails(self) -> None:
        frame = _make_frame()
        for index in range(len(frame)):
            corrupted = bytearray(frame)
            corrupted[index] ^= 0x01
            assert verify_crc(bytes(corrupted)) is False, f"byte {index} flip undetected"

    def test_too_short_frame_fails(self) -> None:
        assert verify_crc(b"\x01\x04\x00\x00") is False


# ---------------------------------------------------------------------------
# build_command
# ---------------------------------------------------------------------------


class TestBuildCommand:
    """Request frames carry address, function, register range and CRC."""

    def test_default_address_command(self) -> None:
        assert build_command(0x01) == bytes.fromhex("01040000000a700d")

    def test_command_layout_for_other_address(self) -> None:
        command = build_command(0x05)

        assert len(command) == 8
        assert command[:6] == bytes([0x05, 0x04, 0x00, 0x00, 0x00, 0x0A])
        assert verify_crc(command)


# ---------------------------------------------------------------------------
# decode
# ---------------------------------------------------------------------------


class TestDecode:
    """decode turns a response frame into a scaled Reading."""

    def test_decodes_scaled_values(self) -> None:
        reading = decode(_make_frame(), ts=_TS)

        assert reading.timestamp == _TS
        assert reading.voltage == 220.0
        assert reading.current == 1.5
        assert reading.power == 330.0
        assert reading.energy == 12345.0
        assert reading.frequency == 50.0
        assert reading.power_factor == 0.95
        assert reading.alarm is False

    def test_alarm_flag(self) -> None:
        assert decode(_make_frame(alarm=True), ts=_TS).alarm is True

    def test_32bit_fields_are_low_word_first(self) -> None:
        """Bytes 5-6 hold the low word and 7-8 the high word of current."""
        body = bytearray(23)
        body[0:3] = bytes([0x01, 0x04, 0x14])
        body[3:5] = (2300).to_bytes(2, "big")
        body[5:9] = bytes([0x00, 0x02, 0x00, 0x01])  # current: low=2, high=1
        body[9:13] = bytes([0x00, 0x0A, 0x00, 0x00])  # power: 10 raw
        body[13:17] = bytes([0x86, 0xA0, 0x00, 0x01])  # energy: 0x000186A0
        body[17:19] = (499).to_bytes(2, "big")
        body[19:21] = (100).to_bytes(2, "big")
        frame = bytes(body) + crc16(bytes(body)).to_bytes(2, "little")

        reading = decode(frame, ts=_TS)

        assert reading.current == 65538 / 1000
        assert reading.power == 1.0
        assert reading.energy == 100000.0
        assert reading.voltage == 230.0
        assert reading.frequency == 49.9
        assert reading.power_factor == 1.0

    def test_short_frame_raises(self) -> None:
        frame = _make_frame()[: RESPONSE_LENGTH - 1]
        with pytest.raises(ProtocolError, match="insufficient"):
            decode(frame)

    def test_bad_crc_raises(self) -> None:
        frame = bytearray(_make_frame())
        frame[-1] ^= 0xFF
        with pytest.raises(ProtocolError, match="CRC"):
            decode(bytes(frame))

    def test_defaults_timestamp_to_now(self) -> None:
        before = datetime.now(tz=UTC)
        reading = decode(_make_frame())
        assert reading.timestamp >= before
        assert reading.timestamp.tzinfo is not None


class TestFieldTable:
    """FIELDS covers every numeric Reading field exactly once."""

    def test_field_names(self) -> None:
        names = [field.name for field in FIELDS]
        assert names == ["voltage", "current", "power", "energy", "frequency", "power_factor"]

    def test_fields_fit_inside_frame(self) -> None:
        for field in FIELDS:
            assert field.offset + 2 * field.word_count <= RESPONSE_LENGTH - 2
