"""
Serial reader for the PZEM-004T power meter.

Owns the pyserial handle and wraps the pure protocol functions in
protocol.py with an open/close lifecycle, a retrying read and a physical
range check. Blocking serial calls run in a worker thread so the event loop
stays responsive; an asyncio.Lock keeps one request/response exchange on the
wire at a time.

Operations:
- open() / close(): acquire and release the port (8-N-1 framing).
- read(): one request/response exchange, decoded into a Reading.
- read_with_retry(n): up to n sequential attempts, 100 ms apart.
- validate(reading): reject readings outside the meter's physical range.

CHANGELOG:
- 2026-10-14: Route retries through RetryPolicy (STORY-104)
- 2026-10-13: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

import serial

from collector.src.errors import ProtocolError, TransportError, ValidationError
from collector.src.models import Reading
from collector.src.protocol import DEFAULT_ADDRESS, FIELDS, RESPONSE_LENGTH, build_command, decode
from collector.src.retry import RetryPolicy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

READ_RETRY_DELAY_S: float = 0.1
"""Fixed pause between two read attempts."""

DEFAULT_READ_ATTEMPTS: int = 3
"""Attempts per sample used by the collector service."""

_READ_POLICY = RetryPolicy(
    max_attempts=DEFAULT_READ_ATTEMPTS,
    delay_s=READ_RETRY_DELAY_S,
    retry_on=lambda exc: isinstance(exc, (TransportError, ProtocolError)),
    name="Meter read",
)


def validate(reading: Reading) -> None:
    """Check every numeric field of *reading* against its valid range.

    Raises:
        ValidationError: For the first field found out of range.
    """
    for field in FIELDS:
        value = getattr(reading, field.name)
        lo, hi = field.valid_range
        if not (lo <= value <= hi):
            raise ValidationError(field.name, value, field.valid_range)


class DeviceReader:
    """Serial transport for a single meter.

    Args:
        port: Serial device path, e.g. ``/dev/ttyUSB0``.
        baud_rate: Line speed (the meter uses 9600).
        timeout_s: Read timeout for a full response frame.
        address: Meter slave address.

    Usage::

        async with DeviceReader("/dev/ttyUSB0", 9600, 1.0) as reader:
            reading = await reader.read_with_retry(3)
            reader.validate(reading)
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = 9600,
        timeout_s: float = 1.0,
        address: int = DEFAULT_ADDRESS,
    ) -> None:
        self._port = port
        self._baud_rate = baud_rate
        self._timeout_s = timeout_s
        self._address = address
        self._command = build_command(address)
        self._serial: serial.Serial | None = None
        self._lock = asyncio.Lock()

    @property
    def address(self) -> int:
        return self._address

    @property
    def is_open(self) -> bool:
        return self._serial is not None

    async def open(self) -> None:
        """Open the serial port with 8 data bits, no parity, 1 stop bit.

        Raises:
            TransportError: If the port cannot be opened.
        """
        if self._serial is not None:
            return
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                port=self._port,
                baudrate=self._baud_rate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self._timeout_s,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportError(f"failed to open serial port {self._port}: {exc}") from exc
        logger.info("Opened serial port %s @ %d baud", self._port, self._baud_rate)

    async def close(self) -> None:
        """Release the serial port. Safe to call more than once."""
        handle, self._serial = self._serial, None
        if handle is None:
            return
        try:
            await asyncio.to_thread(handle.close)
        except (serial.SerialException, OSError):
            logger.warning("Error closing serial port %s", self._port, exc_info=True)
        else:
            logger.info("Closed serial port %s", self._port)

    async def __aenter__(self) -> DeviceReader:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read(self) -> Reading:
        """Perform one request/response exchange and decode the answer.

        Raises:
            TransportError: Port not open, write/read failure or short read.
            ProtocolError: Response frame fails CRC verification.
        """
        async with self._lock:
            handle = self._serial
            if handle is None:
                raise TransportError("serial port is not open")
            frame = await asyncio.to_thread(self._exchange, handle)
        return decode(frame)

    def _exchange(self, handle: serial.Serial) -> bytes:
        """Blocking write-then-read, run in a worker thread."""
        try:
            handle.reset_input_buffer()
            handle.write(self._command)
            frame = handle.read(RESPONSE_LENGTH)
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"serial I/O failed: {exc}") from exc
        if len(frame) < RESPONSE_LENGTH:
            raise TransportError(
                f"insufficient data received: got {len(frame)} bytes, expected {RESPONSE_LENGTH}"
            )
        return bytes(frame)

    async def read_with_retry(self, max_attempts: int = DEFAULT_READ_ATTEMPTS) -> Reading:
        """Read with up to *max_attempts* sequential attempts.

        Raises:
            TransportError | ProtocolError: The error of the last attempt.
        """
        policy = _READ_POLICY
        if max_attempts != policy.max_attempts:
            policy = replace(policy, max_attempts=max_attempts)
        return await policy.run(self.read)

    @staticmethod
    def validate(reading: Reading) -> None:
        """Range gate; see :func:`validate`."""
        validate(reading)
