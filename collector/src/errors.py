"""
Error taxonomy for the collector daemon.

Device errors (TransportError, ProtocolError, ValidationError) are raised by
the reader and its protocol decoder. Upload errors split into retryable
(NetworkError, ServerError) and permanent (ClientError) failures so the
retry policy can tell them apart. StorageError wraps local queue failures.

CHANGELOG:
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for every error raised by the collector."""


class TransportError(CollectorError):
    """Serial port could not be opened, written or read."""


class ProtocolError(CollectorError):
    """Response frame is too short or fails CRC verification."""


class ValidationError(CollectorError):
    """A decoded reading falls outside the meter's physical range.

    Args:
        field: Name of the offending Reading field.
        value: The rejected value.
        valid_range: The ``(min, max)`` bounds the value violated.
    """

    def __init__(self, field: str, value: float, valid_range: tuple[float, float]) -> None:
        lo, hi = valid_range
        super().__init__(f"{field}={value} outside valid range [{lo}, {hi}]")
        self.field = field
        self.value = value
        self.valid_range = valid_range


class StorageError(CollectorError):
    """The local durable queue failed to read or write."""


class UploadError(CollectorError):
    """Base class for ingestion API failures."""


class NetworkError(UploadError):
    """The ingestion API could not be reached (connect error, timeout)."""


class ServerError(UploadError):
    """The ingestion API answered with a 5xx status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


class ClientError(UploadError):
    """The ingestion API rejected the request permanently.

    Raised for 4xx responses and for 2xx responses whose envelope reports
    ``success: false``. Never retried.
    """

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


class ServiceError(CollectorError):
    """Collector service lifecycle misuse or fatal startup failure."""
