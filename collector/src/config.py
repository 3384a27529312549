"""
Collector daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration comes from environment variables or a .env file; the
service receives a CollectorSettings instance explicitly and never reads
configuration from a global.

CHANGELOG:
- 2026-10-19: Keep local auto_upload unless the server sends it (STORY-114)
- 2026-10-16: Apply server-pushed overrides after registration (STORY-111)
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from collector.src.models import Credentials, RegistrationResult


class CollectorSettings(BaseSettings):
    """Collector configuration.

    Attributes:
        collector_id: Identity assigned by the server (empty until registered).
        collector_name: Human-readable collector name sent at registration.
        collector_description: Free-text description sent at registration.
        collector_location: Installation location sent at registration.
        serial_port: Serial device path of the meter.
        baud_rate: Serial line speed.
        device_address: Meter slave address (1-247).
        serial_timeout_s: Read timeout for a full response frame.
        sample_interval_s: Seconds between two meter samples.
        server_base_url: Ingestion server root URL (http or https).
        api_prefix: Path prefix of the ingestion API.
        server_timeout_s: Per-request HTTP timeout.
        auth_token: Bearer token issued at registration.
        registration_code: One-time code used when no token is set.
        cache_db_path: SQLite file of the store-and-forward queue.
        batch_size: Maximum queued readings forwarded per upload cycle.
        upload_interval_s: Seconds between two forwarding cycles.
        auto_upload: Whether the forwarding loop drains the queue.
        max_cache_size: Unuploaded queue size above which each store logs a
            warning; 0 disables the check.
        health_path: JSON health file path; empty disables it.
        log_level: Root log level.
    """

    collector_id: str = ""
    collector_name: str = "Power Collector"
    collector_description: str = ""
    collector_location: str = ""
    serial_port: str = "/dev/ttyUSB0"
    baud_rate: int = 9600
    device_address: int = 1
    serial_timeout_s: float = 1.0
    sample_interval_s: int = 10
    server_base_url: str
    api_prefix: str = "/api"
    server_timeout_s: float = 30.0
    auth_token: str = ""
    registration_code: str = ""
    cache_db_path: str = "/data/cache.db"
    batch_size: int = 100
    upload_interval_s: int = 60
    auto_upload: bool = True
    max_cache_size: int = 10000
    health_path: str = "/data/health.json"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _token_or_registration_code(self) -> "CollectorSettings":
        """Require either a token or a registration code."""
        if not self.auth_token and not self.registration_code:
            raise ValueError("either AUTH_TOKEN or REGISTRATION_CODE is required")
        return self

    @field_validator("server_base_url")
    @classmethod
    def server_base_url_must_be_http(cls, v: str) -> str:
        """Validate the server URL scheme and strip a trailing slash."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(f"SERVER_BASE_URL must start with http:// or https:// (got: '{v}')")
        return v.rstrip("/")

    @field_validator("baud_rate")
    @classmethod
    def baud_rate_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"invalid baud rate: {v}")
        return v

    @field_validator("device_address")
    @classmethod
    def device_address_must_be_valid(cls, v: int) -> int:
        """Validate Modbus slave address is in valid range (1-247)."""
        if v < 1 or v > 247:
            raise ValueError("DEVICE_ADDRESS must be between 1 and 247")
        return v

    @field_validator("sample_interval_s", "upload_interval_s")
    @classmethod
    def interval_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("intervals must be >= 1 second")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_must_be_valid(cls, v: int) -> int:
        """Validate batch size is between 1 and 1000."""
        if v < 1 or v > 1000:
            raise ValueError("BATCH_SIZE must be >= 1 and <= 1000")
        return v

    def credentials(self) -> Credentials | None:
        """Return the configured credentials, or None if not registered."""
        if not self.auth_token or not self.collector_id:
            return None
        return Credentials(collector_id=self.collector_id, token=self.auth_token)

    def apply_registration(self, result: RegistrationResult) -> None:
        """Adopt the token and the overrides the server actually sent.

        Zero values keep the local setting, and ``auto_upload`` only changes
        when the server included it.
        """
        self.auth_token = result.token
        overrides = result.config
        if overrides.collector_id:
            self.collector_id = overrides.collector_id
        if overrides.sample_interval > 0:
            self.sample_interval_s = overrides.sample_interval
        if overrides.upload_interval > 0:
            self.upload_interval_s = overrides.upload_interval
        if overrides.max_cache_size > 0:
            self.max_cache_size = overrides.max_cache_size
        if "auto_upload" in overrides.model_fields_set:
            self.auto_upload = overrides.auto_upload

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
