"""
Entrypoint for the power collector daemon.

Loads CollectorSettings from the environment, installs structured JSON
logging, registers with the server when only a registration code is
configured, then runs the CollectorService until SIGTERM/SIGINT. Shutdown
is bounded: if the loops do not exit within SHUTDOWN_TIMEOUT_S the process
exits anyway.

With ``--test`` it instead takes one validated reading from the meter,
prints it and exits. Configuration, registration, startup and self-test
failures are logged as fatal and exit with status 1.

CHANGELOG:
- 2026-10-19: --test self-test mode and fatal exit on startup errors (STORY-114)
- 2026-10-17: Bound shutdown with a timeout (STORY-113)
- 2026-10-16: Registration bootstrap when no token is configured (STORY-111)
- 2026-10-15: Initial creation (STORY-113)

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
import signal
import sys
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from collector.src.errors import CollectorError
from collector.src.models import RegistrationMetadata
from collector.src.uploader import UploadClient

if TYPE_CHECKING:
    from collector.src.config import CollectorSettings

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
SHUTDOWN_TIMEOUT_S: float = 10.0


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Send JSON log lines to stderr at *level*."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: CollectorSettings) -> None:
    """Log the effective configuration without secrets."""
    logger.info(
        "Collector starting with config: "
        "collector_id=%s, collector_name=%s, serial_port=%s, baud_rate=%s, "
        "device_address=%s, sample_interval_s=%s, upload_interval_s=%s, "
        "batch_size=%s, auto_upload=%s, cache_db_path=%s, server_base_url=%s, "
        "api_prefix=%s, token_masked=%s, registration_code_set=%s",
        settings.collector_id,
        settings.collector_name,
        settings.serial_port,
        settings.baud_rate,
        settings.device_address,
        settings.sample_interval_s,
        settings.upload_interval_s,
        settings.batch_size,
        settings.auto_upload,
        settings.cache_db_path,
        settings.server_base_url,
        settings.api_prefix,
        _masked_token(settings.auth_token),
        bool(settings.registration_code),
    )


# ---------------------------------------------------------------------------
# Registration bootstrap
# ---------------------------------------------------------------------------


async def bootstrap_credentials(
    settings: CollectorSettings,
    client: UploadClient,
    version: str = VERSION,
) -> None:
    """Register with the server if only a registration code is configured.

    Generates a collector id when none is set, exchanges the code for a
    token, and applies the server-pushed overrides to *settings* in place.
    Persisting the new token is left to the deployment.

    Raises:
        UploadError: If registration fails; the daemon must not start.
    """
    if settings.auth_token or not settings.registration_code:
        return

    logger.info("No token found, registering with server using registration code")
    if not settings.collector_id:
        settings.collector_id = str(uuid.uuid4())
        logger.info("Generated new collector ID: %s", settings.collector_id)

    metadata = RegistrationMetadata(
        collector_id=settings.collector_id,
        name=settings.collector_name,
        description=settings.collector_description,
        location=settings.collector_location,
        version=version,
    )
    result = await client.register(settings.registration_code, metadata)
    settings.apply_registration(result)
    logger.info(
        "Collector registered (collector_id=%s, token=%s)",
        settings.collector_id,
        _masked_token(settings.auth_token),
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, register if needed, run the service."""
    from collector.src.config import CollectorSettings
    from collector.src.service import CollectorService

    settings = CollectorSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    bootstrap_client = UploadClient(
        settings.server_base_url,
        api_prefix=settings.api_prefix,
        timeout_s=settings.server_timeout_s,
        version=VERSION,
    )
    await bootstrap_credentials(settings, bootstrap_client, VERSION)

    service = CollectorService(settings, VERSION)
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    await service.start()
    logger.info("Collector is running")
    await shutdown_event.wait()

    try:
        await asyncio.wait_for(service.stop(), timeout=SHUTDOWN_TIMEOUT_S)
    except TimeoutError:
        logger.warning(
            "Graceful shutdown timed out after %.0f seconds, forcing exit",
            SHUTDOWN_TIMEOUT_S,
        )
    else:
        logger.info("Collector stopped gracefully")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, stopping collector")
    shutdown_event.set()


async def run_self_test() -> None:
    """Take one validated reading from the meter, print it and return.

    Raises:
        TransportError | ProtocolError | ValidationError: On failure.
    """
    from collector.src.config import CollectorSettings
    from collector.src.service import CollectorService

    settings = CollectorSettings()
    configure_logging(settings.log_level)
    logger.info("Running meter self test on %s", settings.serial_port)

    service = CollectorService(settings, VERSION)
    reading = await service.self_test()
    print(f"Test reading: {reading}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(
        description="Sample a PZEM-004T power meter and forward readings to the ingestion API.",
    )
    p.add_argument(
        "--test",
        action="store_true",
        help="take one reading from the meter, print it and exit",
    )
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Synchronous entrypoint for the collector daemon.

    Exits with status 1 when configuration, registration, startup or the
    self test fails.
    """
    args = parse_args(argv)
    try:
        asyncio.run(run_self_test() if args.test else async_main())
    except ValidationError as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)
    except CollectorError as exc:
        logger.critical("Collector failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
