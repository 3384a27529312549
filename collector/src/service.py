"""
Collector service: samples the meter and forwards readings to the server.

Runs four concurrent asyncio loops sharing one HealthState:

1. **Sample loop** (every ``sample_interval_s``): read the meter with
   retries, validate, upload in real time; on upload failure store the
   reading in the durable queue instead.
2. **Forward loop** (every ``upload_interval_s`` when ``auto_upload``):
   drain the durable queue in batches and mark forwarded entries.
3. **Heartbeat loop** (every 5 minutes): report "ok" / "error" liveness.
4. **Maintenance loop** (hourly): reset the error counter when things look
   healthy and purge forwarded entries older than 7 days.

Every loop waits on "interval elapsed OR shutdown event set", so stop()
takes effect at the next wait point. An in-flight serial read or HTTP call
always completes (bounded by its own timeout) before the loop notices.

Operational failures bump a shared error counter. Past 10 errors the loop
that hit the threshold pauses for 60 s and then clamps the counter to 5;
the other loops keep running.

CHANGELOG:
- 2026-10-19: Upload retries stop on shutdown; queue warns past max_cache_size (STORY-114)
- 2026-10-17: Write JSON health file after each loop iteration (STORY-108)
- 2026-10-16: Add get_status and self_test (STORY-109)
- 2026-10-15: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING

from collector.src.device import DEFAULT_READ_ATTEMPTS, DeviceReader, validate
from collector.src.errors import ClientError, CollectorError, ServiceError, StorageError, UploadError
from collector.src.health import HealthSnapshot, HealthState, HealthWriter
from collector.src.models import Credentials, Reading, ServiceStatus, utcnow
from collector.src.spool import DurableQueue
from collector.src.uploader import UploadClient

if TYPE_CHECKING:
    from collector.src.config import CollectorSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HEARTBEAT_INTERVAL_S: float = 300.0
MAINTENANCE_INTERVAL_S: float = 3600.0
RETENTION: timedelta = timedelta(days=7)

ERROR_THRESHOLD: int = 10
"""Error count above which the failing loop pauses."""

ERROR_PAUSE_S: float = 60.0
"""Length of the pause once the threshold is crossed."""

ERROR_RESET_COUNT: int = 5
"""Error count after a pause."""

UNHEALTHY_ERROR_COUNT: int = 20
"""Error count above which the service reports itself unhealthy."""


class ServiceState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class CollectorService:
    """Orchestrates the meter reader, durable queue and upload client.

    The service exclusively owns its reader, queue and client. They are built
    from *settings* unless injected (tests inject mocks).

    Args:
        settings: Validated collector configuration.
        version: Collector version reported in heartbeats.
        credentials: Registration credentials; defaults to the ones in
            *settings*. Without credentials :meth:`start` fails.
        device: Optional pre-built DeviceReader.
        queue: Optional pre-built DurableQueue.
        client: Optional pre-built UploadClient.
        health_writer: Optional health file writer; built from
            ``settings.health_path`` when that is non-empty.
    """

    def __init__(
        self,
        settings: CollectorSettings,
        version: str,
        credentials: Credentials | None = None,
        *,
        device: DeviceReader | None = None,
        queue: DurableQueue | None = None,
        client: UploadClient | None = None,
        health_writer: HealthWriter | None = None,
    ) -> None:
        self._settings = settings
        self._version = version
        self._credentials = credentials if credentials is not None else settings.credentials()

        self._device = device or DeviceReader(
            settings.serial_port,
            baud_rate=settings.baud_rate,
            timeout_s=settings.serial_timeout_s,
            address=settings.device_address,
        )
        self._shutdown = asyncio.Event()
        self._queue = queue or DurableQueue(settings.cache_db_path, max_size=settings.max_cache_size)
        self._client = client or UploadClient(
            settings.server_base_url,
            api_prefix=settings.api_prefix,
            timeout_s=settings.server_timeout_s,
            version=version,
            stop_event=self._shutdown,
        )
        if health_writer is None and settings.health_path:
            health_writer = HealthWriter(settings.health_path)
        self._health_writer = health_writer

        self._health = HealthState(is_registered=self._credentials is not None)
        if self._credentials is not None:
            self._client.set_credentials(self._credentials)

        self._state = ServiceState.STOPPED
        self._tasks: list[asyncio.Task[None]] = []

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def health(self) -> HealthState:
        return self._health

    @property
    def tasks(self) -> list[asyncio.Task[None]]:
        return list(self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open resources, check the server connection and spawn the four loops.

        Raises:
            ServiceError: If already running, if credentials are missing, or
                if the device, the queue or the server is unavailable.
        """
        if self._state is not ServiceState.STOPPED:
            raise ServiceError("collector service is already running")
        if self._credentials is None:
            raise ServiceError("auth token or collector ID is missing, please register first")

        self._state = ServiceState.STARTING
        try:
            await self._device.open()
            await self._queue.open()
            logger.info("Testing connection to the server...")
            await self._client.check_connection()
        except CollectorError as exc:
            await self._release()
            self._state = ServiceState.STOPPED
            raise ServiceError(f"failed to start collector service: {exc}") from exc
        logger.info("Server connection successful")

        self._shutdown.clear()
        self._health.set_running(True)
        self._health.set_online(True)
        self._tasks = [
            asyncio.create_task(
                self._run_loop("data collection", self._settings.sample_interval_s, self._collect_once),
                name="collector-sample",
            ),
            asyncio.create_task(
                self._run_loop("data upload", self._settings.upload_interval_s, self._forward_once),
                name="collector-forward",
            ),
            asyncio.create_task(
                self._run_loop("heartbeat", HEARTBEAT_INTERVAL_S, self._heartbeat_once),
                name="collector-heartbeat",
            ),
            asyncio.create_task(
                self._run_loop("maintenance", MAINTENANCE_INTERVAL_S, self._maintenance_once),
                name="collector-maintenance",
            ),
        ]
        self._state = ServiceState.RUNNING
        logger.info("Collector service started (collector_id=%s)", self._credentials.collector_id)

    async def stop(self) -> None:
        """Signal all loops, wait for them to exit and release resources.

        A no-op unless the service is running. Callers wanting a shutdown
        deadline wrap this in ``asyncio.wait_for``; on cancellation the loop
        tasks are cancelled and resources are still released.
        """
        if self._state is not ServiceState.RUNNING:
            return

        logger.info("Stopping collector service...")
        self._state = ServiceState.STOPPING
        self._health.set_running(False)
        self._shutdown.set()
        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for task, result in zip(self._tasks, results):
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    logger.error("Loop %s exited with error: %r", task.get_name(), result)
        finally:
            self._tasks = []
            await self._release()
            self._state = ServiceState.STOPPED
            logger.info("Collector service stopped")

    async def _release(self) -> None:
        try:
            await self._device.close()
        except Exception:
            logger.warning("Error closing meter device", exc_info=True)
        try:
            await self._queue.close()
        except Exception:
            logger.warning("Error closing cache database", exc_info=True)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_healthy(self) -> bool:
        """Report whether the collector is running well.

        Used only for heartbeat and status reporting, never to stop loops.
        """
        snap = self._health.snapshot()
        if not snap.is_running or not snap.is_registered:
            return False
        if snap.last_data_time is None:
            return False
        stale_after = timedelta(seconds=3 * self._settings.sample_interval_s)
        if utcnow() - snap.last_data_time > stale_after:
            return False
        return snap.error_count <= UNHEALTHY_ERROR_COUNT

    async def get_status(self) -> ServiceStatus:
        """Snapshot of the health state plus queue statistics."""
        snap = self._health.snapshot()
        cache_stats: dict[str, int] | None = None
        try:
            cache_stats = await self._queue.stats()
        except StorageError as exc:
            logger.warning("Could not get cache stats: %s", exc)
        return ServiceStatus(
            is_running=snap.is_running,
            is_registered=snap.is_registered,
            is_online=snap.is_online,
            last_data_time=snap.last_data_time,
            error_count=snap.error_count,
            cache_stats=cache_stats,
        )

    async def self_test(self) -> Reading:
        """Take one validated reading from the meter and return it.

        Opens and closes the device around the read when the service is not
        running.

        Raises:
            TransportError | ProtocolError | ValidationError: On failure.
        """
        owns_device = self._state is ServiceState.STOPPED
        if owns_device:
            await self._device.open()
        try:
            reading = await self._device.read_with_retry(DEFAULT_READ_ATTEMPTS)
            validate(reading)
        finally:
            if owns_device:
                await self._device.close()
        logger.info("Self test reading: %s", reading)
        return reading

    # ------------------------------------------------------------------
    # Loop machinery
    # ------------------------------------------------------------------

    async def _run_loop(
        self,
        name: str,
        interval_s: float,
        tick: Callable[[], Awaitable[None]],
    ) -> None:
        """Run *tick* every *interval_s* seconds until shutdown."""
        logger.info("Starting %s loop (interval: %ss)", name, interval_s)
        while not self._shutdown.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval_s)
            if self._shutdown.is_set():
                break
            try:
                await tick()
            except Exception as exc:
                await self._handle_error(name, exc)
            await self._write_health()
        logger.info("%s loop stopped", name.capitalize())

    async def _handle_error(self, operation: str, exc: BaseException) -> None:
        """Count and log an operational failure; pause past the threshold."""
        count = self._health.record_error()
        logger.error("Error in %s: %s (error count: %d)", operation, exc, count)
        if count > ERROR_THRESHOLD:
            logger.warning("Too many errors, pausing %s loop for %.0fs", operation, ERROR_PAUSE_S)
            await self._pause(ERROR_PAUSE_S)
            self._health.set_error_count(ERROR_RESET_COUNT)

    async def _pause(self, seconds: float) -> None:
        """Sleep in place, waking early if shutdown is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)

    async def _write_health(self) -> None:
        if self._health_writer is None:
            return
        queue_count: int | None = None
        try:
            queue_count = (await self._queue.stats())["unuploaded"]
        except StorageError:
            logger.debug("Queue stats unavailable for health file", exc_info=True)
        try:
            self._health_writer.write(
                self._health.snapshot(),
                healthy=self.is_healthy(),
                queue_count=queue_count,
            )
        except OSError:
            logger.warning("Failed to write health file", exc_info=True)

    # ------------------------------------------------------------------
    # Single iterations
    # ------------------------------------------------------------------

    async def _collect_once(self) -> None:
        """Read, validate, upload in real time, or cache on upload failure.

        Raises:
            TransportError | ProtocolError | ValidationError: Unusable sample.
            StorageError: Upload and caching both failed; the reading is lost.
        """
        reading = await self._device.read_with_retry(DEFAULT_READ_ATTEMPTS)
        validate(reading)
        self._health.record_data()

        try:
            await self._client.upload_one(reading)
        except UploadError as exc:
            if isinstance(exc, ClientError):
                logger.error("Real-time upload rejected by server: %s. Caching data instead.", exc)
            else:
                logger.warning("Real-time upload failed: %s. Caching data instead.", exc)
            self._health.set_online(False)
            try:
                await self._queue.store(self._credentials.collector_id, reading)
            except StorageError:
                logger.error("Reading lost, upload and caching both failed: %s", reading)
                raise
            logger.info("Data collected and cached: %s", reading)
            return

        self._health.set_online(True)
        logger.info("Data collected and uploaded in real time: %s", reading)

    async def _forward_once(self) -> None:
        """Upload one batch of cached readings.

        Raises:
            StorageError: The queue could not be read.
            UploadError: The batch upload failed; entries stay queued.
        """
        if not self._settings.auto_upload:
            return
        entries = await self._queue.fetch_unuploaded(self._settings.batch_size)
        if not entries:
            logger.debug("No cached data to upload")
            return

        logger.info("Found %d cached records to upload", len(entries))
        try:
            await self._client.upload_batch([entry.to_reading() for entry in entries])
        except UploadError:
            self._health.set_online(False)
            raise

        try:
            await self._queue.mark_uploaded([entry.id for entry in entries])
        except StorageError as exc:
            logger.warning("Failed to mark data as uploaded, it will be re-sent: %s", exc)
        self._health.set_online(True)
        logger.info("Successfully uploaded %d cached records", len(entries))

    async def _heartbeat_once(self) -> None:
        if not self._health.snapshot().is_registered:
            return
        status = "ok" if self.is_healthy() else "error"
        try:
            await self._client.heartbeat(status, self._version)
        except UploadError:
            self._health.set_online(False)
            raise
        self._health.set_online(True)
        logger.info("Heartbeat sent (status=%s)", status)

    async def _maintenance_once(self) -> None:
        snap: HealthSnapshot = self._health.snapshot()
        fresh_within = timedelta(seconds=2 * self._settings.sample_interval_s)
        if (
            snap.is_online
            and snap.last_data_time is not None
            and utcnow() - snap.last_data_time < fresh_within
        ):
            self._health.set_error_count(0)

        deleted = await self._queue.purge_older_than(RETENTION)
        logger.info("Maintenance completed (purged %d uploaded records)", deleted)
