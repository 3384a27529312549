"""
Durable store-and-forward queue for readings that could not be uploaded.

Backed by an async SQLite database in WAL mode so queued readings survive
process restarts. Entries are never deleted while ``uploaded`` is false; the
forwarding loop flips them to uploaded after the server accepts a batch, and
the maintenance loop purges uploaded entries once they pass the retention
window. Marking is best-effort, so an entry may be forwarded more than once.

Three loops touch the queue concurrently (sample: store, forward: fetch and
mark, maintenance: purge), so every public operation runs under a single
asyncio.Lock.

Operations:
- store(collector_id, reading): INSERT a new unuploaded entry.
- fetch_unuploaded(limit): SELECT oldest unuploaded entries.
- mark_uploaded(ids): UPDATE uploaded=1 for the given ids.
- purge_older_than(retention): DELETE old uploaded entries.
- stats(): total / uploaded / unuploaded counts.

CHANGELOG:
- 2026-10-19: Warn when unuploaded entries exceed max_size (STORY-114)
- 2026-10-14: Wrap SQLite errors in StorageError (STORY-106)
- 2026-10-13: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite

from collector.src.errors import StorageError
from collector.src.models import QueueEntry, Reading, utcnow

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS power_data_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    collector_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    voltage REAL NOT NULL,
    current REAL NOT NULL,
    power REAL NOT NULL,
    energy REAL NOT NULL,
    frequency REAL NOT NULL,
    power_factor REAL NOT NULL,
    uploaded INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_CREATE_INDEXES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_power_data_cache_collector_id "
    "ON power_data_cache (collector_id);",
    "CREATE INDEX IF NOT EXISTS idx_power_data_cache_uploaded "
    "ON power_data_cache (uploaded);",
)

_INSERT_SQL = """\
INSERT INTO power_data_cache (
    collector_id, timestamp, voltage, current, power, energy,
    frequency, power_factor, uploaded, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?);
"""

_FETCH_UNUPLOADED_SQL = """\
SELECT id, collector_id, timestamp, voltage, current, power, energy,
       frequency, power_factor, uploaded, created_at, updated_at
FROM power_data_cache
WHERE uploaded = 0
ORDER BY timestamp ASC, id ASC
LIMIT ?;
"""

_PURGE_SQL = """\
DELETE FROM power_data_cache
WHERE uploaded = 1 AND updated_at < ?;
"""

_COUNT_UNUPLOADED_SQL = "SELECT COUNT(*) FROM power_data_cache WHERE uploaded = 0;"

_STATS_SQL = """\
SELECT COUNT(*), COALESCE(SUM(uploaded), 0)
FROM power_data_cache;
"""


def _to_db_time(value: datetime) -> str:
    """Fixed-width UTC ISO string so lexical order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class DurableQueue:
    """SQLite-backed queue of readings pending upload.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.
        max_size: Advisory limit on unuploaded entries; 0 disables it.
              Past the limit store() still appends but logs a warning.

    Usage::

        async with DurableQueue("/data/cache.db") as queue:
            await queue.store("collector-1", reading)
            entries = await queue.fetch_unuploaded(100)
            await queue.mark_uploaded([e.id for e in entries])
    """

    def __init__(self, path: str | Path, max_size: int = 0) -> None:
        self._path = Path(path)
        self._max_size = max_size
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        """Open the database, enable WAL mode and create the schema.

        Raises:
            StorageError: If the database cannot be opened or migrated.
        """
        if self._db is not None:
            return
        try:
            self._db = await aiosqlite.connect(str(self._path))
            await self._db.execute("PRAGMA journal_mode=WAL;")
            await self._db.execute(_CREATE_TABLE_SQL)
            for sql in _CREATE_INDEXES_SQL:
                await self._db.execute(sql)
            await self._db.commit()
        except aiosqlite.Error as exc:
            await self.close()
            raise StorageError(f"failed to open cache database {self._path}: {exc}") from exc
        logger.info("Opened cache database %s", self._path)

    async def close(self) -> None:
        """Close the underlying connection. Safe to call more than once."""
        db, self._db = self._db, None
        if db is not None:
            await db.close()

    async def __aenter__(self) -> DurableQueue:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("cache database is not open")
        return self._db

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def store(self, collector_id: str, reading: Reading) -> int:
        """Append *reading* as a new unuploaded entry.

        Returns:
            The id assigned to the new entry.

        Raises:
            StorageError: If the insert fails.
        """
        now = _to_db_time(utcnow())
        params = (
            collector_id,
            _to_db_time(reading.timestamp),
            reading.voltage,
            reading.current,
            reading.power,
            reading.energy,
            reading.frequency,
            reading.power_factor,
            now,
            now,
        )
        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(_INSERT_SQL, params)
                await db.commit()
                if self._max_size > 0:
                    count_cursor = await db.execute(_COUNT_UNUPLOADED_SQL)
                    pending = (await count_cursor.fetchone())[0]
            except aiosqlite.Error as exc:
                raise StorageError(f"failed to store cache data: {exc}") from exc
        if self._max_size > 0 and pending > self._max_size:
            logger.warning(
                "Cache holds %d unuploaded readings, above max_cache_size %d",
                pending,
                self._max_size,
            )
        return cursor.lastrowid

    async def fetch_unuploaded(self, limit: int) -> list[QueueEntry]:
        """Return up to *limit* unuploaded entries, oldest timestamp first.

        Raises:
            StorageError: If the query fails.
        """
        if limit < 1:
            return []
        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(_FETCH_UNUPLOADED_SQL, (limit,))
                rows = await cursor.fetchall()
            except aiosqlite.Error as exc:
                raise StorageError(f"failed to retrieve unuploaded data: {exc}") from exc
        return [
            QueueEntry(
                id=row[0],
                collector_id=row[1],
                timestamp=datetime.fromisoformat(row[2]),
                voltage=row[3],
                current=row[4],
                power=row[5],
                energy=row[6],
                frequency=row[7],
                power_factor=row[8],
                uploaded=bool(row[9]),
                created_at=datetime.fromisoformat(row[10]),
                updated_at=datetime.fromisoformat(row[11]),
            )
            for row in rows
        ]

    async def mark_uploaded(self, ids: list[int]) -> None:
        """Flip the given entries to uploaded.

        Unknown ids are ignored and already-uploaded entries stay uploaded.
        An empty list is a no-op.

        Raises:
            StorageError: If the update fails.
        """
        if not ids:
            return
        placeholders = ",".join("?" for _ in ids)
        sql = (
            f"UPDATE power_data_cache SET uploaded = 1, updated_at = ? "  # noqa: S608
            f"WHERE id IN ({placeholders});"
        )
        async with self._lock:
            db = self._conn()
            try:
                await db.execute(sql, [_to_db_time(utcnow()), *ids])
                await db.commit()
            except aiosqlite.Error as exc:
                raise StorageError(f"failed to mark data as uploaded: {exc}") from exc

    async def purge_older_than(
        self,
        retention: timedelta,
        *,
        now: datetime | None = None,
    ) -> int:
        """Delete uploaded entries last updated before ``now - retention``.

        Unuploaded entries are never purged, whatever their age.

        Args:
            retention: How long uploaded entries are kept.
            now: Reference time; defaults to the current UTC time.

        Returns:
            Number of deleted entries.

        Raises:
            StorageError: If the delete fails.
        """
        cutoff = (now if now is not None else utcnow()) - retention
        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(_PURGE_SQL, (_to_db_time(cutoff),))
                await db.commit()
            except aiosqlite.Error as exc:
                raise StorageError(f"failed to cleanup old data: {exc}") from exc
        return cursor.rowcount

    async def stats(self) -> dict[str, int]:
        """Return ``{"total", "uploaded", "unuploaded"}`` entry counts.

        Raises:
            StorageError: If the query fails.
        """
        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(_STATS_SQL)
                row = await cursor.fetchone()
            except aiosqlite.Error as exc:
                raise StorageError(f"failed to count records: {exc}") from exc
        total, uploaded = int(row[0]), int(row[1])
        return {"total": total, "uploaded": uploaded, "unuploaded": total - uploaded}
