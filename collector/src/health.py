"""
Shared health state for the collector loops, plus its JSON health file.

HealthState is the single record all four service loops mutate: running /
registered / online flags, the time of the last good sample and the
operational error counter. Every access goes through one lock and no
caller may hold it across an await or blocking I/O.

HealthWriter dumps a snapshot to a JSON file so Docker HEALTHCHECK or an
external monitor can inspect liveness without talking to the process.

CHANGELOG:
- 2026-10-15: Replace poll/upload timestamps with the shared HealthState (STORY-108)
- 2026-10-12: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path

from collector.src.models import utcnow


@dataclass(frozen=True)
class HealthSnapshot:
    """Immutable copy of the health state at one instant."""

    is_running: bool = False
    is_registered: bool = False
    is_online: bool = False
    last_data_time: datetime | None = None
    error_count: int = 0


class HealthState:
    """Lock-guarded health record shared by the service loops.

    Args:
        is_registered: Whether credentials were supplied at construction.
    """

    def __init__(self, *, is_registered: bool = False) -> None:
        self._lock = threading.Lock()
        self._state = HealthSnapshot(is_registered=is_registered)

    def snapshot(self) -> HealthSnapshot:
        with self._lock:
            return self._state

    def set_running(self, running: bool) -> None:
        with self._lock:
            self._state = replace(self._state, is_running=running)

    def set_online(self, online: bool) -> None:
        with self._lock:
            self._state = replace(self._state, is_online=online)

    def record_data(self, when: datetime | None = None) -> None:
        """Stamp the time of the last successfully read sample."""
        with self._lock:
            self._state = replace(self._state, last_data_time=when or utcnow())

    def record_error(self) -> int:
        """Increment the error counter and return the new value."""
        with self._lock:
            count = self._state.error_count + 1
            self._state = replace(self._state, error_count=count)
            return count

    def set_error_count(self, count: int) -> None:
        with self._lock:
            self._state = replace(self._state, error_count=count)


class HealthWriter:
    """Writes collector health to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def write(self, snapshot: HealthSnapshot, *, healthy: bool, queue_count: int | None) -> None:
        """Overwrite the health file with *snapshot*.

        Args:
            snapshot: Current health state.
            healthy: Result of the service health check.
            queue_count: Unuploaded entries in the local queue, if known.
        """
        data = asdict(snapshot)
        last = snapshot.last_data_time
        data["last_data_time"] = last.isoformat() if last is not None else None
        data["healthy"] = healthy
        data["queue_count"] = queue_count
        data["written_at"] = utcnow().isoformat()
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data))
        tmp.replace(self.path)
