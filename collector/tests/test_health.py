"""
Tests for the shared HealthState and the JSON HealthWriter.

CHANGELOG:
- 2026-10-15: Cover HealthState counters (STORY-108)
- 2026-10-12: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path

from collector.src.health import HealthSnapshot, HealthState, HealthWriter


class TestHealthState:
    def test_initial_snapshot(self) -> None:
        snap = HealthState(is_registered=True).snapshot()
        assert snap == HealthSnapshot(is_registered=True)
        assert snap.last_data_time is None

    def test_flags_and_data_time(self) -> None:
        state = HealthState()
        when = datetime(2026, 10, 12, 8, 0, tzinfo=UTC)

        state.set_running(True)
        state.set_online(True)
        state.record_data(when)

        snap = state.snapshot()
        assert snap.is_running is True
        assert snap.is_online is True
        assert snap.last_data_time == when

    def test_record_data_defaults_to_now(self) -> None:
        state = HealthState()
        before = datetime.now(tz=UTC)
        state.record_data()
        assert state.snapshot().last_data_time >= before

    def test_error_counter(self) -> None:
        state = HealthState()
        assert state.record_error() == 1
        assert state.record_error() == 2
        state.set_error_count(0)
        assert state.snapshot().error_count == 0

    def test_snapshots_are_immutable_copies(self) -> None:
        state = HealthState()
        before = state.snapshot()
        state.record_error()
        assert before.error_count == 0

    def test_concurrent_increments_are_not_lost(self) -> None:
        state = HealthState()

        def bump() -> None:
            for _ in range(1000):
                state.record_error()

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert state.snapshot().error_count == 4000


class TestHealthWriter:
    def test_writes_json(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        snap = HealthSnapshot(
            is_running=True,
            is_registered=True,
            is_online=False,
            last_data_time=datetime(2026, 10, 12, 8, 0, tzinfo=UTC),
            error_count=3,
        )

        HealthWriter(path).write(snap, healthy=False, queue_count=12)

        data = json.loads(path.read_text())
        assert data["is_running"] is True
        assert data["is_online"] is False
        assert data["last_data_time"] == "2026-10-12T08:00:00+00:00"
        assert data["error_count"] == 3
        assert data["healthy"] is False
        assert data["queue_count"] == 12
        assert "written_at" in data

    def test_overwrites_and_leaves_no_temp_file(self, tmp_path: Path) -> None:
        path = tmp_path / "health.json"
        writer = HealthWriter(str(path))

        writer.write(HealthSnapshot(), healthy=False, queue_count=None)
        writer.write(HealthSnapshot(error_count=1), healthy=False, queue_count=None)

        data = json.loads(path.read_text())
        assert data["error_count"] == 1
        assert data["last_data_time"] is None
        assert data["queue_count"] is None
        assert [p.name for p in tmp_path.iterdir()] == ["health.json"]
