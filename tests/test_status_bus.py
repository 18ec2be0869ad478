import asyncio

import pytest

from texrepair.core.status_bus import NullProgress, ProgressForwarder, StatusBus


@pytest.mark.asyncio
async def test_forwarder_publishes_progress_events():
    bus = StatusBus()
    forwarder = ProgressForwarder(bus, run_id="abc")
    await forwarder.emit(42, "Compilation attempt 1/5", attempt=1)
    event = await asyncio.wait_for(bus.stream().__anext__(), timeout=1)
    assert event == {
        "type": "progress",
        "progress": {"progress": 42.0, "step": "Compilation attempt 1/5", "attempt": 1, "run_id": "abc"},
    }


@pytest.mark.asyncio
async def test_progress_is_clamped():
    bus = StatusBus()
    forwarder = ProgressForwarder(bus)
    await forwarder.emit(140, "over")
    await forwarder.emit(-3, "under")
    assert [event["progress"]["progress"] for event in bus.drain()] == [100.0, 0.0]
    assert bus.drain() == []


@pytest.mark.asyncio
async def test_null_progress_accepts_events():
    assert await NullProgress().emit(10, "Starting LaTeX compilation") is None
