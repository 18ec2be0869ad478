import asyncio
from typing import Any, AsyncIterator, Dict, Optional, Protocol


class ProgressSink(Protocol):
    async def emit(self, progress: float, step: str, **metadata: Any) -> None:
        ...


class StatusBus:
    """Lightweight pub/sub bus for streaming compilation progress events."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()

    async def publish(self, event: Dict[str, Any]) -> None:
        await self._queue.put(event)

    async def stream(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self._queue.get()
            yield event

    def drain(self) -> list[Dict[str, Any]]:
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events


class ProgressForwarder:
    """Bridges orchestrator progress updates into a status bus."""

    def __init__(self, bus: StatusBus, run_id: Optional[str] = None) -> None:
        self._bus = bus
        self._run_id = run_id

    async def emit(self, progress: float, step: str, **metadata: Any) -> None:
        payload = {"progress": max(0.0, min(100.0, float(progress))), "step": step, **metadata}
        if self._run_id:
            payload["run_id"] = self._run_id
        await self._bus.publish({"type": "progress", "progress": payload})


class NullProgress:
    async def emit(self, progress: float, step: str, **metadata: Any) -> None:
        return None


__all__ = ["StatusBus", "ProgressForwarder", "ProgressSink", "NullProgress"]
