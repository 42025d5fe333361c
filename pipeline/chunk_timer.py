import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

TickHandler = Callable[[str, int], Awaitable[object]]


class TimerAlreadyRunning(Exception):
    pass


@dataclass
class TimerHandle:
    session_id: str
    interval_ms: int
    anchor: float = 0.0
    task: asyncio.Task | None = None
    ticks: int = 0
    in_flight: set[asyncio.Task] = field(default_factory=set)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class ChunkTimer:
    """
    Fires a tick per session every interval_ms.

    Deadlines are computed from the start time (start + n * interval), so a
    slow tick never pushes later boundaries back. Each tick runs as its own
    task; the timer never awaits it.
    """

    def __init__(self, on_tick: TickHandler):
        self.on_tick = on_tick
        self._handles: dict[str, TimerHandle] = {}

    def start(self, session_id: str, interval_ms: int) -> TimerHandle:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")

        existing = self._handles.get(session_id)
        if existing is not None and existing.running:
            raise TimerAlreadyRunning(f"Timer already running for session {session_id}")

        # Boundaries are counted from the moment start() is called, not from
        # when the task first gets scheduled.
        handle = TimerHandle(
            session_id=session_id,
            interval_ms=int(interval_ms),
            anchor=asyncio.get_running_loop().time(),
        )
        handle.task = asyncio.create_task(
            self._run(handle),
            name=f"chunk-timer:{session_id}",
        )
        self._handles[session_id] = handle
        logger.info("Chunk timer started for %s every %dms", session_id, interval_ms)
        return handle

    def stop(self, session_id: str) -> bool:
        handle = self._handles.pop(session_id, None)
        if handle is None or handle.task is None:
            return False

        handle.task.cancel()
        logger.info("Chunk timer stopped for %s after %d ticks", session_id, handle.ticks)
        return True

    def stop_all(self) -> None:
        for session_id in list(self._handles):
            self.stop(session_id)

    def is_running(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        return handle is not None and handle.running

    def get(self, session_id: str) -> TimerHandle | None:
        return self._handles.get(session_id)

    async def _run(self, handle: TimerHandle) -> None:
        loop = asyncio.get_running_loop()
        interval = handle.interval_ms / 1000.0

        while True:
            next_fire = handle.anchor + (handle.ticks + 1) * interval
            await asyncio.sleep(max(0.0, next_fire - loop.time()))
            handle.ticks += 1
            self._fire(handle, handle.ticks)

    def _fire(self, handle: TimerHandle, tick: int) -> None:
        task = asyncio.create_task(
            self.on_tick(handle.session_id, tick),
            name=f"chunk-tick:{handle.session_id}:{tick}",
        )
        handle.in_flight.add(task)
        task.add_done_callback(lambda t: self._tick_done(handle, tick, t))

    def _tick_done(self, handle: TimerHandle, tick: int, task: asyncio.Task) -> None:
        handle.in_flight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Tick %d for session %s failed",
                tick,
                handle.session_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
