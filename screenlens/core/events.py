"""Typed host events and the pump that feeds them into the orchestrator."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

logger = logging.getLogger("screenlens.events")


@dataclass(frozen=True)
class PermissionGranted:
    grant: Any


@dataclass(frozen=True)
class PermissionDenied:
    reason: str = ""


@dataclass(frozen=True)
class StopRequested:
    source: str = "user"


@dataclass(frozen=True)
class CaptureRevoked:
    pass


@dataclass(frozen=True)
class RecordingStopped:
    session_id: int
    path: str


HostEvent = Union[PermissionGranted, PermissionDenied, StopRequested, CaptureRevoked, RecordingStopped]


class EventQueue:
    """asyncio queue that host threads can post into."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    def post(self, event: HostEvent):
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and running is not self._loop:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        else:
            self._queue.put_nowait(event)
        logger.debug(f"Posted {type(event).__name__}")

    async def get(self) -> HostEvent:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return await self._queue.get()

    def get_nowait(self) -> HostEvent:
        return self._queue.get_nowait()

    def task_done(self):
        self._queue.task_done()

    def empty(self) -> bool:
        return self._queue.empty()

    async def join(self):
        await self._queue.join()


class HostEventPump:
    """Delivers queued host events to one orchestrator, in order."""

    def __init__(self, queue: EventQueue, orchestrator):
        self.queue = queue
        self.orchestrator = orchestrator
        self._task: Optional[asyncio.Task] = None

    async def dispatch(self, event: HostEvent):
        orch = self.orchestrator
        if isinstance(event, PermissionGranted):
            await orch.on_permission_granted(event.grant)
        elif isinstance(event, PermissionDenied):
            await orch.on_permission_denied(event.reason)
        elif isinstance(event, (StopRequested, CaptureRevoked)):
            logger.info(f"Stopping capture ({type(event).__name__})")
            await orch.stop_capture()
        elif isinstance(event, RecordingStopped):
            await orch.on_capture_stopped(event.session_id, event.path)
        else:
            logger.warning(f"Ignoring unknown host event: {event!r}")

    async def _dispatch_safely(self, event: HostEvent):
        try:
            await self.dispatch(event)
        except Exception as e:
            logger.exception(f"Host event {type(event).__name__} failed: {e}")
        finally:
            self.queue.task_done()

    async def process_pending(self) -> int:
        """Dispatch everything already queued, including events queued while dispatching."""
        handled = 0
        while not self.queue.empty():
            await self._dispatch_safely(self.queue.get_nowait())
            handled += 1
        return handled

    async def run(self):
        logger.info("Event pump running")
        while True:
            event = await self.queue.get()
            await self._dispatch_safely(event)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self.queue.bind(asyncio.get_running_loop())
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Event pump stopped")
