"""Publisher: latest scan result + loading flag as observable state.

Last request wins. Every request_scan() bumps a generation counter and
cancels the in-flight scan; a scan only publishes if its generation is
still the current one when it finishes, so a superseded scan that slips
past cancellation is discarded rather than shown.
"""

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, replace

import config
from geo import Coordinate
from scanner import ScanCoordinator, ScanResult, SourceUnavailableError, Station

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanState:
    result: ScanResult | None = None
    loading: bool = False
    error: Exception | None = None
    origin: Coordinate | None = None
    generation: int = 0

    @property
    def stations(self) -> tuple[Station, ...]:
        return self.result.stations if self.result else ()


Listener = Callable[[ScanState], None]

_CLOSED = object()


class ScanPublisher:
    def __init__(self, coordinator: ScanCoordinator, radius_m: float = config.MAX_RADIUS_M):
        self.coordinator = coordinator
        self.radius_m = radius_m
        self._state = ScanState()
        self._task: asyncio.Task | None = None
        self._listeners: list[Listener] = []
        self._watchers: list[asyncio.Queue] = []

    @property
    def state(self) -> ScanState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; it gets the current state now and every change after."""
        self._listeners.append(listener)
        listener(self._state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def watch(self) -> AsyncIterator[ScanState]:
        """Yield every state change until the publisher is closed."""
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.append(queue)
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            while True:
                state = await queue.get()
                if state is _CLOSED:
                    return
                yield state
        finally:
            unsubscribe()
            if queue in self._watchers:
                self._watchers.remove(queue)

    def _publish(self, state: ScanState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def request_scan(self, origin: Coordinate) -> asyncio.Task:
        """Start a scan at origin, superseding any scan still in flight."""
        if self._task is not None and not self._task.done():
            logger.debug("Superseding scan generation %d", self._state.generation)
            self._task.cancel()
        generation = self._state.generation + 1
        self._publish(replace(self._state, loading=True, origin=origin, generation=generation))
        self._task = asyncio.create_task(self._run(generation, origin))
        return self._task

    def refresh(self) -> asyncio.Task:
        """Rescan the last requested location (pull-to-refresh / retry)."""
        if self._state.origin is None:
            raise ValueError("No location to refresh; request a scan first")
        return self.request_scan(self._state.origin)

    async def follow(self, locations: AsyncIterable[Coordinate]) -> None:
        """Request a scan for every observer location update until the stream ends."""
        async for origin in locations:
            self.request_scan(origin)

    async def wait(self) -> None:
        """Wait for the in-flight scan, if any. Superseded scans are not errors."""
        while self._task is not None and not self._task.done():
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    async def close(self) -> None:
        task, self._task = self._task, None
        # bumped, never reset: a task that outlives close can never match
        self._state = ScanState(generation=self._state.generation + 1)
        self._listeners.clear()
        for queue in self._watchers:
            queue.put_nowait(_CLOSED)
        self._watchers.clear()
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self, generation: int, origin: Coordinate) -> None:
        try:
            result = await self.coordinator.scan(origin, self.radius_m)
        except SourceUnavailableError as exc:
            if generation != self._state.generation:
                logger.debug("Discarding failure of superseded scan %d", generation)
                return
            logger.warning("Scan %d failed: %s", generation, exc)
            self._publish(replace(self._state, loading=False, error=exc))
            return
        except Exception as exc:
            if generation != self._state.generation:
                logger.debug("Discarding failure of superseded scan %d", generation)
                return
            logger.error("Scan %d raised unexpectedly", generation, exc_info=exc)
            self._publish(replace(self._state, loading=False, error=exc))
            return
        if generation != self._state.generation:
            logger.debug("Discarding result of superseded scan %d", generation)
            return
        self._publish(replace(self._state, result=result, loading=False, error=None))
