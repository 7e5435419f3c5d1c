"""Tests for the publisher: supersession, loading flag and error reporting."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from geo import Coordinate
from publisher import ScanPublisher, ScanState
from scanner import ScanCoordinator, ScanResult, SourceUnavailableError
from sources import RawPlace

LOC1 = Coordinate(40.7128, -74.0060)
LOC2 = Coordinate(40.7306, -73.9866)


class GatedCoordinator:
    """Scans block until their origin's gate is opened."""

    def __init__(self, fail=()):
        self.gates: dict[Coordinate, asyncio.Event] = {}
        self.fail = set(fail)
        self.started: list[Coordinate] = []
        self.cancelled: list[Coordinate] = []

    def gate(self, origin: Coordinate) -> asyncio.Event:
        return self.gates.setdefault(origin, asyncio.Event())

    async def scan(self, origin, radius_m):
        self.started.append(origin)
        try:
            await self.gate(origin).wait()
        except asyncio.CancelledError:
            self.cancelled.append(origin)
            raise
        if origin in self.fail:
            raise SourceUnavailableError([f"{origin}: down"])
        return ScanResult(origin=origin, radius_m=radius_m, stations=())


class Recorder:
    def __init__(self):
        self.states: list[ScanState] = []

    def __call__(self, state: ScanState):
        self.states.append(state)


@pytest.mark.asyncio
async def test_publishes_result_and_loading():
    coord = GatedCoordinator()
    publisher = ScanPublisher(coord)
    rec = Recorder()
    publisher.subscribe(rec)

    publisher.request_scan(LOC1)
    assert publisher.state.loading is True
    coord.gate(LOC1).set()
    await publisher.wait()

    assert publisher.state.loading is False
    assert publisher.state.result.origin == LOC1
    assert [s.loading for s in rec.states] == [False, True, False]


@pytest.mark.asyncio
async def test_newer_request_supersedes_older():
    coord = GatedCoordinator()
    publisher = ScanPublisher(coord)
    rec = Recorder()
    publisher.subscribe(rec)

    publisher.request_scan(LOC1)
    await asyncio.sleep(0)
    publisher.request_scan(LOC2)
    await asyncio.sleep(0)
    coord.gate(LOC1).set()
    coord.gate(LOC2).set()
    await publisher.wait()

    assert coord.cancelled == [LOC1]
    published = [s.result.origin for s in rec.states if s.result is not None]
    assert published == [LOC2]
    assert publisher.state.loading is False


@pytest.mark.asyncio
async def test_superseded_result_discarded_even_if_it_completes():
    class IgnoresCancel(GatedCoordinator):
        async def scan(self, origin, radius_m):
            self.started.append(origin)
            try:
                await self.gate(origin).wait()
            except asyncio.CancelledError:
                self.cancelled.append(origin)
                await self.gate(origin).wait()
            return ScanResult(origin=origin, radius_m=radius_m, stations=())

    coord = IgnoresCancel()
    publisher = ScanPublisher(coord)
    rec = Recorder()
    publisher.subscribe(rec)

    first = publisher.request_scan(LOC1)
    await asyncio.sleep(0)
    publisher.request_scan(LOC2)
    coord.gate(LOC2).set()
    await publisher.wait()
    coord.gate(LOC1).set()
    await asyncio.gather(first, return_exceptions=True)

    assert coord.cancelled == [LOC1]
    assert not first.cancelled()
    assert publisher.state.result.origin == LOC2
    assert all(s.result is None or s.result.origin == LOC2 for s in rec.states)


@pytest.mark.asyncio
async def test_loading_stays_true_across_supersession():
    coord = GatedCoordinator()
    publisher = ScanPublisher(coord)
    rec = Recorder()
    publisher.subscribe(rec)

    publisher.request_scan(LOC1)
    await asyncio.sleep(0)
    publisher.request_scan(LOC2)
    await asyncio.sleep(0)

    assert [s.loading for s in rec.states] == [False, True, True]
    assert publisher.state.generation == 2
    coord.gate(LOC2).set()
    await publisher.wait()
    assert rec.states[-1].loading is False


@pytest.mark.asyncio
async def test_source_unavailable_published_as_error():
    coord = GatedCoordinator(fail={LOC1})
    publisher = ScanPublisher(coord)

    publisher.request_scan(LOC1)
    coord.gate(LOC1).set()
    await publisher.wait()

    assert isinstance(publisher.state.error, SourceUnavailableError)
    assert publisher.state.loading is False
    assert publisher.state.result is None


@pytest.mark.asyncio
async def test_successful_scan_clears_error():
    coord = GatedCoordinator(fail={LOC1})
    publisher = ScanPublisher(coord)
    coord.gate(LOC1).set()
    coord.gate(LOC2).set()

    await publisher.request_scan(LOC1)
    await publisher.request_scan(LOC2)

    assert publisher.state.error is None
    assert publisher.state.result.origin == LOC2


@pytest.mark.asyncio
async def test_refresh_rescans_last_origin():
    coord = GatedCoordinator()
    publisher = ScanPublisher(coord)
    coord.gate(LOC1).set()

    with pytest.raises(ValueError):
        publisher.refresh()

    await publisher.request_scan(LOC1)
    await publisher.refresh()
    assert coord.started == [LOC1, LOC1]
    assert publisher.state.generation == 2


@pytest.mark.asyncio
async def test_follow_location_stream():
    coord = GatedCoordinator()
    coord.gate(LOC2).set()
    publisher = ScanPublisher(coord)

    async def locations():
        yield LOC1
        yield LOC2

    await publisher.follow(locations())
    await publisher.wait()

    assert publisher.state.result.origin == LOC2
    assert LOC1 in coord.cancelled or LOC1 not in coord.started


@pytest.mark.asyncio
async def test_watch_yields_states():
    coord = GatedCoordinator()
    coord.gate(LOC1).set()
    publisher = ScanPublisher(coord)

    seen = []

    async def consume():
        async for state in publisher.watch():
            seen.append(state)
            if state.result is not None:
                return

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    publisher.request_scan(LOC1)
    await asyncio.wait_for(consumer, timeout=1)

    assert seen[0].generation == 0
    assert seen[-1].result.origin == LOC1


@pytest.mark.asyncio
async def test_close_cancels_in_flight_scan():
    coord = GatedCoordinator()
    publisher = ScanPublisher(coord)
    rec = Recorder()
    publisher.subscribe(rec)

    publisher.request_scan(LOC1)
    await asyncio.sleep(0)
    await publisher.close()

    assert coord.cancelled == [LOC1]
    assert publisher.state.result is None
    assert publisher.state.loading is False
    assert publisher.state.generation == 2
    count = len(rec.states)
    coord.gate(LOC1).set()
    await asyncio.sleep(0)
    assert len(rec.states) == count


@pytest.mark.asyncio
async def test_unsubscribe_stops_updates():
    coord = GatedCoordinator()
    coord.gate(LOC1).set()
    publisher = ScanPublisher(coord)
    rec = Recorder()
    unsubscribe = publisher.subscribe(rec)
    unsubscribe()

    await publisher.request_scan(LOC1)
    assert len(rec.states) == 1


@pytest.mark.asyncio
async def test_unexpected_scan_error_drops_loading():
    class BrokenCoordinator(GatedCoordinator):
        async def scan(self, origin, radius_m):
            raise RuntimeError("scanner bug")

    publisher = ScanPublisher(BrokenCoordinator())
    await publisher.request_scan(LOC1)

    assert publisher.state.loading is False
    assert isinstance(publisher.state.error, RuntimeError)
    assert publisher.state.result is None


@pytest.mark.asyncio
async def test_bad_tag_from_source_drops_loading():
    class BadTagSource:
        name = "bad"

        async def query(self, origin, radius_m, categories):
            yield RawPlace("x", "X", origin, (None,))

    publisher = ScanPublisher(ScanCoordinator(BadTagSource(), categories=["restaurant"]))
    await publisher.request_scan(LOC1)

    assert publisher.state.loading is False
    assert publisher.state.error is not None


@pytest.mark.asyncio
async def test_unexpected_error_of_superseded_scan_is_discarded():
    class FailsOnLoc1(GatedCoordinator):
        async def scan(self, origin, radius_m):
            if origin == LOC1:
                try:
                    await self.gate(origin).wait()
                except asyncio.CancelledError:
                    await self.gate(origin).wait()
                raise RuntimeError("late failure")
            return await super().scan(origin, radius_m)

    coord = FailsOnLoc1()
    publisher = ScanPublisher(coord)
    first = publisher.request_scan(LOC1)
    await asyncio.sleep(0)
    publisher.request_scan(LOC2)
    coord.gate(LOC2).set()
    await publisher.wait()
    coord.gate(LOC1).set()
    await asyncio.gather(first, return_exceptions=True)

    assert publisher.state.error is None
    assert publisher.state.result.origin == LOC2


@pytest.mark.asyncio
async def test_close_ends_watchers():
    coord = GatedCoordinator()
    publisher = ScanPublisher(coord)
    seen = []

    async def consume():
        async for state in publisher.watch():
            seen.append(state)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await publisher.close()
    await asyncio.wait_for(consumer, timeout=1)

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_task_outliving_close_never_publishes():
    class IgnoresCancel(GatedCoordinator):
        async def scan(self, origin, radius_m):
            try:
                await self.gate(origin).wait()
            except asyncio.CancelledError:
                await self.gate(origin).wait()
            return ScanResult(origin=origin, radius_m=radius_m, stations=())

    coord = IgnoresCancel()
    publisher = ScanPublisher(coord)
    task = publisher.request_scan(LOC1)
    await asyncio.sleep(0)

    close = asyncio.create_task(publisher.close())
    await asyncio.sleep(0)
    coord.gate(LOC1).set()
    await close
    await task

    assert publisher.state.result is None
    assert publisher.state.generation == 2
