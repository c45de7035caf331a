"""Tests for stage scheduling and the virtual user pool."""

import asyncio
import random
import time

import pytest

from loadsim.metrics import MetricSink
from loadsim.models import Response, Scenario, Stage, Step, ThinkTime
from loadsim.scenarios import ScenarioLibrary, ScenarioRunner
from loadsim.scheduler import RampScheduler, VirtualUser, WorkerPool, desired_concurrency


STAGES = [Stage(60, 5), Stage(120, 50), Stage(60, 0)]


class GatedTransport:
    """The first ``first_wave`` calls wait for ``gate``; later calls never return."""

    def __init__(self, first_wave):
        self.first_wave = first_wave
        self.gate = asyncio.Event()
        self.hold = asyncio.Event()
        self.started = 0
        self.completed = 0

    async def call(self, method, url, json=None, headers=None):
        self.started += 1
        if self.started <= self.first_wave:
            await self.gate.wait()
        else:
            await self.hold.wait()
        self.completed += 1
        return Response(200, {"ok": True}, 10.0)


def _pool(transport, sink, pause=None):
    scenario = Scenario(
        "browse", 1.0,
        steps=[Step("list", "product", "list", "/products/products")],
        iteration_pause=pause or ThinkTime(),
    )
    library = ScenarioLibrary([scenario])
    runner = ScenarioRunner(transport, "http://gateway")
    return WorkerPool(lambda i: VirtualUser(i, library, runner, sink, random.Random(i)))


async def _wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


class TestDesiredConcurrency:
    @pytest.mark.parametrize("elapsed,expected", [
        (0, 5),
        (30, 5),
        (59.999, 5),
        (60, 50),
        (179.999, 50),
        (180, 0),
        (239, 0),
        (240, 0),
        (10_000, 0),
    ])
    def test_step_function(self, elapsed, expected):
        assert desired_concurrency(STAGES, elapsed) == expected

    def test_every_stage_window_holds_its_target(self):
        stages = [Stage(1.5, 3), Stage(0.5, 8), Stage(2, 1), Stage(1, 4)]
        start = 0.0
        for stage in stages:
            for frac in (0.0, 0.25, 0.5, 0.999):
                elapsed = start + frac * stage.duration_seconds
                assert desired_concurrency(stages, elapsed) == stage.target
            start += stage.duration_seconds
        assert desired_concurrency(stages, start) == 0

    def test_zero_length_stage_is_skipped(self):
        stages = [Stage(0, 99), Stage(10, 2)]
        assert desired_concurrency(stages, 0) == 2

    def test_scheduler_delegates(self):
        scheduler = RampScheduler(STAGES, WorkerPool(lambda i: None))
        assert scheduler.total_duration == 240
        assert scheduler.desired_concurrency(61) == 50


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_scale_up_and_down(self, static_transport):
        sink = MetricSink()
        pool = _pool(static_transport(), sink)

        assert pool.scale_to(4) == 4
        assert pool.active_count == 4
        assert [vu.id for vu in pool.active] == [1, 2, 3, 4]

        assert pool.scale_to(1) == -3
        assert pool.active_count == 1
        # newest stop first
        assert [vu.id for vu in pool.active] == [1]
        await pool.wait_drained()
        assert pool.draining_count == 0

        pool.scale_to(3)
        assert [vu.id for vu in pool.active] == [1, 5, 6]
        assert pool.peak == 4

        assert await pool.shutdown(grace_period=1.0) == 0
        assert pool.active_count == 0
        assert sink.snapshot().global_stats.count > 0

    @pytest.mark.asyncio
    async def test_scale_to_same_level_is_noop(self, static_transport):
        pool = _pool(static_transport(), MetricSink())
        pool.scale_to(2)
        before = pool.active
        assert pool.scale_to(2) == 0
        assert pool.active == before
        await pool.shutdown(grace_period=1.0)

    @pytest.mark.asyncio
    async def test_drained_workers_finish_their_iteration(self):
        sink = MetricSink()
        transport = GatedTransport(first_wave=10)
        pool = _pool(transport, sink)

        pool.scale_to(10)
        await _wait_until(lambda: transport.started == 10)

        pool.scale_to(2)
        assert pool.active_count == 2
        assert pool.draining_count == 8
        draining = pool.draining
        assert sink.snapshot().global_stats.count == 0

        transport.gate.set()
        await pool.wait_drained()

        assert all(vu.iterations == 1 for vu in draining)
        assert all(vu.task.done() and not vu.task.cancelled() for vu in draining)
        assert pool.draining_count == 0

        # the two survivors start a second iteration and hang there
        await _wait_until(lambda: transport.started == 12)
        assert sink.snapshot().global_stats.count == 10

        abandoned = await pool.shutdown(grace_period=0.05)
        assert abandoned == 2
        # outcomes of abandoned iterations are discarded
        assert sink.snapshot().global_stats.count == 10

    @pytest.mark.asyncio
    async def test_stop_interrupts_iteration_pause(self, static_transport):
        sink = MetricSink()
        pool = _pool(static_transport(), sink, pause=ThinkTime(30, 30))
        pool.scale_to(3)
        await _wait_until(lambda: sink.snapshot().global_stats.count == 3)

        started = time.monotonic()
        abandoned = await pool.shutdown(grace_period=5.0)
        assert abandoned == 0
        assert time.monotonic() - started < 1.0
        assert sink.snapshot().global_stats.count == 3

    @pytest.mark.asyncio
    async def test_shutdown_of_hung_workers(self):
        sink = MetricSink()
        transport = GatedTransport(first_wave=0)
        pool = _pool(transport, sink)
        pool.scale_to(4)
        await _wait_until(lambda: transport.started == 4)

        abandoned = await pool.shutdown(grace_period=0.05)
        assert abandoned == 4
        assert sink.snapshot().global_stats.count == 0


class TestRampScheduler:
    @pytest.mark.asyncio
    async def test_follows_stages_and_ends(self, static_transport):
        sink = MetricSink()
        pool = _pool(static_transport(), sink)
        seen = []
        real_scale_to = pool.scale_to

        def spy(desired):
            seen.append(desired)
            return real_scale_to(desired)

        pool.scale_to = spy
        scheduler = RampScheduler([Stage(0.1, 3), Stage(0.1, 6), Stage(0.1, 1)], pool, 0.01)

        elapsed = await scheduler.run(asyncio.Event())
        await pool.shutdown(grace_period=1.0)

        assert elapsed >= 0.3
        assert seen[:3] == [3, 6, 1]
        assert seen[-1] == 0
        assert pool.peak == 6
        assert sink.snapshot().global_stats.count > 0

    @pytest.mark.asyncio
    async def test_stop_event_ends_early(self, static_transport):
        pool = _pool(static_transport(), MetricSink())
        scheduler = RampScheduler([Stage(30, 2)], pool, 0.05)
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, stop.set)

        elapsed = await scheduler.run(stop)
        assert elapsed < 5
        # stop scales the pool to zero
        assert pool.active_count == 0
        assert await pool.shutdown(grace_period=1.0) == 0
