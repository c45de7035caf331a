"""Stage-driven ramp scheduling and the virtual user worker pool."""

import asyncio
import random
import time
from functools import partial
from typing import Callable, List, Optional, Sequence, Set

import structlog

from loadsim.metrics import MetricSink
from loadsim.models import Stage
from loadsim.scenarios import ScenarioLibrary, ScenarioRunner

logger = structlog.get_logger()


def desired_concurrency(stages: Sequence[Stage], elapsed: float) -> int:
    """Target concurrency at *elapsed* seconds into the run.

    Each stage holds its target for its whole window ``[start, end)``; there
    is no interpolation between stages. Past the last stage the target is 0.
    """
    end = 0.0
    for stage in stages:
        end += stage.duration_seconds
        if elapsed < end:
            return stage.target
    return 0


async def wait_for_event(event: asyncio.Event, timeout: float) -> bool:
    """Wait up to *timeout* seconds for *event*. Returns whether it fired."""
    if timeout <= 0:
        return event.is_set()
    try:
        await asyncio.wait_for(event.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True


class VirtualUser:
    """One simulated user looping over weighted scenarios until stopped.

    A stop request is honoured between iterations only, so an iteration that
    has started always completes and is recorded.
    """

    def __init__(
        self,
        vu_id: int,
        library: ScenarioLibrary,
        runner: ScenarioRunner,
        sink: MetricSink,
        rng: random.Random,
    ) -> None:
        self.id = vu_id
        self.iterations = 0
        self.in_iteration = False
        self.task: Optional["asyncio.Task[None]"] = None
        self._library = library
        self._runner = runner
        self._sink = sink
        self._rng = rng
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        while not self._stop.is_set():
            scenario = self._library.select(self._rng.random())
            self.in_iteration = True
            try:
                ctx = await self._runner.run_iteration(
                    scenario,
                    self._rng,
                    {"vu": self.id, "iteration": self.iterations},
                )
            except Exception:
                logger.exception("iteration_failed", vu=self.id, scenario=scenario.name)
            else:
                self._sink.record_many(ctx.recorded)
                self.iterations += 1
            finally:
                self.in_iteration = False

            pause = scenario.iteration_pause.draw(self._rng)
            if pause > 0:
                await wait_for_event(self._stop, pause)
            else:
                # yield so transports that never suspend cannot starve the loop
                await asyncio.sleep(0)
        logger.debug("worker_stopped", vu=self.id, iterations=self.iterations)


class WorkerPool:
    """Keeps the number of running virtual users at a requested level."""

    def __init__(self, factory: Callable[[int], VirtualUser]) -> None:
        self._factory = factory
        self._active: List[VirtualUser] = []
        self._draining: Set[VirtualUser] = set()
        self._next_id = 1
        self.peak = 0

    @property
    def active(self) -> List[VirtualUser]:
        return list(self._active)

    @property
    def draining(self) -> List[VirtualUser]:
        return list(self._draining)

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def draining_count(self) -> int:
        return len(self._draining)

    def scale_to(self, desired: int) -> int:
        """Start or stop workers to reach *desired*. Returns the change."""
        current = len(self._active)
        if desired > current:
            for _ in range(desired - current):
                vu = self._factory(self._next_id)
                self._next_id += 1
                vu.task = asyncio.ensure_future(vu.run())
                vu.task.add_done_callback(partial(self._on_done, vu))
                self._active.append(vu)
        elif desired < current:
            # newest workers stop first
            stopping = self._active[desired:]
            del self._active[desired:]
            for vu in stopping:
                vu.stop()
                self._draining.add(vu)
        self.peak = max(self.peak, len(self._active))
        return desired - current

    def _on_done(self, vu: VirtualUser, task: "asyncio.Task[None]") -> None:
        self._draining.discard(vu)
        if vu in self._active:
            self._active.remove(vu)

    async def wait_drained(self) -> None:
        """Wait for every stopping worker to finish its current iteration."""
        tasks = [vu.task for vu in self._draining if vu.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self, grace_period: float) -> int:
        """Stop all workers, cancelling any still busy after *grace_period*.

        Returns the number of iterations abandoned mid-flight. Their buffered
        outcomes are discarded.
        """
        self.scale_to(0)
        pending_users = [vu for vu in self._draining if vu.task is not None]
        if not pending_users:
            return 0
        _, pending = await asyncio.wait(
            [vu.task for vu in pending_users], timeout=grace_period
        )
        abandoned = 0
        for vu in pending_users:
            if vu.task in pending:
                if vu.in_iteration:
                    abandoned += 1
                vu.task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "iterations_abandoned",
                workers=len(pending),
                iterations=abandoned,
                grace_period=grace_period,
            )
        return abandoned


class RampScheduler:
    """Ticks at a fixed interval, matching the pool to the stage schedule."""

    def __init__(
        self,
        stages: Sequence[Stage],
        pool: WorkerPool,
        tick_interval: float = 1.0,
    ) -> None:
        self.stages = list(stages)
        self.pool = pool
        self.tick_interval = tick_interval
        self.total_duration = sum(s.duration_seconds for s in self.stages)

    def desired_concurrency(self, elapsed: float) -> int:
        return desired_concurrency(self.stages, elapsed)

    async def run(self, stop: asyncio.Event) -> float:
        """Drive the pool until the schedule ends or *stop* is set.

        Returns the elapsed seconds. Workers are signalled but not awaited;
        the caller drains them.
        """
        start = time.monotonic()
        ticks = 0
        while True:
            elapsed = time.monotonic() - start
            desired = 0 if stop.is_set() else self.desired_concurrency(elapsed)
            previous = self.pool.active_count
            if desired != previous:
                self.pool.scale_to(desired)
                logger.info(
                    "concurrency_changed",
                    elapsed=round(elapsed, 2),
                    previous=previous,
                    target=desired,
                )
            if stop.is_set() or elapsed >= self.total_duration:
                return elapsed

            ticks += 1
            next_tick = start + ticks * self.tick_interval
            await wait_for_event(stop, next_tick - time.monotonic())
