"""Run orchestration: setup probes, the ramp-driven window, and teardown."""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog

from loadsim.errors import PlanValidationError
from loadsim.metrics import MetricSink, MetricsSnapshot
from loadsim.models import (
    Evaluation,
    HealthCheck,
    RunOptions,
    RunPlan,
    Scenario,
    Stage,
    ThresholdRule,
)
from loadsim.scenarios import ScenarioLibrary, ScenarioRunner, Sleep
from loadsim.scheduler import RampScheduler, VirtualUser, WorkerPool
from loadsim.thresholds import evaluate
from loadsim.transport import HttpxTransport, Transport, TransportError

logger = structlog.get_logger()


@dataclass
class RunResult:
    snapshot: MetricsSnapshot
    evaluation: Evaluation
    abandoned_iterations: int = 0
    duration_seconds: float = 0.0
    peak_concurrency: int = 0
    stopped_early: bool = False
    probes: Dict[str, Optional[int]] = field(default_factory=dict)  # None: unreachable

    @property
    def passed(self) -> bool:
        return self.evaluation.overall_pass


class RunCoordinator:
    """Owns one measurement run from setup to verdict.

    The metric sink is created when ``run`` starts and belongs to that run.
    ``stop`` may be called at any time to drain workers early.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        scenarios: Sequence[Scenario],
        rules: Sequence[ThresholdRule],
        transport: Transport,
        base_url: str,
        health_checks: Sequence[HealthCheck] = (),
        data: Optional[Dict[str, List[Any]]] = None,
        options: Optional[RunOptions] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not stages:
            raise PlanValidationError("at least one stage is required")
        self.stages = list(stages)
        self.library = ScenarioLibrary(scenarios)
        self.rules = list(rules)
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.health_checks = list(health_checks)
        self.data = data or {}
        self.options = options or RunOptions()
        self._sleep = sleep
        self._stop: Optional[asyncio.Event] = None
        self._stop_requested = False

    @classmethod
    def from_plan(cls, plan: RunPlan, transport: Transport, **kwargs) -> "RunCoordinator":
        return cls(
            stages=plan.stages,
            scenarios=plan.scenarios,
            rules=plan.thresholds,
            transport=transport,
            base_url=plan.base_url,
            health_checks=plan.health_checks,
            data=plan.data,
            options=plan.options,
            **kwargs,
        )

    def stop(self) -> None:
        """Request a graceful early stop."""
        self._stop_requested = True
        if self._stop is not None and not self._stop.is_set():
            logger.info("stop_requested")
            self._stop.set()

    async def run(self) -> RunResult:
        self._stop = asyncio.Event()
        if self._stop_requested:
            self._stop.set()

        opts = self.options
        rng = random.Random(opts.seed)
        sink = MetricSink()
        runner = ScenarioRunner(self.transport, self.base_url, self.data, sleep=self._sleep)

        def spawn(vu_id: int) -> VirtualUser:
            return VirtualUser(vu_id, self.library, runner, sink, random.Random(rng.getrandbits(64)))

        pool = WorkerPool(spawn)
        scheduler = RampScheduler(self.stages, pool, tick_interval=opts.tick_interval)

        logger.info(
            "run_started",
            base_url=self.base_url,
            stages=len(self.stages),
            duration_seconds=scheduler.total_duration,
            scenarios=[s.name for s in self.library.scenarios],
            rules=len(self.rules),
        )
        started = time.monotonic()

        probes = await self.probe()
        await scheduler.run(self._stop)
        abandoned = await pool.shutdown(opts.grace_period)

        snapshot = sink.snapshot()
        evaluation = evaluate(snapshot, self.rules)
        duration = time.monotonic() - started
        logger.info(
            "run_finished",
            requests=snapshot.global_stats.count,
            errors=snapshot.global_stats.error_count,
            abandoned_iterations=abandoned,
            duration_seconds=round(duration, 2),
            passed=evaluation.overall_pass,
        )
        return RunResult(
            snapshot=snapshot,
            evaluation=evaluation,
            abandoned_iterations=abandoned,
            duration_seconds=duration,
            peak_concurrency=pool.peak,
            stopped_early=self._stop_requested,
            probes=probes,
        )

    async def probe(self) -> Dict[str, Optional[int]]:
        """Call each health endpoint once. Failures are warnings only."""
        results: Dict[str, Optional[int]] = {}
        for hc in self.health_checks:
            url = self.base_url + hc.path
            try:
                response = await self.transport.call("GET", url)
            except TransportError as exc:
                logger.warning("health_probe_failed", name=hc.name, url=url, error=str(exc))
                results[hc.name] = None
                continue
            results[hc.name] = response.status_code
            if response.status_code != 200:
                logger.warning(
                    "health_probe_failed", name=hc.name, url=url, status=response.status_code
                )
        return results


async def run(
    stages: Sequence[Stage],
    scenarios: Sequence[Scenario],
    rules: Sequence[ThresholdRule],
    transport: Transport,
    base_url: str = "http://localhost:8080",
    **kwargs,
) -> RunResult:
    """Execute one run and return its snapshot and verdict."""
    coordinator = RunCoordinator(stages, scenarios, rules, transport, base_url, **kwargs)
    return await coordinator.run()


async def run_plan(plan: RunPlan, coordinator_hook=None) -> RunResult:
    """Run *plan* over HTTP using an ``HttpxTransport``.

    ``coordinator_hook`` is called with the coordinator before the run
    starts, e.g. to wire signal handlers to ``stop``.
    """
    async with HttpxTransport(timeout=plan.options.timeout) as transport:
        coordinator = RunCoordinator.from_plan(plan, transport)
        if coordinator_hook is not None:
            coordinator_hook(coordinator)
        return await coordinator.run()
