"""Weighted scenario dispatch and step-by-step scenario execution."""

import asyncio
import random
import re
import string
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from loadsim.errors import PlanValidationError
from loadsim.models import (
    Check,
    Condition,
    ConditionKind,
    MetricKey,
    Outcome,
    Response,
    Scenario,
    Step,
)
from loadsim.transport import Transport, TransportError

logger = structlog.get_logger()

# Pseudo-check names recorded when a step could not produce a response.
TRANSPORT_CHECK = "request completed"
REQUEST_BUILD_CHECK = "request built"

_SINGLE_PLACEHOLDER = re.compile(r"^\{([^{}]+)\}$")
_formatter = string.Formatter()

Sleep = Callable[[float], Awaitable[Any]]


class ScenarioLibrary:
    """Registered scenarios, selected by cumulative weight.

    Weights are cut points walked in registration order: the first scenario
    whose cumulative weight exceeds the draw wins. A draw beyond the total
    weight falls through to the last scenario.
    """

    def __init__(self, scenarios: Sequence[Scenario]) -> None:
        if not scenarios:
            raise PlanValidationError("at least one scenario is required")
        cumulative = 0.0
        cuts = []
        for s in scenarios:
            if not 0 < s.weight <= 1:
                raise PlanValidationError(
                    f"scenario {s.name!r} weight must be in (0, 1], got {s.weight}"
                )
            cumulative += s.weight
            cuts.append(cumulative)
        self._scenarios = list(scenarios)
        self._cuts = cuts

    @property
    def scenarios(self) -> List[Scenario]:
        return list(self._scenarios)

    @property
    def total_weight(self) -> float:
        return self._cuts[-1]

    def select(self, draw: float) -> Scenario:
        for scenario, cut in zip(self._scenarios, self._cuts):
            if draw < cut:
                return scenario
        return self._scenarios[-1]


@dataclass
class IterationContext:
    """State produced by one scenario execution. Never shared across iterations."""

    variables: Dict[str, Any] = field(default_factory=dict)
    step_passed: Dict[str, bool] = field(default_factory=dict)
    recorded: List[Tuple[MetricKey, Outcome]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    aborted: bool = False


def _is_set(value: Any) -> bool:
    return value is not None and value is not False and value != ""


def condition_holds(condition: Condition, ctx: IterationContext) -> bool:
    kind = condition.kind
    if kind is ConditionKind.ALWAYS:
        return True
    if kind is ConditionKind.VAR_SET:
        return _is_set(ctx.variables.get(condition.ref))
    if kind is ConditionKind.VAR_UNSET:
        return not _is_set(ctx.variables.get(condition.ref))
    if kind is ConditionKind.STEP_PASSED:
        return ctx.step_passed.get(condition.ref) is True
    if kind is ConditionKind.STEP_NOT_PASSED:
        return ctx.step_passed.get(condition.ref) is not True
    raise ValueError(f"unknown condition kind: {kind}")


def check_passes(check: Check, response: Response) -> bool:
    status = response.status_code
    if check.when_status and status not in check.when_status:
        return True
    if status in check.unless_status:
        return True
    if check.status_in and status not in check.status_in:
        return False
    if check.max_latency_ms is not None and response.latency_ms >= check.max_latency_ms:
        return False
    body = response.body
    if check.body_fields:
        if not isinstance(body, dict):
            return False
        if any(body.get(name) in (None, "") for name in check.body_fields):
            return False
    if check.body_not_empty and not body:
        return False
    return True


def classify(checks: Sequence[Check], response: Response) -> Outcome:
    passed, failed = set(), set()
    for check in checks:
        (passed if check_passes(check, response) else failed).add(check.name)
    return Outcome(
        status_code=response.status_code,
        latency_ms=response.latency_ms,
        passed_checks=frozenset(passed),
        failed_checks=frozenset(failed),
    )


def render(template: Any, variables: Dict[str, Any]) -> Any:
    """Fill ``{placeholders}`` in strings nested anywhere in *template*.

    A string made of exactly one placeholder yields the referenced value
    itself, so numeric fields keep their type. Raises KeyError, IndexError
    or AttributeError for unresolvable references and ValueError for
    malformed templates such as an unbalanced brace.
    """
    if isinstance(template, str):
        match = _SINGLE_PLACEHOLDER.match(template)
        if match:
            value, _ = _formatter.get_field(match.group(1), (), variables)
            return value
        return template.format_map(variables)
    if isinstance(template, dict):
        return {k: render(v, variables) for k, v in template.items()}
    if isinstance(template, list):
        return [render(v, variables) for v in template]
    return template


class ScenarioRunner:
    """Executes scenario iterations against a transport.

    Outcomes are buffered on the returned context; the caller flushes them
    to the metric sink once the iteration has completed.
    """

    def __init__(
        self,
        transport: Transport,
        base_url: str,
        data: Optional[Dict[str, List[Any]]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._data = data or {}
        self._sleep = sleep

    async def run_iteration(
        self,
        scenario: Scenario,
        rng: random.Random,
        variables: Optional[Dict[str, Any]] = None,
    ) -> IterationContext:
        ctx = IterationContext(variables=dict(variables or {}))
        for step in scenario.steps:
            if ctx.aborted or not condition_holds(step.when, ctx):
                ctx.skipped.append(step.name)
                continue

            delay = step.think_time.draw(rng)
            if delay > 0:
                await self._sleep(delay)

            outcome = await self.execute_step(step, ctx, rng)
            ctx.recorded.append((MetricKey(step.service, step.endpoint), outcome))
            ctx.step_passed[step.name] = not outcome.is_error

            if outcome.transport_error and step.critical:
                ctx.aborted = True
            elif outcome.is_error and step.abort_on_failure:
                ctx.aborted = True
        return ctx

    async def execute_step(
        self, step: Step, ctx: IterationContext, rng: random.Random
    ) -> Outcome:
        for var, pool in step.pick.items():
            ctx.variables[var] = rng.choice(self._data[pool])

        try:
            url = self._base_url + str(render(step.path, ctx.variables))
            body = render(step.json, ctx.variables)
            headers = render(step.headers, ctx.variables) or None
        except (KeyError, IndexError, AttributeError, ValueError) as exc:
            logger.warning("request_build_failed", step=step.name, error=str(exc))
            return Outcome(
                status_code=0,
                latency_ms=None,
                failed_checks=frozenset({REQUEST_BUILD_CHECK}),
            )

        t0 = time.monotonic()
        try:
            response = await self._transport.call(step.method, url, json=body, headers=headers)
        except TransportError as exc:
            logger.debug("transport_error", step=step.name, error=str(exc))
            return Outcome(
                status_code=0,
                latency_ms=(time.monotonic() - t0) * 1000.0,
                failed_checks=frozenset({TRANSPORT_CHECK}),
                transport_error=True,
            )

        outcome = classify(step.checks, response)
        if 200 <= response.status_code < 300 and isinstance(response.body, dict):
            for var, name in step.extract.items():
                if response.body.get(name) is not None:
                    ctx.variables[var] = response.body[name]
        return outcome
