"""Data models for run plans, scenarios, outcomes, and threshold results."""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional, Tuple


@dataclass(frozen=True)
class Stage:
    duration_seconds: float
    target: int  # concurrent virtual users for the whole stage


@dataclass(frozen=True)
class ThinkTime:
    min_seconds: float = 0.0
    max_seconds: float = 0.0

    def draw(self, rng: random.Random) -> float:
        if self.max_seconds <= self.min_seconds:
            return self.min_seconds
        return rng.uniform(self.min_seconds, self.max_seconds)


@dataclass(frozen=True)
class Check:
    """A named expectation evaluated against one response.

    Every populated field must hold for the check to pass. When
    ``when_status`` is set the check only applies to those status codes
    and passes for any other status. ``unless_status`` is the converse:
    the check passes outright for those codes and applies to every other.
    """

    name: str
    status_in: Tuple[int, ...] = ()
    max_latency_ms: Optional[float] = None
    body_fields: Tuple[str, ...] = ()
    body_not_empty: bool = False
    when_status: Tuple[int, ...] = ()
    unless_status: Tuple[int, ...] = ()


class ConditionKind(str, Enum):
    ALWAYS = "always"
    VAR_SET = "var_set"
    VAR_UNSET = "var_unset"
    STEP_PASSED = "step_passed"
    STEP_NOT_PASSED = "step_not_passed"  # failed or skipped


@dataclass(frozen=True)
class Condition:
    kind: ConditionKind = ConditionKind.ALWAYS
    ref: str = ""


@dataclass
class Step:
    name: str
    service: str
    endpoint: str
    path: str
    method: str = "GET"
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    think_time: ThinkTime = field(default_factory=ThinkTime)
    checks: List[Check] = field(default_factory=list)
    extract: Dict[str, str] = field(default_factory=dict)  # context var -> body field
    pick: Dict[str, str] = field(default_factory=dict)  # context var -> data pool
    when: Condition = field(default_factory=Condition)
    critical: bool = False
    abort_on_failure: bool = False


@dataclass
class Scenario:
    name: str
    weight: float
    steps: List[Step] = field(default_factory=list)
    iteration_pause: ThinkTime = field(default_factory=ThinkTime)


@dataclass(frozen=True)
class HealthCheck:
    name: str
    path: str


@dataclass(frozen=True)
class Response:
    status_code: int
    body: Any = None
    latency_ms: float = 0.0


class MetricKey(NamedTuple):
    service: str
    endpoint: str


@dataclass(frozen=True)
class Outcome:
    status_code: int
    latency_ms: Optional[float]  # None when no request was sent
    passed_checks: FrozenSet[str] = frozenset()
    failed_checks: FrozenSet[str] = frozenset()
    transport_error: bool = False

    @property
    def is_error(self) -> bool:
        return bool(self.failed_checks)

    @property
    def is_failed_request(self) -> bool:
        return self.transport_error or self.status_code >= 400


@dataclass(frozen=True)
class ThresholdRule:
    metric: str  # "http_req_duration", "errors", "http_req_failed", "checks", "http_reqs"
    stat: str  # "p(95)", "avg", "rate", "count", ...
    comparator: str  # "<", "<=", ">", ">="
    bound: float
    labels: Tuple[Tuple[str, str], ...] = ()
    source: str = ""

    @property
    def label_filter(self) -> Dict[str, str]:
        return dict(self.labels)


@dataclass
class RuleResult:
    rule: ThresholdRule
    passed: bool
    actual: Optional[float] = None  # None when the metric had no samples
    detail: str = ""


@dataclass
class Evaluation:
    overall_pass: bool
    results: List[RuleResult] = field(default_factory=list)


@dataclass
class RunOptions:
    tick_interval: float = 1.0
    grace_period: float = 30.0
    timeout: float = 10.0
    seed: Optional[int] = None


@dataclass
class RunPlan:
    base_url: str
    stages: List[Stage]
    scenarios: List[Scenario]
    thresholds: List[ThresholdRule] = field(default_factory=list)
    health_checks: List[HealthCheck] = field(default_factory=list)
    data: Dict[str, List[Any]] = field(default_factory=dict)
    options: RunOptions = field(default_factory=RunOptions)
    path: str = ""

    @property
    def total_duration_seconds(self) -> float:
        return sum(s.duration_seconds for s in self.stages)


@dataclass
class EvidenceEvent:
    ts: str
    plan: str
    base_url: str
    scenarios: List[str] = field(default_factory=list)
    total_requests: int = 0
    error_rate: float = 0.0
    outcome: str = "passed"
