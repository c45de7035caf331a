"""Parse threshold expressions and evaluate them against a metrics snapshot."""

import operator
import re
from typing import Dict, Iterable, List, Optional, Sequence, Union

from loadsim.errors import ThresholdSyntaxError
from loadsim.metrics import MetricsSnapshot
from loadsim.models import Evaluation, RuleResult, ThresholdRule


COMPARATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

DURATION = "http_req_duration"
ERRORS = "errors"
FAILED = "http_req_failed"
CHECKS = "checks"
REQUESTS = "http_reqs"

_STATS = {
    DURATION: ("avg", "min", "max", "med", "p"),
    ERRORS: ("rate", "count"),
    FAILED: ("rate", "count"),
    CHECKS: ("rate",),
    REQUESTS: ("count",),
}

# Shorthand stats accepted without a metric name.
_BARE_ALIASES = {
    "errors_rate": (ERRORS, "rate"),
    "error_rate": (ERRORS, "rate"),
    "rate": (ERRORS, "rate"),
    "count": (REQUESTS, "count"),
}

_EXPR = re.compile(
    r"^\s*(?P<stat>[a-z_]+(?:\(\s*\d+(?:\.\d+)?\s*\))?)\s*"
    r"(?P<op><=|>=|<|>)\s*"
    r"(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)
_METRIC = re.compile(r"^\s*(?P<name>[a-z_]+)\s*(?:\{(?P<labels>[^}]*)\})?\s*$")
_PCT = re.compile(r"^p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)$")
_LABELS = ("service", "endpoint")


def parse_rule(expression: str, metric: Optional[str] = None) -> ThresholdRule:
    """Parse one threshold such as ``p(95)<1000`` or ``rate<0.01``.

    Args:
        expression: The comparison, e.g. ``"p(95)<500"``.
        metric: Optional metric name with an optional label filter, e.g.
            ``"http_req_duration{service:auth}"``. When omitted the metric is
            inferred from the stat (latency stats, ``errors_rate``, ``count``).

    Raises:
        ThresholdSyntaxError: If either part cannot be parsed.
    """
    match = _EXPR.match(expression)
    if not match:
        raise ThresholdSyntaxError(f"invalid threshold expression: {expression!r}")
    stat = re.sub(r"\s+", "", match.group("stat"))
    op = match.group("op")
    bound = float(match.group("bound"))

    labels: Dict[str, str] = {}
    if metric is None:
        if stat in _BARE_ALIASES:
            name, stat = _BARE_ALIASES[stat]
        else:
            name = DURATION
    else:
        m = _METRIC.match(metric)
        if not m:
            raise ThresholdSyntaxError(f"invalid threshold metric: {metric!r}")
        name = m.group("name")
        labels = _parse_labels(m.group("labels"), metric)

    if name not in _STATS:
        raise ThresholdSyntaxError(
            f"unknown threshold metric {name!r} (expected one of: {', '.join(_STATS)})"
        )
    kind = "p" if _PCT.match(stat) else stat
    if kind not in _STATS[name]:
        raise ThresholdSyntaxError(f"stat {stat!r} is not available for metric {name!r}")
    if kind == "p":
        pct = float(_PCT.match(stat).group("pct"))
        if not 0 < pct <= 100:
            raise ThresholdSyntaxError(f"percentile out of range in {expression!r}")

    source = f"{metric}: {expression.strip()}" if metric else expression.strip()
    return ThresholdRule(
        metric=name,
        stat=stat,
        comparator=op,
        bound=bound,
        labels=tuple(sorted(labels.items())),
        source=source,
    )


def parse_thresholds(raw: Union[Dict[str, Iterable[str]], Sequence[str]]) -> List[ThresholdRule]:
    """Parse a k6-style mapping ``{metric: [expr, ...]}`` or a list of bare expressions."""
    if isinstance(raw, dict):
        rules = []
        for metric, expressions in raw.items():
            if isinstance(expressions, str):
                expressions = [expressions]
            if not isinstance(expressions, list):
                raise ThresholdSyntaxError(
                    f"thresholds for {metric!r} must be an expression or a list of expressions"
                )
            for expr in expressions:
                rules.append(parse_rule(str(expr), metric=str(metric)))
        return rules
    return [parse_rule(str(expr)) for expr in raw]


def resolve(snapshot: MetricsSnapshot, rule: ThresholdRule) -> Optional[float]:
    """Value of the rule's metric, or None when there were no samples."""
    stats = snapshot.select(rule.label_filter)
    if rule.metric == CHECKS:
        return stats.checks_rate
    if stats.count == 0:
        return None

    if rule.metric == DURATION:
        m = _PCT.match(rule.stat)
        if m:
            return stats.percentile(float(m.group("pct")))
        return getattr(stats, rule.stat)
    if rule.metric == ERRORS:
        return stats.error_rate if rule.stat == "rate" else float(stats.error_count)
    if rule.metric == FAILED:
        return stats.failed_rate if rule.stat == "rate" else float(stats.failed_requests)
    return float(stats.count)


def evaluate(snapshot: MetricsSnapshot, rules: Sequence[ThresholdRule]) -> Evaluation:
    """Judge every rule against the snapshot. All rules must pass.

    A rule whose metric saw no samples passes: there is nothing to violate.
    """
    results = []
    for rule in rules:
        actual = resolve(snapshot, rule)
        if actual is None:
            results.append(RuleResult(
                rule=rule,
                passed=True,
                actual=None,
                detail=f"{rule.source}: no samples, passes by default",
            ))
            continue
        passed = COMPARATORS[rule.comparator](actual, rule.bound)
        results.append(RuleResult(
            rule=rule,
            passed=passed,
            actual=actual,
            detail=f"{rule.source}: actual {actual:.4g} ({'ok' if passed else 'violated'})",
        ))
    return Evaluation(
        overall_pass=all(r.passed for r in results),
        results=results,
    )


def _parse_labels(raw: Optional[str], metric: str) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    if not raw:
        return labels
    for part in raw.split(","):
        key, sep, value = part.partition(":")
        key, value = key.strip(), value.strip()
        if not sep or not value or key not in _LABELS:
            raise ThresholdSyntaxError(
                f"invalid label filter in {metric!r} (expected service:<name> or endpoint:<name>)"
            )
        labels[key] = value
    return labels
