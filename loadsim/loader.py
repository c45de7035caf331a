"""Load and validate run plan files (YAML or JSON)."""

import json
import os
import re
import string
from typing import Any, Dict, List, Optional

import yaml

from loadsim.errors import PlanValidationError, ThresholdSyntaxError
from loadsim.models import (
    Check,
    Condition,
    ConditionKind,
    HealthCheck,
    RunOptions,
    RunPlan,
    Scenario,
    Stage,
    Step,
    ThinkTime,
)
from loadsim.thresholds import parse_thresholds

DEFAULT_BASE_URL = "http://localhost:8080"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_CONVERSIONS = (None, "r", "s", "a")
_formatter = string.Formatter()


def parse_duration(value: Any) -> float:
    """Convert ``"1m30s"``, ``"90s"``, ``"500ms"`` or a number to seconds.

    Raises:
        ValueError: If the value is not a recognised duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"duration must not be negative: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")
    text = value.strip().lower()
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)


def load_plan(path: str, base_url: Optional[str] = None) -> RunPlan:
    """Load a run plan from a YAML or JSON file.

    Args:
        path: Path to the plan file.
        base_url: Overrides the plan's ``base_url`` when given.

    Returns:
        A validated RunPlan instance.

    Raises:
        PlanValidationError: If the file is missing, unreadable, or invalid.
    """
    if not os.path.isfile(path):
        raise PlanValidationError(f"plan file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r") as f:
            if ext in (".yaml", ".yml"):
                raw = yaml.safe_load(f)
            elif ext == ".json":
                raw = json.load(f)
            else:
                raise PlanValidationError(
                    f"unsupported file extension: {ext} (expected .yaml, .yml, or .json)"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise PlanValidationError(f"failed to parse {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise PlanValidationError("plan must be a mapping/object at the top level")

    plan = build_plan(raw, base_url=base_url)
    plan.path = path
    return plan


def build_plan(raw: dict, base_url: Optional[str] = None) -> RunPlan:
    """Construct and validate a RunPlan from a raw dict."""
    errors: List[str] = []

    url = base_url or raw.get("base_url") or DEFAULT_BASE_URL
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        errors.append(f"'base_url' must be an http(s) URL, got {url!r}")

    stages = _parse_stages(raw.get("stages"), errors)
    data = _parse_data(raw.get("data", {}), errors)
    scenarios = _parse_scenarios(raw.get("scenarios"), data, errors)
    health_checks = _parse_health_checks(raw.get("health_checks", []), errors)
    options = _parse_options(raw.get("options", {}), errors)

    thresholds = []
    raw_thresholds = raw.get("thresholds", {})
    if not isinstance(raw_thresholds, (dict, list)):
        errors.append("'thresholds' must be a mapping or a list")
    else:
        try:
            thresholds = parse_thresholds(raw_thresholds)
        except ThresholdSyntaxError as exc:
            errors.append(str(exc))

    if errors:
        raise PlanValidationError(
            "plan validation failed:\n  - " + "\n  - ".join(errors)
        )

    return RunPlan(
        base_url=url,
        stages=stages,
        scenarios=scenarios,
        thresholds=thresholds,
        health_checks=health_checks,
        data=data,
        options=options,
    )


def _parse_stages(raw: Any, errors: List[str]) -> List[Stage]:
    if not isinstance(raw, list) or not raw:
        errors.append("'stages' is required and must be a non-empty list")
        return []
    stages = []
    for i, st in enumerate(raw):
        if not isinstance(st, dict):
            errors.append(f"stages[{i}] must be a mapping")
            continue
        try:
            duration = parse_duration(st.get("duration"))
        except ValueError as exc:
            errors.append(f"stages[{i}].duration: {exc}")
            continue
        target = st.get("target")
        if isinstance(target, bool) or not isinstance(target, int) or target < 0:
            errors.append(f"stages[{i}].target must be a non-negative integer")
            continue
        stages.append(Stage(duration_seconds=duration, target=target))
    if stages and sum(s.duration_seconds for s in stages) <= 0:
        errors.append("'stages' must have a positive total duration")
    return stages


def _parse_think_time(raw: Any, where: str, errors: List[str]) -> ThinkTime:
    if raw is None:
        return ThinkTime()
    try:
        if isinstance(raw, list) and len(raw) == 2:
            low, high = parse_duration(raw[0]), parse_duration(raw[1])
        else:
            low = high = parse_duration(raw)
    except ValueError as exc:
        errors.append(f"{where}: {exc}")
        return ThinkTime()
    if high < low:
        errors.append(f"{where}: max must not be below min")
        return ThinkTime()
    return ThinkTime(min_seconds=low, max_seconds=high)


def _parse_check(raw: Any, where: str, errors: List[str]) -> Optional[Check]:
    if not isinstance(raw, dict) or not raw.get("name"):
        errors.append(f"{where} must be a mapping with a 'name'")
        return None
    max_latency = raw.get("max_latency_ms")
    if isinstance(max_latency, bool) or (
        max_latency is not None and not isinstance(max_latency, (int, float))
    ):
        errors.append(f"{where}.max_latency_ms must be a number")
        max_latency = None
    lists = {}
    for key in ("status_in", "when_status", "unless_status", "body_fields"):
        value = raw.get(key, [])
        if not isinstance(value, list):
            errors.append(f"{where}.{key} must be a list")
            return None
        lists[key] = value
    try:
        status_in = tuple(int(s) for s in lists["status_in"])
        when_status = tuple(int(s) for s in lists["when_status"])
        unless_status = tuple(int(s) for s in lists["unless_status"])
    except (TypeError, ValueError):
        errors.append(f"{where}: status codes must be integers")
        return None
    return Check(
        name=str(raw["name"]),
        status_in=status_in,
        max_latency_ms=float(max_latency) if max_latency is not None else None,
        body_fields=tuple(str(f) for f in lists["body_fields"]),
        body_not_empty=bool(raw.get("body_not_empty", False)),
        when_status=when_status,
        unless_status=unless_status,
    )


def _parse_condition(raw: Any, where: str, errors: List[str]) -> Condition:
    if raw is None:
        return Condition()
    if not isinstance(raw, dict) or len(raw) != 1:
        errors.append(f"{where} must be a single-key mapping such as {{var_set: token}}")
        return Condition()
    (kind, ref), = raw.items()
    try:
        kind = ConditionKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in ConditionKind)
        errors.append(f"{where}: unknown condition {kind!r} (expected one of: {valid})")
        return Condition()
    return Condition(kind=kind, ref=str(ref or ""))


def _check_template(value: Any, where: str, errors: List[str]) -> None:
    """Report strings, nested anywhere in *value*, that cannot be formatted."""
    if isinstance(value, dict):
        for k, v in value.items():
            _check_template(v, f"{where}.{k}", errors)
        return
    if isinstance(value, list):
        for i, v in enumerate(value):
            _check_template(v, f"{where}[{i}]", errors)
        return
    if not isinstance(value, str):
        return
    try:
        for _, field_name, _, conversion in _formatter.parse(value):
            if field_name == "":
                raise ValueError("empty placeholder '{}'")
            if conversion not in _CONVERSIONS:
                raise ValueError(f"unknown conversion '!{conversion}'")
    except ValueError as exc:
        errors.append(f"{where}: invalid template {value!r}: {exc}")


def _parse_step(raw: Any, where: str, pools: Dict[str, list], errors: List[str]) -> Optional[Step]:
    if not isinstance(raw, dict):
        errors.append(f"{where} must be a mapping")
        return None
    missing = [k for k in ("name", "service", "endpoint", "path") if not raw.get(k)]
    if missing:
        errors.append(f"{where} is missing: {', '.join(missing)}")
        return None

    checks = []
    raw_checks = raw.get("checks", [])
    if not isinstance(raw_checks, list):
        errors.append(f"{where}.checks must be a list")
        raw_checks = []
    for j, c in enumerate(raw_checks):
        check = _parse_check(c, f"{where}.checks[{j}]", errors)
        if check is not None:
            checks.append(check)

    mappings = {}
    for key in ("pick", "extract", "headers"):
        value = raw.get(key)
        if value is None:
            value = {}
        if not isinstance(value, dict):
            errors.append(f"{where}.{key} must be a mapping")
            value = {}
        mappings[key] = {str(k): str(v) for k, v in value.items()}
    pick = mappings["pick"]
    for var, pool in pick.items():
        if not pools.get(pool):
            errors.append(f"{where}.pick.{var}: unknown or empty data pool {pool!r}")

    method = raw.get("method", "GET")
    if not isinstance(method, str) or not method.strip():
        errors.append(f"{where}.method must be a string such as GET or POST")
        method = "GET"

    path = str(raw["path"])
    _check_template(path, f"{where}.path", errors)
    _check_template(raw.get("json"), f"{where}.json", errors)
    _check_template(mappings["headers"], f"{where}.headers", errors)

    return Step(
        name=str(raw["name"]),
        service=str(raw["service"]),
        endpoint=str(raw["endpoint"]),
        path=path,
        method=method.strip().upper(),
        json=raw.get("json"),
        headers=mappings["headers"],
        think_time=_parse_think_time(raw.get("think_time"), f"{where}.think_time", errors),
        checks=checks,
        extract=mappings["extract"],
        pick=pick,
        when=_parse_condition(raw.get("when"), f"{where}.when", errors),
        critical=bool(raw.get("critical", False)),
        abort_on_failure=bool(raw.get("abort_on_failure", False)),
    )


def _parse_scenarios(raw: Any, pools: Dict[str, list], errors: List[str]) -> List[Scenario]:
    if not isinstance(raw, list) or not raw:
        errors.append("'scenarios' is required and must be a non-empty list")
        return []
    scenarios = []
    names = set()
    for i, sc in enumerate(raw):
        where = f"scenarios[{i}]"
        if not isinstance(sc, dict) or not sc.get("name"):
            errors.append(f"{where} must be a mapping with a 'name'")
            continue
        name = str(sc["name"])
        if name in names:
            errors.append(f"{where}: duplicate scenario name {name!r}")
        names.add(name)

        weight = sc.get("weight")
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not 0 < weight <= 1:
            errors.append(f"{where}.weight must be a number in (0, 1]")
            weight = 0.0

        raw_steps = sc.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            errors.append(f"{where}.steps is required and must be a non-empty list")
            raw_steps = []
        steps = []
        for j, st in enumerate(raw_steps):
            step = _parse_step(st, f"{where}.steps[{j}]", pools, errors)
            if step is not None:
                steps.append(step)

        scenarios.append(Scenario(
            name=name,
            weight=float(weight),
            steps=steps,
            iteration_pause=_parse_think_time(
                sc.get("iteration_pause"), f"{where}.iteration_pause", errors
            ),
        ))
    return scenarios


def _parse_data(raw: Any, errors: List[str]) -> Dict[str, list]:
    if not isinstance(raw, dict):
        errors.append("'data' must be a mapping of pool name to list")
        return {}
    pools = {}
    for name, items in raw.items():
        if not isinstance(items, list):
            errors.append(f"data.{name} must be a list")
            continue
        pools[str(name)] = items
    return pools


def _parse_health_checks(raw: Any, errors: List[str]) -> List[HealthCheck]:
    if not isinstance(raw, list):
        errors.append("'health_checks' must be a list")
        return []
    checks = []
    for i, hc in enumerate(raw):
        if isinstance(hc, str):
            checks.append(HealthCheck(name=hc, path=hc))
        elif isinstance(hc, dict) and hc.get("path"):
            checks.append(HealthCheck(name=str(hc.get("name", hc["path"])), path=str(hc["path"])))
        else:
            errors.append(f"health_checks[{i}] must be a path or a mapping with 'path'")
    return checks


def _parse_options(raw: Any, errors: List[str]) -> RunOptions:
    if not isinstance(raw, dict):
        errors.append("'options' must be a mapping")
        return RunOptions()
    opts = RunOptions()
    for name in ("tick_interval", "grace_period", "timeout"):
        if name not in raw:
            continue
        try:
            value = parse_duration(raw[name])
        except ValueError as exc:
            errors.append(f"options.{name}: {exc}")
            continue
        if name == "tick_interval" and value <= 0:
            errors.append("options.tick_interval must be positive")
            continue
        setattr(opts, name, value)
    seed = raw.get("seed")
    if seed is not None:
        if isinstance(seed, bool) or not isinstance(seed, int):
            errors.append("options.seed must be an integer")
        else:
            opts.seed = seed
    return opts
