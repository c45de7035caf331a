"""Run summaries (JSON and text) and the append-only JSONL evidence log."""

import json
import os
from datetime import datetime, timezone
from typing import List

from loadsim.coordinator import RunResult
from loadsim.models import EvidenceEvent


def result_to_dict(result: RunResult) -> dict:
    """Serialisable summary of a run: stats, checks, and rule verdicts."""
    snap = result.snapshot
    passes, fails = snap.check_totals
    return {
        "passed": result.passed,
        "duration_seconds": round(result.duration_seconds, 2),
        "peak_concurrency": result.peak_concurrency,
        "stopped_early": result.stopped_early,
        "abandoned_iterations": result.abandoned_iterations,
        "probes": dict(result.probes),
        "global": snap.global_stats.summary(),
        "per_endpoint": {
            f"{key.service}.{key.endpoint}": stats.summary()
            for key, stats in sorted(snap.per_key.items())
        },
        "checks": {
            "passes": passes,
            "fails": fails,
            "by_name": {
                name: {"passes": p, "fails": f}
                for name, (p, f) in sorted(snap.checks.items())
            },
        },
        "thresholds": [
            {
                "rule": r.rule.source,
                "passed": r.passed,
                "actual": r.actual,
                "detail": r.detail,
            }
            for r in result.evaluation.results
        ],
    }


def result_to_json(result: RunResult) -> str:
    return json.dumps(result_to_dict(result), indent=2)


def write_summary(result: RunResult, path: str) -> None:
    parent = os.path.dirname(path)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        f.write(result_to_json(result) + "\n")


def _ms(value) -> str:
    return f"{value:.1f} ms" if value is not None else "n/a"


def render_text(result: RunResult) -> str:
    """Human-readable verdict, totals, per-endpoint latency, and violations."""
    snap = result.snapshot
    g = snap.global_stats
    lines = []
    failed = [r for r in result.evaluation.results if not r.passed]
    if result.passed:
        lines.append("All thresholds passed.")
    else:
        lines.append(f"THRESHOLD VIOLATION: {len(failed)} rule(s) failed.")
        for r in failed:
            lines.append(f"  - {r.detail}")

    lines.append(
        f"Requests: {g.count}  errors: {g.error_count} ({g.error_rate * 100:.2f}%)  "
        f"duration: {result.duration_seconds:.1f}s  peak VUs: {result.peak_concurrency}"
    )
    if g.samples:
        lines.append(
            f"Latency: p50 {_ms(g.percentile(50))}, p95 {_ms(g.percentile(95))}, "
            f"p99 {_ms(g.percentile(99))}"
        )
    for key, stats in sorted(snap.per_key.items()):
        lines.append(
            f"  {key.service}.{key.endpoint}: {stats.count} reqs, "
            f"{stats.error_rate * 100:.2f}% errors, p95 {_ms(stats.percentile(95))}"
        )
    if result.abandoned_iterations:
        lines.append(f"Abandoned iterations: {result.abandoned_iterations}")

    unreachable = [name for name, status in result.probes.items() if status != 200]
    if unreachable:
        lines.append("Unhealthy at start: " + ", ".join(unreachable))
    return "\n".join(lines)


def create_event(plan_path: str, base_url: str, result: RunResult, scenarios: List[str]) -> EvidenceEvent:
    """Build an EvidenceEvent with the current UTC timestamp."""
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    g = result.snapshot.global_stats
    return EvidenceEvent(
        ts=ts,
        plan=plan_path,
        base_url=base_url,
        scenarios=scenarios,
        total_requests=g.count,
        error_rate=round(g.error_rate, 4),
        outcome="passed" if result.passed else "thresholds-failed",
    )


def append_event(event: EvidenceEvent, log_path: str) -> None:
    """Append a single evidence event as a JSONL line.

    Creates the file (and parent directories) if it does not exist.
    Never overwrites existing entries.
    """
    parent = os.path.dirname(log_path)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)

    line = json.dumps({
        "ts": event.ts,
        "plan": event.plan,
        "base_url": event.base_url,
        "scenarios": event.scenarios,
        "total_requests": event.total_requests,
        "error_rate": event.error_rate,
        "outcome": event.outcome,
    })

    with open(log_path, "a") as f:
        f.write(line + "\n")


def read_events(log_path: str) -> List[EvidenceEvent]:
    """Read all events from a JSONL evidence log. Malformed lines are skipped."""
    if not os.path.isfile(log_path):
        return []

    events = []
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                continue
            events.append(EvidenceEvent(
                ts=raw.get("ts", ""),
                plan=raw.get("plan", ""),
                base_url=raw.get("base_url", ""),
                scenarios=raw.get("scenarios", []),
                total_requests=raw.get("total_requests", 0),
                error_rate=raw.get("error_rate", 0.0),
                outcome=raw.get("outcome", ""),
            ))
    return events
