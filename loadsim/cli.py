"""CLI entry point for running load plans against the target services."""

import asyncio
import signal
import sys

import click
import structlog

from loadsim import coordinator
from loadsim.errors import PlanValidationError
from loadsim.loader import load_plan
from loadsim.logging_config import setup_logging
from loadsim.report import append_event, create_event, render_text, write_summary

logger = structlog.get_logger()

# Three-state exit codes so CI can tell "thresholds failed" from "bad plan".
EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2


@click.group()
def main():
    """loadsim -- drive staged virtual-user load and judge it against thresholds."""


@main.command()
@click.option(
    "--plan",
    "plan_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a run plan file (YAML or JSON).",
)
@click.option(
    "--base-url",
    envvar="BASE_URL",
    default=None,
    help="Target gateway URL. Overrides the plan's base_url.",
)
@click.option(
    "--out",
    default=None,
    type=click.Path(),
    help="Optional output path for the JSON run summary.",
)
@click.option(
    "--log",
    "log_path",
    default=None,
    type=click.Path(),
    help="Optional path to the evidence log (JSONL). Appends an entry when provided.",
)
@click.option("--seed", type=int, default=None, help="Seed for scenario selection and think time.")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.option("--json-logs", is_flag=True, help="Emit structured logs as JSON lines.")
def run(plan_path, base_url, out, log_path, seed, log_level, json_logs):
    """Execute a run plan and exit non-zero if any threshold fails."""
    setup_logging(log_level, json_logs)
    try:
        plan = load_plan(plan_path, base_url=base_url)
    except PlanValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    if seed is not None:
        plan.options.seed = seed

    result = asyncio.run(_run_with_signals(plan))

    click.echo(render_text(result))
    if out:
        write_summary(result, out)
        click.echo(f"Summary written to {out}")
    if log_path:
        event = create_event(
            plan_path=plan_path,
            base_url=plan.base_url,
            result=result,
            scenarios=[s.name for s in plan.scenarios],
        )
        append_event(event, log_path)
        click.echo(f"Evidence logged to {log_path}")

    sys.exit(EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH)


@main.command()
@click.option(
    "--plan",
    "plan_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a run plan file (YAML or JSON).",
)
def validate(plan_path):
    """Check a run plan and print its stages, scenarios, and thresholds."""
    try:
        plan = load_plan(plan_path)
    except PlanValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    click.echo(f"Plan OK: {plan_path}")
    click.echo(f"Target: {plan.base_url}")
    click.echo(f"Stages ({plan.total_duration_seconds:.0f}s total):")
    for st in plan.stages:
        click.echo(f"  - {st.duration_seconds:.0f}s at {st.target} VUs")
    click.echo("Scenarios:")
    for sc in plan.scenarios:
        click.echo(f"  - {sc.name} (weight {sc.weight:g}, {len(sc.steps)} steps)")
    click.echo("Thresholds:")
    for rule in plan.thresholds:
        click.echo(f"  - {rule.source}")


async def _run_with_signals(plan):
    loop = asyncio.get_running_loop()

    def hook(coord):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, coord.stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("signal_handler_unavailable", signal=sig.name)

    return await coordinator.run_plan(plan, coordinator_hook=hook)


if __name__ == "__main__":
    main()
