"""converge CLI.

Usage:
    converge validate                 # Check definitions without touching state
    converge plan [--refresh]         # Show what apply would do
    converge plan --destroy           # Show what destroy would do
    converge apply [--dry-run]        # Converge the real world to the definitions
    converge destroy                  # Delete everything recorded in state
    converge state list               # List recorded resources
    converge state show ADDRESS       # Show one record
    converge force-unlock             # Remove a stale state lock
    converge serve                    # Continuous reconciliation

Configuration is read from the environment (see ``Config.from_env``);
options given on the command line take precedence.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError
from .diff import ActionType, Plan, PlannedAction
from .main import serve, setup_logging
from .reconciler import (
    EXIT_INVALID_INPUT,
    EXIT_LOCK_HELD,
    INVALID_INPUT_ERRORS,
    ReconcileResult,
    Reconciler,
)
from .state import StateError, StateSnapshot, StateStore

ACTION_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.REPLACE: "-/+",
    ActionType.DELETE: "-",
    ActionType.NO_OP: " ",
}

ACTION_COLORS = {
    ActionType.CREATE: "green",
    ActionType.UPDATE: "yellow",
    ActionType.REPLACE: "magenta",
    ActionType.DELETE: "red",
}


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _reconciler(ctx: click.Context, config: Config | None = None) -> Reconciler:
    # A registry placed in ctx.obj replaces the Azure provider
    return Reconciler(config or _config(ctx), registry=ctx.obj.get("registry"))


def _value(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def format_action(action: PlannedAction) -> list[str]:
    """Human-readable lines for one planned action."""
    symbol = ACTION_SYMBOLS[action.action]
    title = f"{symbol} {action.key}"
    if action.action == ActionType.REPLACE and action.replace_strategy is not None:
        title += f" ({action.replace_strategy.value})"
    elif action.reason and action.action != ActionType.UPDATE:
        title += f" ({action.reason})"
    lines = [title]
    for change in action.changes:
        line = f"      {change.path}: "
        if action.action == ActionType.CREATE:
            line += _value(change.to_dict()["after"])
        else:
            shown = change.to_dict()
            line += f"{_value(shown['before'])} -> {_value(shown['after'])}"
        if change.requires_replace:
            line += "  # forces replacement"
        lines.append(line)
    return lines


def format_summary(plan: Plan) -> str:
    summary = plan.summary()
    return (
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete, "
        f"{summary['no-op']} unchanged."
    )


def _echo_plan(plan: Plan) -> None:
    if not plan.has_changes:
        click.echo("No changes. Infrastructure matches the definitions.")
        return
    for action in plan.changes:
        title, *details = format_action(action)
        click.secho(title, fg=ACTION_COLORS.get(action.action))
        for line in details:
            click.echo(line)
    click.echo(format_summary(plan))


def _finish(ctx: click.Context, result: ReconcileResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        ctx.exit(result.exit_code)

    if result.plan is not None:
        _echo_plan(result.plan)

    if result.report is not None and result.plan is not None and result.plan.has_changes:
        label = "Dry run" if result.report.dry_run else "Apply"
        counts = ", ".join(
            f"{count} {status}" for status, count in result.report.counts().items() if count
        )
        click.echo(f"{label} complete: {counts}")
        for failure in result.report.failures:
            click.secho(f"  {failure.describe_error()}", fg="red", err=True)

    if result.error is not None:
        click.secho(f"Error: {result.error}", fg="red", err=True)
        if result.exit_code == EXIT_LOCK_HELD:
            click.echo("Wait for the other run, or use 'converge force-unlock' if it crashed.")

    ctx.exit(result.exit_code)


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option(
    "--definitions",
    "definitions_path",
    type=click.Path(path_type=Path),
    help="Definitions directory or file (env: DEFINITIONS_PATH)",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="State file (env: STATE_PATH)",
)
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Log output format",
)
@click.option("--verbose", "-v", count=True, help="More logging (-v info, -vv debug)")
@click.pass_context
def cli(
    ctx: click.Context,
    definitions_path: Path | None,
    state_path: Path | None,
    log_format: str,
    verbose: int,
) -> None:
    """converge: desired-state infrastructure reconciler.

    \b
    Quick Start:
        converge validate --definitions ./definitions
        converge plan
        converge apply
    """
    levels = {0: logging.WARNING, 1: logging.INFO}
    # Logs go to stderr so command output stays parseable
    setup_logging(log_format, level=levels.get(verbose, logging.DEBUG), stream=sys.stderr)

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = Config.from_env().with_overrides(
            definitions_path=definitions_path,
            state_path=state_path,
        )
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        ctx.exit(EXIT_INVALID_INPUT)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Check definitions: syntax, references, cycles and resource types."""
    try:
        graph, order = _reconciler(ctx).validate()
    except INVALID_INPUT_ERRORS as e:
        click.secho(f"Invalid: {e}", fg="red", err=True)
        ctx.exit(EXIT_INVALID_INPUT)
    click.secho(f"Valid: {len(graph)} resources", fg="green")
    for address in order:
        click.echo(f"  {address}")


@cli.command()
@click.option("--destroy", is_flag=True, help="Plan the deletion of everything in state")
@click.option("--refresh", is_flag=True, help="Re-read recorded resources first")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def plan(ctx: click.Context, destroy: bool, refresh: bool, as_json: bool) -> None:
    """Show the actions apply (or destroy) would take. State is not modified."""
    result = asyncio.run(_reconciler(ctx).plan(destroy=destroy, refresh=refresh))
    _finish(ctx, result, as_json)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Report the plan, invoke nothing")
@click.option("--refresh", is_flag=True, help="Re-read recorded resources first")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    help="Maximum parallel provider operations (env: MAX_CONCURRENCY)",
)
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def apply(
    ctx: click.Context,
    dry_run: bool,
    refresh: bool,
    concurrency: int | None,
    as_json: bool,
) -> None:
    """Converge the real world to the definitions."""
    try:
        config = _config(ctx).with_overrides(
            max_concurrency=concurrency,
            dry_run=True if dry_run else None,
        )
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        ctx.exit(EXIT_INVALID_INPUT)
    result = asyncio.run(_reconciler(ctx, config).apply(refresh=refresh))
    _finish(ctx, result, as_json)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Report the plan, invoke nothing")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def destroy(ctx: click.Context, dry_run: bool, as_json: bool) -> None:
    """Delete every resource recorded in state, dependents first."""
    result = asyncio.run(_reconciler(ctx).destroy(dry_run=True if dry_run else None))
    _finish(ctx, result, as_json)


@cli.command("serve")
@click.pass_context
def serve_command(ctx: click.Context) -> None:
    """Reconcile continuously until SIGTERM/SIGINT."""
    root_logger = logging.getLogger()
    root_logger.setLevel(min(root_logger.level, logging.INFO))
    ctx.exit(asyncio.run(serve(_config(ctx))))


@cli.command("force-unlock")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def force_unlock(ctx: click.Context, yes: bool) -> None:
    """Remove the state lock left behind by a crashed run."""
    store = StateStore(_config(ctx).state_path)
    if not store.lock_path.exists():
        click.echo("State is not locked.")
        return
    info = store.lock_info()
    if info is not None:
        operation = f" for {info.operation}" if info.operation else ""
        click.echo(
            f"Lock held by {info.holder} (pid {info.pid}) since {info.created_at}{operation}"
        )
    if not yes:
        click.confirm("Remove the lock? Only do this if that run is gone", abort=True)
    store.force_unlock()
    click.secho("Lock removed.", fg="green")


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect the state file."""
    pass


def _snapshot(ctx: click.Context) -> StateSnapshot:
    try:
        return StateStore(_config(ctx).state_path).read()
    except StateError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        ctx.exit(1)


@state.command("list")
@click.pass_context
def state_list(ctx: click.Context) -> None:
    """List recorded resources."""
    snapshot = _snapshot(ctx)
    for address in snapshot.addresses:
        record = snapshot.resources[address]
        marker = " (tainted)" if record.tainted else ""
        if record.deposed:
            marker += f" ({len(record.deposed)} deposed)"
        click.echo(f"{address}{marker}")


@state.command("show")
@click.argument("address")
@click.pass_context
def state_show(ctx: click.Context, address: str) -> None:
    """Show one record as JSON."""
    record = _snapshot(ctx).get(address)
    if record is None:
        click.secho(f"No record for {address}", fg="red", err=True)
        ctx.exit(1)
    click.echo(json.dumps(record.model_dump(mode="json"), indent=2, sort_keys=True))


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
