"""stackctl command line.

Usage:
    stackctl plan template.yaml --stack audit -p TrailName=main
    stackctl apply template.yaml --stack audit --parallelism 8 --timeout 10m
    stackctl destroy --stack audit
    stackctl outputs --stack audit --output json

Exit codes:
    plan     0 no changes, 1 changes present, 2 error
    apply    0 success, 1 partial failure (rolled back or not), 2 fatal error
    destroy  same as apply
    outputs  0 success, 2 error
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError, ProviderKind
from .diff import ChangeAction, ChangeSet
from .errors import StackError
from .reconciler import ReconcileResult, Reconciler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CHANGES = 1
EXIT_PARTIAL = 1
EXIT_ERROR = 2

DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

ACTION_SYMBOLS = {
    ChangeAction.CREATE: "+",
    ChangeAction.UPDATE: "~",
    ChangeAction.REPLACE: "-/+",
    ChangeAction.DELETE: "-",
}


def parse_duration(value: str) -> float:
    """Parse ``500ms``, ``30s``, ``5m``, ``1h`` or bare seconds.

    Raises:
        ValueError: If the value is not a positive duration.
    """
    match = DURATION_PATTERN.match(value)
    if match is None:
        raise ValueError(f"invalid duration: {value!r}")
    seconds = float(match.group(1)) * DURATION_UNITS[match.group(2) or "s"]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


class DurationType(click.ParamType):
    name = "duration"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> float:
        if isinstance(value, int | float):
            return float(value)
        try:
            return parse_duration(str(value))
        except ValueError as e:
            self.fail(str(e), param, ctx)


def parse_overrides(values: tuple[str, ...]) -> dict[str, str]:
    """Turn ``KEY=VALUE`` pairs into a mapping."""
    overrides: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--parameter")
        overrides[key.strip()] = value
    return overrides


# =============================================================================
# Shared options
# =============================================================================


def stack_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--stack", "stack_name", envvar="STACKCTL_STACK_NAME", help="Stack name."),
        click.option(
            "--state-dir",
            type=click.Path(file_okay=False, path_type=Path),
            help="Directory for state and lease files.",
        ),
        click.option(
            "--provider",
            type=click.Choice([p.value for p in ProviderKind]),
            help="Provider collaborator.",
        ),
        click.option(
            "--output",
            "output_format",
            type=click.Choice(["text", "json"]),
            default="text",
            show_default=True,
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def execution_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--parallelism", type=click.IntRange(min=1), help="Concurrent operations."),
        click.option("--timeout", type=DurationType(), help="Per-call deadline, e.g. 30s, 5m."),
        click.option(
            "--no-rollback", is_flag=True, default=False, help="Keep committed changes on failure."
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def template_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.argument("template", type=click.Path(exists=True, dir_okay=False, path_type=Path)),
        click.option(
            "-p",
            "--parameter",
            "parameters",
            multiple=True,
            metavar="KEY=VALUE",
            help="Parameter override (repeatable).",
        ),
        click.option("--refresh", is_flag=True, default=False, help="Re-read resources first."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_config(stack_name: str | None, **overrides: Any) -> Config:
    """Environment configuration with command-line overrides applied."""
    config = Config.from_env(stack_name=stack_name)
    changes = {key: value for key, value in overrides.items() if value is not None}
    if "provider" in changes:
        changes["provider"] = ProviderKind(changes["provider"])
    return dataclasses.replace(config, **changes) if changes else config


async def _with_cancellation(
    run: Callable[[asyncio.Event], Awaitable[ReconcileResult]],
) -> ReconcileResult:
    """Run with SIGINT/SIGTERM mapped to the cancellation event."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.warning("Received signal, cancelling run", extra={"signal": sig.name})
        cancel_event.set()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Signal handlers unavailable", extra={"signal": sig.name})
            continue
        installed.append(sig)
    try:
        return await run(cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


# =============================================================================
# Rendering
# =============================================================================


def render_change_set(stack_name: str, change_set: ChangeSet) -> str:
    lines = [f"Stack: {stack_name}"]
    if change_set.is_empty:
        lines.append("No changes. Applied state matches the template.")
        return "\n".join(lines)

    for change in change_set:
        symbol = ACTION_SYMBOLS[change.action]
        line = f"  {symbol:>3} {change.action.value:<8} {change.logical_id} ({change.resource_type})"
        if change.action == ChangeAction.UPDATE:
            line += f" [{', '.join(change.changed_properties)}]"
        elif change.action == ChangeAction.REPLACE:
            line += f" [{', '.join(change.replacement_reasons)}] {change.strategy.value if change.strategy else ''}"
        lines.append(line.rstrip())

    counts = change_set.counts()
    lines.append(
        f"Plan: {counts['Create']} to create, {counts['Update']} to update, "
        f"{counts['Replace']} to replace, {counts['Delete']} to delete."
    )
    return "\n".join(lines)


def emit(result: ReconcileResult, output_format: str) -> None:
    if output_format == "json":
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    click.echo(render_change_set(result.stack_name, result.change_set))
    if result.error is not None:
        click.echo(f"Error: {result.error}", err=True)
        return
    if result.action.value != "plan":
        click.echo(f"{result.action.value.capitalize()} complete: {result.changes_applied} applied.")
    for name, value in result.outputs.items():
        click.echo(f"  {name} = {value}")


def _apply_exit_code(result: ReconcileResult) -> int:
    if result.success:
        return EXIT_OK
    return EXIT_PARTIAL if result.partial_failure else EXIT_ERROR


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="text",
    show_default=True,
    envvar="STACKCTL_LOG_FORMAT",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    envvar="STACKCTL_LOG_LEVEL",
)
def cli(log_format: str, log_level: str) -> None:
    """Declarative stack reconciler."""
    from .main import setup_logging

    setup_logging(log_format=log_format, level=log_level.upper())


@cli.command()
@template_options
@stack_options
def plan(
    template: Path,
    parameters: tuple[str, ...],
    refresh: bool,
    stack_name: str | None,
    state_dir: Path | None,
    provider: str | None,
    output_format: str,
) -> None:
    """Show the change set without applying it."""
    try:
        config = build_config(
            stack_name, state_dir=state_dir, provider=provider, refresh=refresh or None
        )
        overrides = parse_overrides(parameters)
        reconciler = Reconciler(config)
    except (ConfigurationError, StackError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR) from e

    result = asyncio.run(reconciler.plan(template, overrides))
    emit(result, output_format)
    if not result.success:
        raise SystemExit(EXIT_ERROR)
    raise SystemExit(EXIT_CHANGES if result.has_changes else EXIT_OK)


@cli.command()
@template_options
@stack_options
@execution_options
def apply(
    template: Path,
    parameters: tuple[str, ...],
    refresh: bool,
    stack_name: str | None,
    state_dir: Path | None,
    provider: str | None,
    output_format: str,
    parallelism: int | None,
    timeout: float | None,
    no_rollback: bool,
) -> None:
    """Apply the template to the stack."""
    try:
        config = build_config(
            stack_name,
            state_dir=state_dir,
            provider=provider,
            refresh=refresh or None,
            parallelism=parallelism,
            operation_timeout_seconds=timeout,
            rollback_on_failure=False if no_rollback else None,
        )
        overrides = parse_overrides(parameters)
        reconciler = Reconciler(config)
    except (ConfigurationError, StackError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR) from e

    result = asyncio.run(
        _with_cancellation(lambda event: reconciler.apply(template, overrides, cancel_event=event))
    )
    emit(result, output_format)
    raise SystemExit(_apply_exit_code(result))


@cli.command()
@stack_options
@execution_options
def destroy(
    stack_name: str | None,
    state_dir: Path | None,
    provider: str | None,
    output_format: str,
    parallelism: int | None,
    timeout: float | None,
    no_rollback: bool,
) -> None:
    """Delete every resource recorded for the stack."""
    try:
        config = build_config(
            stack_name,
            state_dir=state_dir,
            provider=provider,
            parallelism=parallelism,
            operation_timeout_seconds=timeout,
            rollback_on_failure=False if no_rollback else None,
        )
        reconciler = Reconciler(config)
    except (ConfigurationError, StackError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR) from e

    result = asyncio.run(_with_cancellation(lambda event: reconciler.destroy(cancel_event=event)))
    emit(result, output_format)
    raise SystemExit(_apply_exit_code(result))


@cli.command()
@stack_options
def outputs(
    stack_name: str | None,
    state_dir: Path | None,
    provider: str | None,
    output_format: str,
) -> None:
    """Print the outputs recorded by the last apply."""
    try:
        config = build_config(stack_name, state_dir=state_dir, provider=provider)
        values = Reconciler(config).outputs()
    except (ConfigurationError, StackError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR) from e

    if output_format == "json":
        click.echo(json.dumps(values, indent=2, default=str))
    else:
        for name, value in values.items():
            click.echo(f"{name} = {value}")
