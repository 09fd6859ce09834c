"""Stack controller CLI (stackctl).

Usage:
    stackctl plan template.yml --param Version=3.6.0
    stackctl apply template.yml --stack-name nexus --concurrency 8
    stackctl state list --stack-name nexus
    stackctl outputs template.yml

Exit codes:
    0  success
    1  apply finished with failed or aborted actions
    2  invalid configuration, template, parameters or plan (nothing applied)
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .config import DEFAULT_STATE_FILE, Config, ConfigurationError
from .errors import StackError
from .executor import ApplyReport
from .expressions import UNKNOWN
from .logging_setup import setup_logging
from .planner import Action, ActionKind, Plan
from .reconciler import Reconciler
from .state_store import FileStateStore
from .template_loader import load_template

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_INVALID = 2

_KIND_SYMBOLS = {
    ActionKind.CREATE: "+",
    ActionKind.UPDATE: "~",
    ActionKind.REPLACE: "-/+",
    ActionKind.DELETE: "-",
    ActionKind.NOOP: " ",
}


# =============================================================================
# Option helpers
# =============================================================================


def _parse_params(
    ctx: click.Context, param: click.Parameter, values: tuple[str, ...]
) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
        parsed[key] = value
    return parsed


def stack_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by commands that work on a template."""
    decorators = [
        click.argument("template", type=click.Path(exists=True, dir_okay=False, path_type=Path)),
        click.option(
            "--param",
            "-p",
            "params",
            multiple=True,
            callback=_parse_params,
            help="Parameter value as KEY=VALUE (repeatable)",
        ),
        click.option(
            "--stack-name", "-s", help="Stack name (default: STACK_NAME or template name)"
        ),
        click.option("--region", help="Value of AWS::Region (default: STACK_REGION or us-east-1)"),
        click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path)),
        click.option("--remote-file", type=click.Path(dir_okay=False, path_type=Path)),
        click.option("--json", "as_json", is_flag=True, help="Machine-readable output"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _default_stack_name(template: Path) -> str:
    return re.sub(r"[^-a-zA-Z0-9]", "-", template.stem)


def _build_config(template: Path, **overrides: Any) -> Config:
    if not overrides.get("stack_name") and not os.environ.get("STACK_NAME"):
        overrides["stack_name"] = _default_stack_name(template)
    return Config.from_env(**overrides)


def _fail(ctx: click.Context, error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    ctx.exit(EXIT_INVALID)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


# =============================================================================
# Rendering
# =============================================================================


def _format_value(value: Any) -> str:
    if value is UNKNOWN:
        return repr(UNKNOWN)
    return json.dumps(value, default=repr)


def _render_action(action: Action) -> list[str]:
    symbol = _KIND_SYMBOLS[action.kind]
    line = f"  {symbol:>3} {action.kind.value:<8} {action.key} ({action.type})"
    if action.replacement_policy is not None and action.kind == ActionKind.REPLACE:
        line += f" [{action.replacement_policy.value}]"
    if action.kind == ActionKind.DELETE and action.remote_id:
        line += f" id={action.remote_id}"
    lines = [line]
    for change in action.changes:
        marker = " (forces replacement)" if change.requires_replacement else ""
        lines.append(
            f"        {change.path}: {_format_value(change.old)} -> "
            f"{_format_value(change.new)}{marker}"
        )
    return lines


def _render_plan(plan: Plan, stack_name: str, show_noop: bool = False) -> None:
    summary = plan.summary()
    click.echo(
        f"Plan for stack '{stack_name}': "
        + ", ".join(f"{count} {kind}" for kind, count in summary.items())
    )
    for action in plan.actions:
        if action.kind == ActionKind.NOOP and not show_noop:
            continue
        for line in _render_action(action):
            click.echo(line)
    if not plan.has_changes:
        click.echo("No changes. Applied state matches the template.")
    if plan.outputs:
        click.echo("Outputs:")
        for name, value in plan.outputs.items():
            click.echo(f"  {name} = {_format_value(value)}")


def _render_report(report: ApplyReport) -> None:
    if report.skipped and not report.succeeded:
        click.echo(f"Dry run: {len(report.skipped)} actions skipped")
        return
    headline = "Apply complete" if report.success else "Apply incomplete"
    click.echo(
        f"{headline}: {len(report.succeeded)} succeeded, {len(report.failed)} failed, "
        f"{len(report.aborted)} aborted"
    )
    for key in report.failed:
        click.echo(f"  failed   {key}: {report.outcomes[key].error}")
    for key in report.aborted:
        click.echo(f"  aborted  {key}")
    if report.outputs:
        click.echo("Outputs:")
        for name, value in report.outputs.items():
            click.echo(f"  {name} = {_format_value(value)}")


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="stackctl")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
def cli(verbose: bool) -> None:
    """Stack controller CLI (stackctl).

    Plans and applies declarative infrastructure templates against a remote
    resource store, keeping last-applied state between runs.

    \b
    Quick Start:
        stackctl plan template.yml       # Show what would change
        stackctl apply template.yml      # Converge to the template
        stackctl state list              # Show applied resources
    """
    setup_logging(verbose=verbose)


@cli.command()
@stack_options
@click.option("--all", "show_all", is_flag=True, help="Also list unchanged resources")
@click.pass_context
def plan(
    ctx: click.Context,
    template: Path,
    params: dict[str, str],
    stack_name: str | None,
    region: str | None,
    state_file: Path | None,
    remote_file: Path | None,
    as_json: bool,
    show_all: bool,
) -> None:
    """Show the actions that would converge applied state to TEMPLATE."""
    try:
        config = _build_config(
            template,
            stack_name=stack_name,
            region=region,
            state_file=state_file,
            remote_file=remote_file,
        )
        reconciler = Reconciler(config)
        _, result = reconciler.plan(load_template(template), params)
    except (ConfigurationError, StackError) as e:
        _fail(ctx, e)
        return

    if as_json:
        _echo_json(result.to_dict())
    else:
        _render_plan(result, config.stack_name, show_noop=show_all)


@cli.command()
@stack_options
@click.option("--concurrency", "-c", type=int, help="Maximum parallel actions")
@click.option("--dry-run/--no-dry-run", default=None, help="Plan only, skip remote calls")
@click.pass_context
def apply(
    ctx: click.Context,
    template: Path,
    params: dict[str, str],
    stack_name: str | None,
    region: str | None,
    state_file: Path | None,
    remote_file: Path | None,
    as_json: bool,
    concurrency: int | None,
    dry_run: bool | None,
) -> None:
    """Converge applied state to TEMPLATE.

    \b
    Examples:
        stackctl apply nexus.yml -p NexusVersion=3.6.0
        stackctl apply nexus.yml --dry-run
    """
    try:
        config = _build_config(
            template,
            stack_name=stack_name,
            region=region,
            state_file=state_file,
            remote_file=remote_file,
            max_concurrency=concurrency,
            dry_run=dry_run,
        )
        reconciler = Reconciler(config)
        result = asyncio.run(reconciler.apply(load_template(template), params))
    except (ConfigurationError, StackError) as e:
        _fail(ctx, e)
        return

    if as_json:
        _echo_json({"plan": result.plan.to_dict(), "report": result.report.to_dict()})
    else:
        _render_plan(result.plan, config.stack_name)
        _render_report(result.report)

    ctx.exit(EXIT_OK if result.success else EXIT_PARTIAL_FAILURE)


@cli.command()
@stack_options
@click.pass_context
def outputs(
    ctx: click.Context,
    template: Path,
    params: dict[str, str],
    stack_name: str | None,
    region: str | None,
    state_file: Path | None,
    remote_file: Path | None,
    as_json: bool,
) -> None:
    """Show TEMPLATE's output values resolved against applied state."""
    try:
        config = _build_config(
            template,
            stack_name=stack_name,
            region=region,
            state_file=state_file,
            remote_file=remote_file,
        )
        values = Reconciler(config).outputs(load_template(template), params)
    except (ConfigurationError, StackError) as e:
        _fail(ctx, e)
        return

    if as_json:
        _echo_json(values)
        return
    for name, value in values.items():
        click.echo(f"{name} = {_format_value(value)}")


@cli.group()
def state() -> None:
    """Inspect applied state."""
    pass


@state.command("list")
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--stack-name", "-s", help="Only list this stack (default: every stack)")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def state_list(
    ctx: click.Context, state_file: Path | None, stack_name: str | None, as_json: bool
) -> None:
    """List applied resources, grouped by stack."""
    try:
        path = state_file or Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE))
        store = FileStateStore(path)
        stacks = [stack_name] if stack_name else store.list_stacks()
        listing = {stack: store.bind(stack).list_all() for stack in stacks}
    except (ConfigurationError, StackError) as e:
        _fail(ctx, e)
        return
    listing = {stack: entries for stack, entries in listing.items() if entries}

    if as_json:
        _echo_json(
            {
                stack: {name: entry.to_dict() for name, entry in sorted(entries.items())}
                for stack, entries in sorted(listing.items())
            }
        )
        return
    if not listing:
        click.echo("No applied resources")
        return
    for stack in sorted(listing):
        entries = listing[stack]
        click.echo(f"{stack}:")
        for name in sorted(entries):
            entry = entries[name]
            line = f"  {name:<24} {entry.type:<40} {entry.remote_id}"
            if entry.pending_deletion:
                line += f" (pending deletion: {', '.join(entry.pending_deletion)})"
            click.echo(line)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
