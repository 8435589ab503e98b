"""Budget commands: load, set-limit, set-alerts, status, check, retire."""

import sys

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from costgate.cli.common import build_pipeline, parse_scope
from costgate.config.budgets import load_budget_config, apply_budget_config
from costgate.core.estimator import EstimatedUsage
from costgate.core.gate import Deny
from costgate.core.models import AlertConfig
from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeChain
from costgate.core.severity import Thresholds
from costgate.storage.cache import SpendCacheUnavailableError
from costgate.utils.helpers import format_cost, format_percentage, severity_style

console = Console()

WINDOW_CHOICES = [window.value for window in BudgetWindow]


@click.group()
def budget():
    """Manage scopes, limits and alert thresholds."""


@budget.command()
@click.argument("path", type=click.Path(exists=True))
@click.pass_context
def load(ctx, path):
    """Load scopes, limits and alert thresholds from a YAML file.

    Examples:

        \b
        costgate budget load budgets.yaml
    """
    try:
        config = load_budget_config(path)
    except ValidationError as e:
        click.echo(f"Error: invalid budget file {path}:\n{e}", err=True)
        sys.exit(1)

    pipeline = build_pipeline(ctx)
    try:
        scopes = apply_budget_config(config, pipeline.ledger)

        table = Table(title="Configured Budgets", show_header=True, header_style="bold cyan")
        table.add_column("Scope", style="green")
        table.add_column("Parent", style="dim")
        table.add_column("Limits", justify="right", style="yellow")
        for scope in scopes:
            limits = ", ".join(
                f"{limit.window.value}={format_cost(limit.amount, limit.currency)}"
                for limit in pipeline.ledger.limits_for(scope)
            )
            table.add_row(scope.key, scope.parent.key if scope.parent else "-", limits or "-")

        console.print(table)
    finally:
        pipeline.close()


@budget.command("set-limit")
@click.argument("scope")
@click.argument("window", type=click.Choice(WINDOW_CHOICES))
@click.argument("amount", type=float)
@click.option("--currency", default="USD", help="Currency of the limit (default: USD)")
@click.option("--parent", help="Parent scope as kind:identifier")
@click.pass_context
def set_limit(ctx, scope, window, amount, currency, parent):
    """Set the WINDOW limit of SCOPE (kind:identifier) to AMOUNT.

    Examples:

        \b
        costgate budget set-limit project:search daily 10
        costgate budget set-limit request_owner:alice per_request 0.5 --parent project:search
    """
    target = parse_scope(scope)
    if parent:
        parent_scope = parse_scope(parent)
        try:
            target = BudgetScope(target.kind, target.identifier, parent=parent_scope)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    pipeline = build_pipeline(ctx)
    try:
        limit = pipeline.ledger.set_limit(target, BudgetWindow(window), amount, currency)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        pipeline.close()

    console.print(
        f"[green]✓[/green] {limit.scope} {limit.window.value} limit set to "
        f"{format_cost(limit.amount, limit.currency)}"
    )


@budget.command("set-alerts")
@click.argument("scope")
@click.option("--warning", type=float, default=75.0, help="Warning threshold in percent (default: 75)")
@click.option("--critical", type=float, default=90.0, help="Critical threshold in percent (default: 90)")
@click.option(
    "--cooldown", type=float, default=300.0,
    help="Seconds between repeated 'exceeded' alerts (default: 300)"
)
@click.option("--enabled/--disabled", default=True, help="Enable or disable alerts for the scope")
@click.pass_context
def set_alerts(ctx, scope, warning, critical, cooldown, enabled):
    """Configure alert thresholds for SCOPE (kind:identifier)."""
    target = parse_scope(scope)
    try:
        config = AlertConfig(
            thresholds=Thresholds(warning=warning, critical=critical),
            renotify_cooldown_seconds=cooldown,
            enabled=enabled,
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    pipeline = build_pipeline(ctx)
    try:
        pipeline.ledger.set_alert_config(target, config)
    finally:
        pipeline.close()

    state = "enabled" if enabled else "disabled"
    console.print(
        f"[green]✓[/green] Alerts for {target} {state}: warning {warning:g}%, "
        f"critical {critical:g}%, cooldown {cooldown:g}s"
    )


@budget.command()
@click.argument("scope")
@click.pass_context
def status(ctx, scope):
    """Show spend against every limit of SCOPE (kind:identifier)."""
    target = parse_scope(scope)
    pipeline = build_pipeline(ctx)
    try:
        statuses = pipeline.ledger.status(target)
        config = pipeline.ledger.get_alert_config(target)
    finally:
        pipeline.close()

    table = Table(title=f"Budget Status: {target}", show_header=True, header_style="bold cyan")
    table.add_column("Window", style="cyan")
    table.add_column("Bucket", style="dim")
    table.add_column("Spend", justify="right", style="yellow")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")

    for item in statuses:
        style = severity_style(
            item.percentage, config.thresholds.warning, config.thresholds.critical
        )
        table.add_row(
            item.window.value,
            item.bucket,
            format_cost(item.spend, item.currency),
            format_cost(item.limit, item.currency),
            f"[{style}]{format_percentage(item.percentage)}[/{style}]",
        )

    console.print(table)


@budget.command()
@click.option("--owner", help="Request owner identifier")
@click.option("--project", help="Project identifier")
@click.option("--organization", help="Organization identifier")
@click.option("--provider", "-p", default="openai", help="Provider name (default: openai)")
@click.option("--model", "-m", required=True, help="Model name")
@click.option("--prompt", help="Prompt text used to estimate input units")
@click.option("--input-units", type=int, help="Known input units")
@click.option("--max-output-units", type=int, help="Upper bound on output units")
@click.pass_context
def check(ctx, owner, project, organization, provider, model, prompt, input_units, max_output_units):
    """Run the pre-flight check for a hypothetical request.

    Exits with status 1 when the request would be denied.

    Examples:

        \b
        costgate budget check --project search --organization acme -m gpt-4o --prompt "Hello"
    """
    try:
        chain = ScopeChain.of(owner=owner, project=project, organization=organization)
    except ValueError as e:
        click.echo(f"Error: {e}. Pass at least one of --owner, --project, --organization.", err=True)
        sys.exit(1)

    usage = EstimatedUsage(
        provider=provider,
        model=model,
        input_units=input_units,
        max_output_units=max_output_units,
        prompt=prompt,
    )

    pipeline = build_pipeline(ctx)
    try:
        try:
            pipeline.warm()
        except SpendCacheUnavailableError as e:
            click.echo(f"Warning: {e}", err=True)
        decision = pipeline.check(chain, usage)
    finally:
        pipeline.close()

    if isinstance(decision, Deny):
        console.print(f"[red]✗ Denied:[/red] {decision.message}")
        sys.exit(1)

    note = " [yellow](degraded: enforcement unavailable)[/yellow]" if decision.degraded else ""
    console.print(
        f"[green]✓ Allowed[/green] - estimated cost {format_cost(decision.estimated_cost)}{note}"
    )


@budget.command()
@click.pass_context
def retire(ctx):
    """Retire spend buckets older than the current day and month."""
    pipeline = build_pipeline(ctx)
    try:
        count = pipeline.ledger.retire_stale_buckets()
    finally:
        pipeline.close()
    console.print(f"[green]✓[/green] Retired {count} stale spend bucket(s)")
