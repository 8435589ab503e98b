"""Report, alert history and dead-letter commands for CostGate CLI."""

import click
from rich.console import Console
from rich.table import Table

from costgate.cli.common import build_pipeline, parse_scope
from costgate.utils.helpers import format_cost, format_percentage, format_units, truncate_text

console = Console()


@click.command()
@click.option(
    "--granularity", "-g",
    type=click.Choice(["hour", "day"]),
    default="day",
    help="Rollup granularity (default: day)"
)
@click.option(
    "--dimension", "-d",
    type=click.Choice(["provider", "model", "scope"]),
    default="provider",
    help="Group by provider, model or scope (default: provider)"
)
@click.option("--start", help="First bucket, e.g. 2025-01-01 (or 2025-01-01T00 for hours)")
@click.option("--end", help="Last bucket, inclusive")
@click.option("--by-bucket", is_flag=True, help="Show one row per bucket instead of totals")
@click.pass_context
def report(ctx, granularity, dimension, start, end, by_bucket):
    """Show spend rollups.

    Examples:

        \b
        # Total spend per model
        costgate report --dimension model

        \b
        # Daily spend per scope in January
        costgate report -d scope --by-bucket --start 2025-01-01 --end 2025-01-31
    """
    pipeline = build_pipeline(ctx)
    try:
        if by_bucket:
            rows = pipeline.analytics.summary(granularity, dimension, start=start, end=end)
        else:
            totals = pipeline.analytics.totals(dimension, start=start, end=end, granularity=granularity)
    finally:
        pipeline.close()

    table = Table(
        title=f"Spend by {dimension} ({granularity})", show_header=True, header_style="bold cyan"
    )
    if by_bucket:
        table.add_column("Bucket", style="dim")
    table.add_column(dimension.capitalize(), style="green")
    table.add_column("Requests", justify="right")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cost", justify="right", style="yellow")

    if by_bucket:
        if not rows:
            console.print("[yellow]No usage recorded.[/yellow]")
            return
        for row in rows:
            table.add_row(
                row.bucket, row.value, format_units(row.request_count),
                format_units(row.input_units), format_units(row.output_units),
                format_cost(row.cost),
            )
    else:
        if not totals:
            console.print("[yellow]No usage recorded.[/yellow]")
            return
        for value, item in totals.items():
            table.add_row(
                value, format_units(item.request_count),
                format_units(item.input_units), format_units(item.output_units),
                format_cost(item.cost),
            )

    console.print(table)


@click.command("dead-letters")
@click.option("--limit", "-n", type=int, default=20, help="Number of entries to show (default: 20)")
@click.option("--consumer", "-c", help="Filter by consumer name")
@click.pass_context
def dead_letters(ctx, limit, consumer):
    """Show events that no consumer could process."""
    pipeline = build_pipeline(ctx)
    try:
        items = pipeline.ledger.list_dead_letters(limit=limit, consumer=consumer)
    finally:
        pipeline.close()

    if not items:
        console.print("[green]No dead letters.[/green]")
        return

    table = Table(
        title=f"Dead Letters (showing {len(items)})", show_header=True, header_style="bold cyan"
    )
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Key")
    table.add_column("Consumer", style="green")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")

    for item in items:
        table.add_row(
            item.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            item.event_type,
            item.key,
            item.consumer,
            str(item.attempts),
            truncate_text(item.error, 60),
        )

    console.print(table)


SEVERITY_STYLES = {"warning": "yellow", "critical": "red", "exceeded": "bold red"}


@click.command()
@click.option("--scope", "-s", "scope_key", help="Only alerts for this scope, e.g. project:search")
@click.option(
    "--window", "-w",
    type=click.Choice(["daily", "monthly"]),
    help="Only alerts for this budget window"
)
@click.option("--limit", "-n", type=int, default=20, help="Number of alerts to show (default: 20)")
@click.pass_context
def alerts(ctx, scope_key, window, limit):
    """Show budget alerts that were sent, newest first."""
    scope = parse_scope(scope_key) if scope_key else None
    pipeline = build_pipeline(ctx)
    try:
        items = pipeline.ledger.list_alerts(scope=scope, window=window, limit=limit)
        counts = pipeline.ledger.count_alerts(scope=scope)
    finally:
        pipeline.close()

    if not items:
        console.print("[green]No alerts sent.[/green]")
        return

    table = Table(
        title=f"Budget Alerts (showing {len(items)})", show_header=True, header_style="bold cyan"
    )
    table.add_column("Time", style="dim")
    table.add_column("Scope", style="green")
    table.add_column("Window")
    table.add_column("Severity")
    table.add_column("Spend", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")

    for item in items:
        label = item.severity.label
        if item.renotification:
            label += " (repeat)"
        table.add_row(
            item.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            item.scope.key,
            f"{item.budget_type.value} {item.bucket}",
            f"[{SEVERITY_STYLES.get(item.severity.label, 'white')}]{label}[/]",
            format_cost(item.current_spend),
            format_cost(item.limit),
            format_percentage(item.percentage),
        )

    console.print(table)
    console.print(
        "Totals: " + ", ".join(f"{severity.label} {count}" for severity, count in counts.items())
    )
