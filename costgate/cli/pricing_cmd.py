"""Pricing commands: list, resolve, add."""

import sys
from datetime import date

import click
from rich.console import Console
from rich.table import Table

from costgate.cli.common import build_pipeline
from costgate.core.pricing import PriceEntry, PricingError, PricingUnit
from costgate.core.scopes import utcnow

console = Console()

UNIT_CHOICES = [unit.value for unit in PricingUnit]


def _parse_date(ctx, param, value):
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"expected YYYY-MM-DD, got {value!r}")


@click.group()
def pricing():
    """Inspect and extend model pricing."""


@pricing.command("list")
@click.option("--provider", "-p", help="Only show this provider")
@click.pass_context
def list_prices(ctx, provider):
    """List static defaults and dynamically stored prices."""
    pipeline = build_pipeline(ctx)
    try:
        static_table = pipeline.resolver.static_table
        stored = pipeline.pricing_store.list_entries(provider) if pipeline.pricing_store else []
    finally:
        pipeline.close()

    table = Table(title="Model Pricing", show_header=True, header_style="bold cyan")
    table.add_column("Provider", style="cyan")
    table.add_column("Model", style="green")
    table.add_column("Unit", style="dim")
    table.add_column("Input", justify="right", style="yellow")
    table.add_column("Output", justify="right", style="yellow")
    table.add_column("Effective", style="dim")
    table.add_column("Source")

    for entry in stored:
        table.add_row(
            entry.provider, entry.model, entry.unit.value,
            f"{entry.input_rate:g}", f"{entry.output_rate:g}",
            entry.effective_date.isoformat(), "[bold]dynamic[/bold]",
        )

    providers = [provider.lower()] if provider else static_table.list_providers()
    for name in providers:
        for model in static_table.list_supported_models(name):
            entry = static_table.get(name, model)
            table.add_row(
                entry.provider, entry.model, entry.unit.value,
                f"{entry.input_rate:g}", f"{entry.output_rate:g}",
                entry.effective_date.isoformat(), "static",
            )

    console.print(table)


@pricing.command()
@click.argument("provider")
@click.argument("model")
@click.option("--as-of", callback=_parse_date, help="Resolve the price effective on this date")
@click.option("--unit", type=click.Choice(UNIT_CHOICES), help="Express rates in this unit")
@click.pass_context
def resolve(ctx, provider, model, as_of, unit):
    """Show which price the resolver picks for PROVIDER/MODEL.

    Examples:

        \b
        costgate pricing resolve openai gpt-4o --unit 1m_tokens
    """
    pipeline = build_pipeline(ctx)
    try:
        entry, tier = pipeline.resolver.resolve(provider, model, as_of=as_of)
        if unit:
            entry = pipeline.resolver.normalize(entry, PricingUnit(unit))
    except PricingError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        pipeline.close()

    tier_style = {"dynamic": "green", "static": "cyan", "fallback": "yellow"}[tier.value]
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan", width=16)
    table.add_column("Value", style="bold")
    table.add_row("Model", f"{entry.provider}/{entry.model}")
    table.add_row("Tier", f"[{tier_style}]{tier.value}[/{tier_style}]")
    table.add_row("Unit", entry.unit.value)
    table.add_row("Input rate", f"{entry.input_rate:g} {entry.currency}")
    table.add_row("Output rate", f"{entry.output_rate:g} {entry.currency}")
    table.add_row("Effective", entry.effective_date.isoformat())
    console.print(table)


@pricing.command()
@click.argument("provider")
@click.argument("model")
@click.option("--input", "input_rate", type=float, required=True, help="Input rate per unit")
@click.option("--output", "output_rate", type=float, required=True, help="Output rate per unit")
@click.option(
    "--unit", type=click.Choice(UNIT_CHOICES), default=PricingUnit.PER_1K_TOKENS.value,
    help="Pricing unit (default: 1k_tokens)"
)
@click.option("--currency", default="USD", help="Currency (default: USD)")
@click.option(
    "--effective-date", callback=_parse_date,
    help="First day the price applies (default: today)"
)
@click.pass_context
def add(ctx, provider, model, input_rate, output_rate, unit, currency, effective_date):
    """Store a new price for PROVIDER/MODEL.

    Stored prices are never edited; a later effective date supersedes earlier ones.
    """
    try:
        entry = PriceEntry(
            provider=provider.lower(),
            model=model,
            unit=PricingUnit(unit),
            input_rate=input_rate,
            output_rate=output_rate,
            currency=currency,
            effective_date=effective_date or utcnow().date(),
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    pipeline = build_pipeline(ctx)
    try:
        pipeline.pricing_store.add_entry(entry)
        pipeline.resolver.invalidate(entry.provider, entry.model)
    except PricingError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        pipeline.close()

    console.print(
        f"[green]✓[/green] Stored {entry.provider}/{entry.model}: input {input_rate:g}, "
        f"output {output_rate:g} {currency} per {entry.unit.value}, "
        f"effective {entry.effective_date.isoformat()}"
    )
