"""Shared helpers for CLI commands."""

import sys

import click

from costgate.core.scopes import BudgetScope
from costgate.pipeline.runtime import CostPipeline


def build_pipeline(ctx: click.Context) -> CostPipeline:
    """Pipeline for the settings on the context; the bus is not started."""
    settings = ctx.obj.get("settings")
    try:
        return CostPipeline.from_settings(settings)
    except Exception as e:
        click.echo(f"Error initializing components: {e}", err=True)
        sys.exit(1)


def parse_scope(value: str) -> BudgetScope:
    """Parse a ``kind:identifier`` argument, exiting with a message on bad input."""
    try:
        return BudgetScope.parse(value)
    except ValueError as e:
        click.echo(
            f"Error: {e}. Kinds are request_owner, project and organization.",
            err=True,
        )
        sys.exit(1)
