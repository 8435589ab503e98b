"""Main CLI entry point for CostGate."""

import logging

import click

from costgate import __version__
from costgate.config.settings import Settings


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(exists=True),
    help="Path to configuration file"
)
@click.option(
    "--log-level",
    default=None,
    help="Log level (DEBUG, INFO, WARNING, ERROR); overrides the configured level"
)
@click.pass_context
def cli(ctx, config, log_level):
    """CostGate - budget enforcement and cost accounting for AI requests.

    Check requests against hierarchical budgets before they are sent and
    account for their real cost afterwards.
    """
    # Ensure context object exists
    ctx.ensure_object(dict)

    # Load settings
    if config:
        settings = Settings.load_from_file(config)
    else:
        settings = Settings()
    ctx.obj["settings"] = settings

    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# Import and register commands
from costgate.cli.serve_cmd import serve
from costgate.cli.budget_cmd import budget
from costgate.cli.pricing_cmd import pricing
from costgate.cli.report_cmd import report, alerts, dead_letters

cli.add_command(serve)
cli.add_command(budget)
cli.add_command(pricing)
cli.add_command(report)
cli.add_command(alerts)
cli.add_command(dead_letters)


if __name__ == "__main__":
    cli()
