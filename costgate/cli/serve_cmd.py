"""CLI command to start the CostGate HTTP service."""

import click

from costgate.cli.common import build_pipeline


@click.command()
@click.option("--port", default=8080, type=int, help="Port to listen on (default: 8080)")
@click.option("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
@click.pass_context
def serve(ctx, port, host):
    """Start the CostGate HTTP service.

    \b
    Quickstart:
        costgate budget load budgets.yaml
        costgate serve --port 8080
        curl -X POST localhost:8080/v1/check -d '{"scope": {"project": "search"}, ...}'
    """
    import uvicorn

    from costgate.server.app import create_app

    settings = ctx.obj.get("settings")
    pipeline = build_pipeline(ctx)
    app = create_app(pipeline)

    click.echo("CostGate - budget enforcement service")
    click.echo(f"  Database:        {pipeline.db.url}")
    click.echo(f"  Failure policy:  {settings.enforcement_failure_policy}")
    click.echo(f"  Gate timeout:    {settings.enforcement_timeout_ms:g} ms")
    click.echo(f"  Listening on:    http://{host}:{port}")
    click.echo("")

    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
