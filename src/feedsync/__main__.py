"""Entry point for ``python -m feedsync``: CLI, API server or standalone worker."""

import typer

from feedsync.cli import app as cli_app
from feedsync.config import get_config
from feedsync.dependencies import build_resources

app = typer.Typer(
    help="Feed sync tool - CLI or API mode.",
    no_args_is_help=False,
)
app.add_typer(cli_app, name="", help="Feed import and syndication commands.")


def _run_worker() -> None:
    config = get_config()
    resources = build_resources(config)
    try:
        resources.worker().run_forever()
    finally:
        resources.close()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    mode: str = typer.Option(
        "cli",
        "--mode",
        help="Run mode: cli (default), api or worker",
    ),
) -> None:
    """Feed sync tool - CLI or API mode."""
    if mode == "api":
        import uvicorn

        config = get_config()
        uvicorn.run(
            "feedsync.api:app",
            host=config.api_host,
            port=config.api_port,
            reload=False,
        )
        raise typer.Exit()

    if mode == "worker":
        _run_worker()
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


if __name__ == "__main__":
    app()
