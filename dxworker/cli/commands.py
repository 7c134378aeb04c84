"""CLI entry point for the DistributeX worker."""

import asyncio

import typer
from loguru import logger
from rich.console import Console

from dxworker import __logo__, __version__

app = typer.Typer(
    name="dxworker",
    help=f"{__logo__} dxworker - DistributeX compute worker",
    add_completion=False,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} dxworker v{__version__}")
        raise typer.Exit()


@app.command()
def main(
    api_key: str = typer.Option(None, "--api-key", "-k", help="Worker API key"),
    url: str = typer.Option(None, "--url", help="Control plane base URL"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """Register this machine and run tasks from the control plane until stopped."""
    from dxworker.agent.worker import WorkerAgent
    from dxworker.config.loader import load_config
    from dxworker.control.errors import RegistrationError
    from dxworker.utils.logging import configure_logging

    config = load_config(api_key=api_key, api_url=url, debug=debug or None)
    configure_logging(config.debug)

    if not config.api_key:
        console.print("[red]Error: No API key provided.[/red]")
        console.print("Pass [cyan]--api-key KEY[/cyan] or set DISTRIBUTEX_API_KEY.")
        raise typer.Exit(1)

    console.print(f"{__logo__} DistributeX worker v{__version__} -> {config.api_url}")
    agent = WorkerAgent(config)
    try:
        asyncio.run(agent.run())
    except RegistrationError as e:
        logger.error(f"Registration failed: {e}")
        console.print(f"[red]Registration failed: {e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\nGoodbye!")


if __name__ == "__main__":
    app()
