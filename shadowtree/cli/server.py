"""Server command (web)."""

from pathlib import Path

import click

from shadowtree.cli._utils import console, load_config, setup_logging


@click.command()
@click.option("--host", default=None, help="Host to bind to (default: from config)")
@click.option("--port", default=None, type=int, help="Port to bind to; the next free one is used when busy")
@click.option(
    "--repo",
    "repo",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Repository to shadow (default: current directory)",
)
@click.option("--branch", default=None, help="Branch to create in shadow repositories")
@click.option("--open/--no-open", "open_in_browser", default=None, help="Open the UI in a browser")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def web(
    host: str | None,
    port: int | None,
    repo: Path | None,
    branch: str | None,
    open_in_browser: bool | None,
    verbose: bool,
) -> None:
    """Start the web terminal and live sync server.

    Examples:
        shadowtree web                         # Serve the current repository
        shadowtree web --branch agent/fix-123  # Name the shadow branch
        shadowtree web --port 9000 --no-open
    """
    from shadowtree.web.app import run_server

    setup_logging(verbose)
    repo_path = (repo or Path.cwd()).resolve()
    config = load_config(repo_path)

    console.print(f"[cyan]Starting shadowtree for {repo_path}[/cyan]")
    console.print(f"[dim]Shadow repositories: {config.shadow_root}[/dim]")
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    run_server(
        host=host,
        port=port,
        repo_path=repo_path,
        branch=branch,
        open_in_browser=open_in_browser,
        config=config,
    )
