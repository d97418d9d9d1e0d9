"""Shadow repository commands (sync, cleanup)."""

import asyncio
import shutil
import sys
from pathlib import Path

import click
from rich.table import Table

from shadowtree.cli._utils import Config, console, load_config, setup_logging
from shadowtree.commands import CommandError
from shadowtree.models import SyncComplete
from shadowtree.shadow_repo import ShadowRepoError
from shadowtree.strategies import StrategiesExhaustedError


async def _sync_once(config: Config, container_id: str, repo_path: Path, branch: str) -> SyncComplete | None:
    from shadowtree.container import ContainerRuntime
    from shadowtree.orchestrator import SyncOrchestrator
    from shadowtree.registry import SessionRegistry

    runtime = ContainerRuntime(config.runtime, timeout=config.command_timeout_s)
    registry = SessionRegistry()
    # Report everything the container changed relative to the original repo
    orchestrator = SyncOrchestrator(
        registry, runtime, config, repo_path, target_branch=branch, baseline_first_sync=False
    )
    repo, _ = registry.get_or_create_shadow_repo(
        container_id, lambda: orchestrator.new_shadow_repo(container_id)
    )
    await repo.reuse_existing()
    return await asyncio.wait_for(
        orchestrator.run_exclusive(container_id, lambda: orchestrator.sync_now(container_id)),
        timeout=config.sync_timeout_s,
    )


@click.command()
@click.argument("container_id")
@click.option(
    "--repo",
    "repo",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Repository the shadow is cloned from (default: current directory)",
)
@click.option("--branch", default=None, help="Branch to create in the shadow repository")
@click.option("--diff", "show_diff", is_flag=True, help="Print the full diff")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def sync(container_id: str, repo: Path | None, branch: str | None, show_diff: bool, verbose: bool) -> None:
    """Sync a container's workspace into its shadow repository once.

    The shadow repository is kept so it can be inspected; remove it with
    'shadowtree cleanup'.
    """
    setup_logging(verbose)
    repo_path = (repo or Path.cwd()).resolve()
    config = load_config(repo_path)

    try:
        result = asyncio.run(_sync_once(config, container_id, repo_path, branch or config.shadow_branch))
    except asyncio.TimeoutError:
        console.print(f"[red]Sync timed out after {config.sync_timeout_s:g}s[/red]")
        sys.exit(1)
    except (ShadowRepoError, CommandError, StrategiesExhaustedError, OSError) as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        sys.exit(1)

    if result is None:
        console.print("[red]Shadow repository has no .git directory[/red]")
        sys.exit(1)

    console.print(f"[green]✓ Synced into {result.shadow_path}[/green]")
    console.print(result.summary)

    if result.diff_data is not None:
        stats = result.diff_data.stats
        table = Table(title="Diff stats")
        table.add_column("Files", justify="right")
        table.add_column("Additions", justify="right", style="green")
        table.add_column("Deletions", justify="right", style="red")
        table.add_row(str(stats.files), str(stats.additions), str(stats.deletions))
        console.print(table)

        if result.diff_data.untracked_files:
            console.print("[dim]Untracked:[/dim]")
            for path in result.diff_data.untracked_files:
                console.print(f"  {path}")

        if show_diff:
            console.print(result.diff_data.diff, markup=False, highlight=False)


@click.command()
@click.option("--container", "container_id", default=None, help="Only remove this container's shadow")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
def cleanup(container_id: str | None, yes: bool) -> None:
    """Remove leftover shadow repositories."""
    config = load_config()
    root = config.shadow_root

    if not root.exists():
        console.print(f"[dim]Nothing to clean up in {root}[/dim]")
        return

    if container_id:
        session_id = config.get_session_id(container_id)
        targets = [p for p in root.iterdir() if p.name == session_id or p.name.startswith(f"{session_id}-")]
    else:
        targets = sorted(root.iterdir())

    if not targets:
        console.print(f"[dim]Nothing to clean up in {root}[/dim]")
        return

    for target in targets:
        console.print(f"  {target}")
    if not yes and not click.confirm(f"Remove {len(targets)} path(s)?"):
        return

    removed = 0
    for target in targets:
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
            removed += 1
        except OSError as e:
            console.print(f"[yellow]Could not remove {target}: {e}[/yellow]")

    console.print(f"[green]✓ Removed {removed} path(s)[/green]")
