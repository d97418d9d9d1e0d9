"""CLI for shadowtree."""

import click

from shadowtree import __version__


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """shadowtree: review and push what an agent changed inside its container.

    Mirrors a sandbox container's workspace into a host-side git repository
    and serves a shared browser terminal for the session.
    """
    pass


# Import and register command modules
from shadowtree.cli import server
from shadowtree.cli import shadows

main.add_command(server.web)
main.add_command(shadows.sync)
main.add_command(shadows.cleanup)
