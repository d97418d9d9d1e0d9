"""Shared utilities for CLI modules."""

import logging

from rich.console import Console

# Shared Rich console instance for all CLI modules
console = Console()

# Re-export commonly used functions for consistent import paths
from shadowtree.config import load_config, Config


def setup_logging(verbose: bool = False) -> None:
    """Configure library logging for CLI runs.

    Args:
        verbose: Log at DEBUG instead of INFO
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


__all__ = [
    "console",
    "load_config",
    "Config",
    "setup_logging",
]
