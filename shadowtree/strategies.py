"""Ordered fallback chains.

Clone approaches, package-manager installs, ownership fixes and transfer
selection all follow the same shape: try a list of named attempts in order
and accept the first that succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

logger = logging.getLogger("shadowtree.strategies")

T = TypeVar("T")


@dataclass(frozen=True)
class Strategy(Generic[T]):
    """A named attempt. `attempt` raises on failure."""

    name: str
    attempt: Callable[[], Awaitable[T]]


@dataclass
class StrategyOutcome(Generic[T]):
    """Which strategy won and what it returned."""

    name: str
    value: T


class StrategiesExhaustedError(Exception):
    """Raised when every strategy in a chain failed."""

    def __init__(self, chain: str, failures: list[tuple[str, BaseException]]):
        self.chain = chain
        self.failures = failures
        detail = "; ".join(f"{name}: {err}" for name, err in failures)
        super().__init__(f"All {chain} strategies failed ({detail})")


async def first_success(
    chain: str,
    strategies: Sequence[Strategy[T]],
) -> StrategyOutcome[T]:
    """Run strategies in order and return the first that succeeds.

    Args:
        chain: Name of the chain for logging and errors (e.g. "clone")
        strategies: Ordered attempts

    Returns:
        StrategyOutcome naming the winning strategy

    Raises:
        StrategiesExhaustedError: If no strategy succeeded
    """
    failures: list[tuple[str, BaseException]] = []

    for strategy in strategies:
        try:
            value = await strategy.attempt()
        except Exception as e:
            logger.debug("%s strategy %r failed: %s", chain, strategy.name, e)
            failures.append((strategy.name, e))
            continue

        if failures:
            logger.info("%s succeeded with %r after %d failed attempt(s)", chain, strategy.name, len(failures))
        return StrategyOutcome(strategy.name, value)

    raise StrategiesExhaustedError(chain, failures)
