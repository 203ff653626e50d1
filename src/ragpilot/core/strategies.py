"""
Ordered fallback strategies.

A StrategyChain tries strategies in order until one succeeds. Every strategy
honours the same contract, `attempt() -> StrategyOutcome`, so a fallback
cascade reads as a list instead of nested exception handlers. Exceptions
raised inside a strategy become failures; cancellation is not an Exception
and propagates.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from ..observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)


@dataclass(frozen=True)
class StrategyOutcome(Generic[T]):
    """Result of one attempt: a value, or the error that made it fail."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StrategyOutcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> "StrategyOutcome[T]":
        return cls(error=error)


class Strategy(Protocol[T_co]):
    name: str

    async def attempt(self) -> "StrategyOutcome[T_co]":
        ...


class FunctionStrategy(Generic[T]):
    """Adapts an async callable to the Strategy contract."""

    def __init__(self, name: str, func: Callable[[], Awaitable[T]]):
        self.name = name
        self._func = func

    async def attempt(self) -> StrategyOutcome[T]:
        try:
            return StrategyOutcome.success(await self._func())
        except Exception as e:
            return StrategyOutcome.failure(e)


@dataclass
class ChainResult(Generic[T]):
    """Outcome of a whole chain: the winning strategy's value, plus every failure seen."""

    value: T | None = None
    strategy: str | None = None
    failures: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.strategy is not None


class StrategyChain(Generic[T]):
    """Tries strategies in order and returns the first success."""

    def __init__(self, name: str, strategies: Sequence[Strategy[T]]):
        self.name = name
        self.strategies = list(strategies)

    async def run(self) -> ChainResult[T]:
        result: ChainResult[T] = ChainResult()
        for strategy in self.strategies:
            outcome = await strategy.attempt()
            if outcome.ok:
                result.value = outcome.value
                result.strategy = strategy.name
                if result.failures:
                    logger.info(
                        f"{self.name}: fell back to '{strategy.name}'",
                        failed=",".join(name for name, _ in result.failures),
                    )
                return result

            assert outcome.error is not None
            result.failures.append((strategy.name, outcome.error))
            logger.warning(f"{self.name}: strategy '{strategy.name}' failed: {outcome.error}")

        logger.error(f"{self.name}: all {len(self.strategies)} strategies failed")
        return result
