"""Ordered fallback strategies for providers that must always answer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Strategy = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class FallbackChain(Generic[T]):
    """Try each strategy in turn until one returns a result.

    A strategy returns ``None`` to hand over to the next one. When every
    strategy declines, :meth:`run` returns ``default``.
    """

    name: str
    strategies: list[tuple[str, Strategy]] = field(default_factory=list)

    def then(self, label: str, strategy: Strategy) -> "FallbackChain[T]":
        self.strategies.append((label, strategy))
        return self

    async def run(self, default: T) -> T:
        for label, strategy in self.strategies:
            try:
                result = await strategy()
            except Exception:
                logger.exception("%s: strategy %s failed", self.name, label)
                continue
            if result is not None:
                logger.debug("%s: served by %s", self.name, label)
                return result
            logger.info("%s: %s had nothing, trying next", self.name, label)
        return default
