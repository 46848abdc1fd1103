"""Tests for ordered fallback strategies."""

from __future__ import annotations

import asyncio

from app.services.fallback import FallbackChain


def test_first_non_empty_strategy_wins() -> None:
    calls: list[str] = []

    async def declines() -> list[str] | None:
        calls.append("personal")
        return None

    async def answers() -> list[str] | None:
        calls.append("trending")
        return ["a"]

    async def never() -> list[str] | None:
        calls.append("never")
        return ["b"]

    chain = (
        FallbackChain[list[str]]("demo")
        .then("personal", declines)
        .then("trending", answers)
        .then("never", never)
    )

    assert asyncio.run(chain.run([])) == ["a"]
    assert calls == ["personal", "trending"]


def test_failing_strategy_hands_over_to_next() -> None:
    async def explodes() -> list[str] | None:
        raise RuntimeError("boom")

    async def answers() -> list[str] | None:
        return ["fallback"]

    chain = FallbackChain[list[str]]("demo").then("explodes", explodes).then(
        "answers", answers
    )

    assert asyncio.run(chain.run([])) == ["fallback"]


def test_default_returned_when_every_strategy_declines() -> None:
    async def declines() -> list[str] | None:
        return None

    chain = FallbackChain[list[str]]("demo").then("declines", declines)

    assert asyncio.run(chain.run(["static"])) == ["static"]
