"""Scoring strategy registry."""

from __future__ import annotations

from typing import Callable

from ammo_resolver.resolver.scoring.base import PreparedInput, ScoringResult, ScoringStrategy
from ammo_resolver.resolver.scoring.weighted_exact import (
    DEFAULT_WEIGHTS,
    WeightedExactMatchStrategy,
    WeightedExactMatchWeights,
)


_STRATEGIES: dict[str, Callable[[], ScoringStrategy]] = {
    WeightedExactMatchStrategy.name: WeightedExactMatchStrategy,
}


def get_strategy(name: str | None = None) -> ScoringStrategy:
    """Return a fresh strategy instance by name (default: weighted-exact-match)."""
    if not name:
        return WeightedExactMatchStrategy()
    try:
        factory = _STRATEGIES[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown scoring strategy: {name}") from None
    return factory()


__all__ = [
    "DEFAULT_WEIGHTS",
    "PreparedInput",
    "ScoringResult",
    "ScoringStrategy",
    "WeightedExactMatchStrategy",
    "WeightedExactMatchWeights",
    "get_strategy",
]
