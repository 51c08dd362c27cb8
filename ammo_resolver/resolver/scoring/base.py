"""Scoring strategy base classes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ammo_resolver.db.models import CanonicalProduct
from ammo_resolver.normalize.processor import NormalizedInput


@dataclass
class ScoringResult:
    """Score of one candidate against one input."""

    total: float
    component_scores: dict[str, float] = field(default_factory=dict)
    match_details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PreparedInput:
    """Input plus anything a strategy derives from it once per resolution."""

    input: NormalizedInput
    title_tokens: tuple[str, ...] = ()


class ScoringStrategy:
    """Base scoring strategy.

    Scoring is two-phase: precompute() once per input, then compute() per
    candidate. Instances hold no per-input state, so one strategy can be
    shared by concurrent workers.
    """

    name: str = "base"
    version: str = "0"

    def precompute(self, normalized: NormalizedInput) -> PreparedInput:
        """Derive reusable per-input state."""
        return PreparedInput(input=normalized)

    def compute(self, prepared: PreparedInput, candidate: CanonicalProduct) -> ScoringResult:
        """Score one candidate against a prepared input."""
        raise NotImplementedError

    def score(self, normalized: NormalizedInput, candidate: CanonicalProduct) -> ScoringResult:
        """One-shot scoring; prefer precompute() + compute() for many candidates."""
        return self.compute(self.precompute(normalized), candidate)
