"""Weighted exact-match scoring strategy."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Optional

from ammo_resolver.db.models import CanonicalProduct
from ammo_resolver.errors import InvalidWeightsError
from ammo_resolver.normalize.processor import NormalizedInput
from ammo_resolver.resolver.scoring.base import PreparedInput, ScoringResult, ScoringStrategy
from ammo_resolver.resolver.text_similarity import tokenize, tfidf_cosine_similarity_with_tokens

WEIGHT_SUM_TOLERANCE = 0.001


@dataclass(frozen=True)
class WeightedExactMatchWeights:
    """Per-signal weights; must sum to 1.0."""

    brand: float = 0.25  # Different brands are different products
    caliber: float = 0.30  # Wrong caliber is a completely different product
    pack: float = 0.20  # 50rd vs 1000rd matters for price comparison
    grain: float = 0.15  # 115gr vs 124gr vs 147gr variants
    title: float = 0.10  # TF-IDF cosine of input title vs candidate name

    @property
    def total(self) -> float:
        return math.fsum(asdict(self).values())


DEFAULT_WEIGHTS = WeightedExactMatchWeights()


def _exact(left, right) -> bool:
    # Missing on both sides counts as agreement; missing on one side does not
    return left == right


class WeightedExactMatchStrategy(ScoringStrategy):
    """
    Score candidates with binary exact matches on brand, caliber, pack count
    and grain, plus a continuous title similarity, under a fixed weight vector.
    """

    name = "weighted-exact-match"

    def __init__(
        self,
        weights: Optional[WeightedExactMatchWeights] = None,
        version: str = "1.2.0",
    ):
        weights = weights or DEFAULT_WEIGHTS
        if abs(weights.total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise InvalidWeightsError(f"Weights must sum to 1.0, got {weights.total}")
        self.weights = weights
        self.version = version

    def precompute(self, normalized: NormalizedInput) -> PreparedInput:
        """Tokenize the input title once for all candidates."""
        title = normalized.title_signature or normalized.title or ""
        return PreparedInput(input=normalized, title_tokens=tuple(tokenize(title)))

    def compute(self, prepared: PreparedInput, candidate: CanonicalProduct) -> ScoringResult:
        normalized = prepared.input
        weights = self.weights

        brand_match = _exact(normalized.brand_norm, candidate.brand_norm)
        caliber_match = _exact(normalized.caliber_norm, candidate.caliber_norm)
        pack_match = _exact(normalized.round_count, candidate.round_count)
        grain_match = _exact(normalized.grain, candidate.grain)

        title_similarity = tfidf_cosine_similarity_with_tokens(
            list(prepared.title_tokens),
            candidate.name or "",
        )

        component_scores = {
            "brand": weights.brand if brand_match else 0.0,
            "caliber": weights.caliber if caliber_match else 0.0,
            "pack": weights.pack if pack_match else 0.0,
            "grain": weights.grain if grain_match else 0.0,
            "title": title_similarity * weights.title,
        }

        total = (
            component_scores["brand"]
            + component_scores["caliber"]
            + component_scores["pack"]
            + component_scores["grain"]
            + component_scores["title"]
        )

        return ScoringResult(
            total=total,
            component_scores=component_scores,
            match_details={
                "brandMatch": brand_match,
                "caliberMatch": caliber_match,
                "packMatch": pack_match,
                "grainMatch": grain_match,
                "titleSimilarity": title_similarity,
            },
        )
