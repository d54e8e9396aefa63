"""Similarity scoring between two product names."""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rapidfuzz.distance import Levenshtein

from src.dedupe.name_parser import NameParser, ParsedName, name_parser


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the composite confidence. Package count is reported, not weighted."""

    brand: float = 0.4
    volume: float = 0.3
    tokens: float = 0.3


DEFAULT_WEIGHTS = ScoreWeights()

# Reasoning thresholds
BRAND_REASON_THRESHOLD = 0.8
TOKEN_REASON_THRESHOLD = 0.5

# Neutral volume score, used both when a volume is unknown and on mismatch
NEUTRAL_VOLUME_SCORE = 0.5


@dataclass
class SimilarityResult:
    """Composite similarity with its components and human-readable evidence."""

    confidence: float
    component_scores: Dict[str, float] = field(default_factory=dict)
    reasoning: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "confidence": self.confidence,
            "component_scores": dict(self.component_scores),
            "reasoning": list(self.reasoning),
        }


def brand_similarity(brand_a: str, brand_b: str) -> float:
    """1 - normalized Levenshtein distance; two empty brands are identical."""
    longest = max(len(brand_a), len(brand_b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(brand_a, brand_b) / longest


def volume_similarity(volume_a: Optional[float], volume_b: Optional[float]) -> float:
    if volume_a is None or volume_b is None:
        return NEUTRAL_VOLUME_SCORE
    if math.isclose(volume_a, volume_b, rel_tol=1e-9, abs_tol=1e-6):
        return 1.0
    return NEUTRAL_VOLUME_SCORE


def token_overlap(tokens_a, tokens_b) -> float:
    set_a = set(tokens_a)
    set_b = set(tokens_b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / max(len(set_a), len(set_b))


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class SimilarityScorer:
    """
    Scores how likely two product names describe the same product.

    Pure: no I/O and no exceptions. Identical names (after normalization)
    score 1.0.
    """

    def __init__(
        self,
        parser: Optional[NameParser] = None,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
    ):
        self.parser = parser or name_parser
        self.weights = weights

    def compare(self, name_a, name_b) -> SimilarityResult:
        parsed_a = self.parser.parse(name_a)
        parsed_b = self.parser.parse(name_b)
        identical = bool(parsed_a.normalized_name) and name_a == name_b
        return self.compare_parsed(parsed_a, parsed_b, identical=identical)

    def compare_parsed(
        self,
        parsed_a: ParsedName,
        parsed_b: ParsedName,
        identical: bool = False,
    ) -> SimilarityResult:
        """Score two already-parsed names. The scanner parses each product once."""
        brand = brand_similarity(parsed_a.brand_guess, parsed_b.brand_guess)
        volume = volume_similarity(parsed_a.volume_ml, parsed_b.volume_ml)
        tokens = token_overlap(parsed_a.descriptors, parsed_b.descriptors)
        package = 1.0 if parsed_a.package_count == parsed_b.package_count else 0.5

        same_volume = volume == 1.0
        reasoning = []
        if brand >= BRAND_REASON_THRESHOLD:
            reasoning.append("similar brand names")
        if same_volume:
            reasoning.append("same volume")
        if tokens >= TOKEN_REASON_THRESHOLD:
            reasoning.append(f"{round(tokens * 100)}% word overlap")

        if identical or (
            parsed_a.normalized_name and parsed_a.normalized_name == parsed_b.normalized_name
        ):
            confidence = 1.0
            reasoning.insert(0, "identical names")
        else:
            confidence = _clamp(
                self.weights.brand * brand
                + self.weights.volume * volume
                + self.weights.tokens * tokens
            )

        return SimilarityResult(
            confidence=confidence,
            component_scores={
                "brand": brand,
                "volume": volume,
                "tokens": tokens,
                "package_count": package,
                "overall": confidence,
            },
            reasoning=reasoning,
        )


similarity_scorer = SimilarityScorer()
