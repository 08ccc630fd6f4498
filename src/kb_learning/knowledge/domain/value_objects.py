"""
Knowledge Value Objects
========================

Stateless scoring and gating logic.

- EffectivenessScorer: [0, 1] usefulness score from votes and usage signals
- AutoResponseGate: confidence band for the best retrieval hit
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from kb_learning.config import ConfidenceBand
from kb_learning.knowledge.domain.entities import KnowledgeArticle, RetrievalResult


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class UsageSignals:
    """Evidence gathered for one article since it was published."""
    helpful_votes: int = 0
    unhelpful_votes: int = 0
    recent_citations: int = 0
    citing_tickets: int = 0
    closed_citing_tickets: int = 0

    @property
    def has_evidence(self) -> bool:
        return (self.helpful_votes + self.unhelpful_votes + self.citing_tickets + self.recent_citations) > 0


class EffectivenessScorer:
    """
    Recomputes an article's effectiveness score.

    score = w_vote * helpful / max(1, helpful + unhelpful)
          + w_trend * recent / (recent + k)
          + w_resolution * closed_citing / citing

    Weights are normalized to sum to 1 and the result is clamped to [0, 1].
    An article with no evidence keeps its current score.
    """

    def __init__(
        self,
        vote_weight: float = 0.5,
        trend_weight: float = 0.2,
        resolution_weight: float = 0.3,
        trend_half_saturation: float = 5.0
    ):
        total = vote_weight + trend_weight + resolution_weight
        if total <= 0:
            raise ValueError("at least one scoring weight must be positive")
        self._vote_weight = vote_weight / total
        self._trend_weight = trend_weight / total
        self._resolution_weight = resolution_weight / total
        self._k = trend_half_saturation

    @classmethod
    def from_policy(cls, scoring: Any) -> "EffectivenessScorer":
        return cls(
            vote_weight=scoring.vote_weight,
            trend_weight=scoring.trend_weight,
            resolution_weight=scoring.resolution_weight,
            trend_half_saturation=scoring.trend_half_saturation,
        )

    def recompute(self, article: KnowledgeArticle, signals: UsageSignals) -> float:
        if not signals.has_evidence:
            return _clamp(article.effectiveness_score)

        helpful = max(0, signals.helpful_votes)
        unhelpful = max(0, signals.unhelpful_votes)
        vote_ratio = helpful / max(1, helpful + unhelpful)

        recent = max(0, signals.recent_citations)
        trend = recent / (recent + self._k)

        citing = max(0, signals.citing_tickets)
        resolution = min(max(0, signals.closed_citing_tickets), citing) / citing if citing else 0.0

        score = (
            self._vote_weight * vote_ratio
            + self._trend_weight * trend
            + self._resolution_weight * resolution
        )
        return round(_clamp(score), 4)


@dataclass(frozen=True)
class ConfidenceThresholds:
    """t_high / t_med for the auto-response gate."""
    high: float = 0.85
    medium: float = 0.6

    def __post_init__(self):
        if not (0.0 <= self.medium <= self.high <= 1.0):
            raise ValueError("thresholds must satisfy 0 <= medium <= high <= 1")


@dataclass(frozen=True)
class GateDecision:
    band: str
    result: Optional[RetrievalResult] = None


class AutoResponseGate:
    """
    Assigns a confidence band to the best retrieval hit.

    top >= high -> auto, medium <= top < high -> suggest, otherwise none.
    Boundaries are inclusive for the higher band.
    """

    def __init__(self, thresholds: ConfidenceThresholds):
        self._thresholds = thresholds

    @property
    def thresholds(self) -> ConfidenceThresholds:
        return self._thresholds

    def classify(self, ticket: Any, results: Sequence[RetrievalResult]) -> GateDecision:
        if not results:
            return GateDecision(band=ConfidenceBand.NONE)

        top = max(results, key=lambda r: (r.similarity_score, -r.rank))
        if top.similarity_score >= self._thresholds.high:
            return GateDecision(band=ConfidenceBand.AUTO, result=top)
        if top.similarity_score >= self._thresholds.medium:
            return GateDecision(band=ConfidenceBand.SUGGEST, result=top)
        return GateDecision(band=ConfidenceBand.NONE)
