"""Performance scoring and aggregate merge policies for the feedback loop.

Two merge policies coexist and are deliberately not unified:

* product aggregates decay with an exponential moving average (EMA 70/30),
  or accumulate additively when ``FEEDBACK_PRODUCT_MERGE_POLICY=additive``;
* style aggregates always accumulate additively.

The two produce different long-run values, so each is a named constant and
callers must pass the one they mean.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

Number = Union[int, float]

PRODUCT_MERGE_EMA_70_30 = "ema_70_30"
MERGE_ADDITIVE = "additive"
STYLE_MERGE_POLICY = MERGE_ADDITIVE

EMA_PREVIOUS_WEIGHT = 0.7
EMA_OBSERVATION_WEIGHT = 0.3

UNKNOWN_STYLE = "unknown"


@dataclass(frozen=True)
class EngagementWeights:
    """Weighting strategy turning raw engagement counts into one scalar."""

    like_weight: Number = 1
    comment_weight: Number = 2

    def score(self, likes: Number, comments: Number) -> Number:
        if likes < 0 or comments < 0:
            raise ValueError("Engagement counts must be non-negative.")
        return likes * self.like_weight + comments * self.comment_weight


# A comment is worth twice a like.
DEFAULT_WEIGHTS = EngagementWeights()


def performance_score(likes: Number, comments: Number, weights: EngagementWeights = DEFAULT_WEIGHTS) -> Number:
    return weights.score(likes, comments)


def merge_product_score(
    previous: Optional[Number],
    observation: Number,
    policy: str = PRODUCT_MERGE_EMA_70_30,
) -> float:
    """Fold one observation into a product's running score."""
    if policy == PRODUCT_MERGE_EMA_70_30:
        if previous is None:
            return float(observation)
        return float(previous) * EMA_PREVIOUS_WEIGHT + float(observation) * EMA_OBSERVATION_WEIGHT
    if policy == MERGE_ADDITIVE:
        return float(previous or 0.0) + float(observation)
    raise ValueError(f"Unknown product merge policy: {policy!r}")


@dataclass(frozen=True)
class StyleTotals:
    impressions: float
    perf_score: float
    engagement: float


def _engagement(perf_score: float, impressions: float) -> float:
    return perf_score / impressions if impressions > 0 else 0.0


def merge_style_aggregate(
    previous: Optional[Tuple[Number, Number]],
    observed_impressions: Number,
    observed_perf: Number,
) -> StyleTotals:
    """Additively merge an observation into ``(impressions, perf_score)`` totals.

    Engagement is recomputed from the merged totals and is ``0`` when there
    are no impressions yet.
    """
    prev_impressions, prev_perf = previous if previous is not None else (0.0, 0.0)
    impressions = float(prev_impressions or 0.0) + float(observed_impressions or 0.0)
    perf_score = float(prev_perf or 0.0) + float(observed_perf or 0.0)
    return StyleTotals(
        impressions=impressions,
        perf_score=perf_score,
        engagement=_engagement(perf_score, impressions),
    )


StyleKey = Tuple[str, str]


@dataclass
class BatchAccumulator:
    """In-batch running totals keyed by product and by (style, channel).

    Observations for the same key within one run are summed; the totals are
    merged into the stored aggregates once, after the batch completes.
    """

    _products: Dict[int, float] = field(default_factory=dict)
    _styles: Dict[StyleKey, Tuple[float, float]] = field(default_factory=dict)
    observations: int = 0

    def add(self, product_id: int, style: Optional[str], channel: str, perf: Number, impressions: Number = 0) -> None:
        self._products[product_id] = self._products.get(product_id, 0.0) + float(perf)

        key = (style or UNKNOWN_STYLE, channel)
        totals = merge_style_aggregate(self._styles.get(key), impressions, perf)
        self._styles[key] = (totals.impressions, totals.perf_score)
        self.observations += 1

    def product_totals(self) -> Dict[int, float]:
        return dict(self._products)

    def style_totals(self) -> Dict[StyleKey, Tuple[float, float]]:
        """Return ``{(style, channel): (impressions, perf_score)}``."""
        return dict(self._styles)

    def __len__(self) -> int:
        return self.observations
