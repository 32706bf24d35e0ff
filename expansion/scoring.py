"""
Candidate Scoring

Combines five normalized sub-scores into one final score in [0, 1]:
- population: log-scaled population around the site
- gap: how far the site is from existing stores (underserved areas score high)
- anchor: diminishing-returns anchor score from the AnchorAggregator
- performance: turnover of nearby stores
- saturation: store density nearby, applied as a penalty

Weights of inputs that were estimated rather than measured are shrunk and
the removed weight is moved to gap and an explicit uncertainty weight.
"""

import math
import logging
from typing import Iterable, List, Optional, Sequence

import numpy as np

from expansion.config import EngineConfig
from expansion.geo import haversine_many, is_valid_coordinate
from expansion.models import (
    AnchorResult,
    Candidate,
    CompletenessRecord,
    ScoreBreakdown,
    ScoredCandidate,
    Store,
    StoreMetrics,
    WeightVector,
)

log = logging.getLogger(__name__)

NEAREST_STORE_COUNT = 3
NEUTRAL_PERFORMANCE = 0.5


# ═══════════════════════════════════════════════════════════════════════════
# SUB-SCORES
# ═══════════════════════════════════════════════════════════════════════════
def population_score(population: float) -> float:
    """0 at 1,000 people, 1.0 from 1,000,000 up."""
    if population is None or population <= 1000:
        return 0.0
    return min(math.log10(population / 1000) / 3, 1.0)


def gap_score(nearest_distances_m: Sequence[float], midpoint_m: float = 10000.0,
              scale_m: float = 3000.0) -> float:
    """Sigmoid of the mean distance to the nearest stores; 1.0 with no stores."""
    if not nearest_distances_m:
        return 1.0
    mean_distance = sum(nearest_distances_m) / len(nearest_distances_m)
    return 1.0 / (1.0 + math.exp(-(mean_distance - midpoint_m) / scale_m))


def performance_score(turnover_mean: float, sample_size: int,
                      reference_turnover: float = 1_000_000.0) -> float:
    if sample_size <= 0:
        return NEUTRAL_PERFORMANCE
    return max(0.0, min(turnover_mean / reference_turnover, 1.0))


def saturation_score(store_count: int, full_saturation_count: int = 10) -> float:
    return min(store_count / full_saturation_count, 1.0)


# ═══════════════════════════════════════════════════════════════════════════
# STORE INDEX
# ═══════════════════════════════════════════════════════════════════════════
def _turnover(value) -> float:
    """Turnover as a float; missing or unusable values become NaN."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return np.nan
    return value if math.isfinite(value) else np.nan


class StoreIndex:
    """Existing stores as numpy arrays for fast distance queries."""

    def __init__(self, stores: Iterable[Store], radius_m: float = 10000.0):
        valid = []
        self.dropped = 0
        for s in stores:
            if not is_valid_coordinate(s.lat, s.lng):
                self.dropped += 1
                log.warning(f"Dropping store {s.id!r} with invalid coordinates ({s.lat}, {s.lng})")
                continue
            valid.append(s)
        self.radius_m = radius_m
        self.lats = np.array([float(s.lat) for s in valid], dtype=float)
        self.lngs = np.array([float(s.lng) for s in valid], dtype=float)
        self.turnovers = np.array([_turnover(s.annual_turnover) for s in valid], dtype=float)

    def __len__(self) -> int:
        return len(self.lats)

    def metrics_for(self, lat: float, lng: float) -> StoreMetrics:
        if len(self) == 0:
            return StoreMetrics()

        distances = haversine_many(lat, lng, self.lats, self.lngs)
        nearest = np.sort(distances)[:NEAREST_STORE_COUNT]
        nearby = distances <= self.radius_m
        turnovers = self.turnovers[nearby]
        turnovers = turnovers[~np.isnan(turnovers)]

        return StoreMetrics(
            nearest_distances_m=[float(d) for d in nearest],
            store_count_10km=int(nearby.sum()),
            turnover_mean=float(turnovers.mean()) if len(turnovers) else 0.0,
            turnover_sample_size=int(len(turnovers)),
        )


# ═══════════════════════════════════════════════════════════════════════════
# SCORER
# ═══════════════════════════════════════════════════════════════════════════
class CandidateScorer:
    """Weighted scoring with sparsity-aware weight redistribution."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def active_weights(self, completeness: CompletenessRecord) -> WeightVector:
        """
        Weight vector for one candidate.

        Shrinks the population, performance and anchor weights when their
        inputs were estimated. The total stays at 1.0.
        """
        inputs = completeness.inputs
        cfg = self.config
        return cfg.weights.redistributed(
            population_factor=1.0 if inputs.population_measured else cfg.population_sparse_factor,
            performance_factor=(
                1.0 if inputs.performance_sample_size >= cfg.min_performance_sample
                else cfg.performance_sparse_factor
            ),
            anchor_factor=1.0 if inputs.anchor_live else cfg.anchor_sparse_factor,
            gap_share=cfg.gap_redistribution_share,
        )

    def score(
        self,
        candidate: Candidate,
        anchors: Optional[AnchorResult],
        store_metrics: StoreMetrics,
        completeness: CompletenessRecord,
    ) -> ScoreBreakdown:
        cfg = self.config
        weights = self.active_weights(completeness)

        population = population_score(candidate.effective_population)
        gap = gap_score(store_metrics.nearest_distances_m, cfg.gap_midpoint_m, cfg.gap_scale_m)
        anchor = anchors.normalized if anchors is not None else 0.0
        performance = performance_score(
            store_metrics.turnover_mean,
            store_metrics.turnover_sample_size,
            cfg.reference_turnover,
        )
        saturation = saturation_score(store_metrics.store_count_10km, cfg.saturation_store_count)

        return self.combine(population, gap, anchor, performance, saturation, weights)

    @staticmethod
    def combine(
        population: float,
        gap: float,
        anchor: float,
        performance: float,
        saturation: float,
        weights: WeightVector,
    ) -> ScoreBreakdown:
        """Weighted sum minus the saturation penalty, clamped to [0, 1]."""
        if abs(weights.total() - 1.0) > 1e-6:
            raise ValueError(f"Weights must sum to 1.0, got {weights.total():.6f}")
        subscores = (population, gap, anchor, performance, saturation)
        if not all(math.isfinite(v) for v in subscores):
            raise ValueError(f"Sub-scores must be finite, got {subscores}")
        raw = (
            weights.population * population
            + weights.gap * gap
            + weights.anchor * anchor
            + weights.performance * performance
            - weights.saturation * saturation
        )
        return ScoreBreakdown(
            population=population,
            gap=gap,
            anchor=anchor,
            performance=performance,
            saturation=saturation,
            weights=weights,
            final=max(0.0, min(1.0, raw)),
        )


# ═══════════════════════════════════════════════════════════════════════════
# RANKING
# ═══════════════════════════════════════════════════════════════════════════
def ranking_key(scored: ScoredCandidate):
    """
    Total order over candidates: final score desc, completeness desc,
    settlement before grid, then id asc.
    """
    return (
        -round(scored.final_score, 9),
        -scored.completeness_score,
        scored.candidate.source_priority,
        scored.candidate.id,
    )


def rank_candidates(scored: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
    return sorted(scored, key=ranking_key)
