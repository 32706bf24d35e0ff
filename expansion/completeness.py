"""
Data Completeness Scoring

A deterministic 0-1 score of how much of a candidate's evidence was
measured rather than estimated. Low completeness never changes the
candidate's score directly; it shrinks the weights of the estimated inputs
and, below the minimum-evidence threshold, keeps the candidate out of the
accepted set.
"""

import logging
from datetime import date
from typing import Optional

from expansion.config import EngineConfig
from expansion.models import (
    Candidate,
    CompletenessInputs,
    CompletenessRecord,
    DataRecency,
    StoreMetrics,
)

log = logging.getLogger(__name__)

# Checklist weights
POPULATION_WEIGHT = 0.3
PERFORMANCE_WEIGHT = 0.3
ANCHOR_WEIGHT = 0.2
RECENCY_WEIGHT = 0.1
INCOME_WEIGHT = 0.1

RECENCY_TIERS = {
    DataRecency.CURRENT: 1.0,
    DataRecency.RECENT: 0.9,
    DataRecency.STALE: 0.8,
}

CURRENT_MAX_AGE_DAYS = 90
RECENT_MAX_AGE_DAYS = 365


def classify_recency(data_as_of: Optional[date], snapshot: date) -> str:
    """Age of the feed relative to the pinned snapshot date."""
    if data_as_of is None:
        return DataRecency.STALE
    age = abs((snapshot - data_as_of).days)
    if age <= CURRENT_MAX_AGE_DAYS:
        return DataRecency.CURRENT
    if age <= RECENT_MAX_AGE_DAYS:
        return DataRecency.RECENT
    return DataRecency.STALE


class CompletenessScorer:
    """Scores the five-item evidence checklist for a candidate."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def inputs_for(
        self,
        candidate: Candidate,
        store_metrics: StoreMetrics,
        anchor_live: bool,
        data_as_of: Optional[date] = None,
    ) -> CompletenessInputs:
        """Collect the checklist inputs for one candidate."""
        return CompletenessInputs(
            population_measured=not candidate.population_estimated,
            performance_sample_size=store_metrics.turnover_sample_size,
            anchor_live=anchor_live,
            data_recency=classify_recency(data_as_of, self.config.snapshot),
            income_sourced=candidate.median_income is not None,
        )

    def score(self, inputs: CompletenessInputs) -> CompletenessRecord:
        flags = []

        population = 1.0 if inputs.population_measured else 0.6
        if not inputs.population_measured:
            flags.append("population_estimated")

        if inputs.performance_sample_size >= self.config.min_performance_sample:
            performance = 1.0
        else:
            performance = 0.4
            flags.append("performance_sparse")

        anchor = 1.0 if inputs.anchor_live else 0.7
        if not inputs.anchor_live:
            flags.append("anchors_not_live")

        recency = RECENCY_TIERS.get(inputs.data_recency, RECENCY_TIERS[DataRecency.STALE])
        if inputs.data_recency != DataRecency.CURRENT:
            flags.append(f"data_{inputs.data_recency}")

        income = 1.0 if inputs.income_sourced else 0.5
        if not inputs.income_sourced:
            flags.append("income_proxied")

        score = (
            POPULATION_WEIGHT * population
            + PERFORMANCE_WEIGHT * performance
            + ANCHOR_WEIGHT * anchor
            + RECENCY_WEIGHT * recency
            + INCOME_WEIGHT * income
        )

        return CompletenessRecord(
            population_source=population,
            performance_sample=performance,
            anchor_coverage=anchor,
            data_recency=recency,
            income_proxy=income,
            score=round(max(0.0, min(1.0, score)), 3),
            inputs=inputs,
            flags=flags,
        )

    def meets_minimum(self, record: CompletenessRecord) -> bool:
        return record.score >= self.config.min_completeness
