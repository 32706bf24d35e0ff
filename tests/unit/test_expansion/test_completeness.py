from datetime import date

import pytest
from expansion.completeness import CompletenessScorer, classify_recency
from expansion.config import EngineConfig
from expansion.models import (
    Candidate,
    CompletenessInputs,
    CompletenessRecord,
    DataRecency,
    StoreMetrics,
)


@pytest.fixture
def scorer():
    return CompletenessScorer(EngineConfig())


def test_fully_measured_scores_one(scorer):
    """Verify every measured input gives completeness 1.0."""
    record = scorer.score(CompletenessInputs(
        population_measured=True,
        performance_sample_size=5,
        anchor_live=True,
        data_recency=DataRecency.CURRENT,
        income_sourced=True,
    ))
    assert record.score == 1.0
    assert record.flags == []


def test_everything_estimated(scorer):
    """Verify the weighted checklist for a fully estimated candidate."""
    record = scorer.score(CompletenessInputs(
        population_measured=False,
        performance_sample_size=0,
        anchor_live=False,
        data_recency=DataRecency.STALE,
        income_sourced=False,
    ))
    # 0.3*0.6 + 0.3*0.4 + 0.2*0.7 + 0.1*0.8 + 0.1*0.5
    assert record.score == pytest.approx(0.57)
    assert record.checklist == {
        "population_source": 0.6,
        "performance_sample": 0.4,
        "anchor_coverage": 0.7,
        "data_recency": 0.8,
        "income_proxy": 0.5,
    }
    assert "population_estimated" in record.flags
    assert "performance_sparse" in record.flags


def test_performance_sample_threshold(scorer):
    """Verify three comparable stores are needed for a measured sample."""
    two = scorer.score(CompletenessInputs(True, 2, True, DataRecency.CURRENT, True))
    three = scorer.score(CompletenessInputs(True, 3, True, DataRecency.CURRENT, True))
    assert two.performance_sample == 0.4
    assert three.performance_sample == 1.0
    assert two.score == pytest.approx(0.82)


def test_recent_data_tier(scorer):
    record = scorer.score(CompletenessInputs(True, 3, True, DataRecency.RECENT, True))
    assert record.score == pytest.approx(0.99)


def test_score_rounded_to_three_decimals(scorer):
    record = scorer.score(CompletenessInputs(False, 5, True, DataRecency.RECENT, False))
    assert record.score == round(record.score, 3)


def test_deterministic(scorer):
    """Verify identical inputs always give identical completeness."""
    inputs = CompletenessInputs(False, 1, False, DataRecency.RECENT, True)
    assert scorer.score(inputs).score == scorer.score(inputs).score


def test_classify_recency():
    snapshot = date(2024, 11, 1)
    assert classify_recency(date(2024, 10, 1), snapshot) == DataRecency.CURRENT
    assert classify_recency(date(2024, 3, 1), snapshot) == DataRecency.RECENT
    assert classify_recency(date(2022, 1, 1), snapshot) == DataRecency.STALE
    assert classify_recency(None, snapshot) == DataRecency.STALE


def test_inputs_from_candidate(scorer):
    """Verify inputs are derived from the candidate and its store context."""
    candidate = Candidate(id="c1", lat=50.0, lng=8.0, region="Hesse",
                          estimated_population=4000, median_income=31000.0)
    inputs = scorer.inputs_for(
        candidate,
        StoreMetrics(turnover_sample_size=4),
        anchor_live=True,
        data_as_of=date(2024, 9, 15),
    )
    assert inputs.population_measured is False
    assert inputs.performance_sample_size == 4
    assert inputs.income_sourced is True
    assert inputs.data_recency == DataRecency.CURRENT


def test_minimum_evidence(scorer):
    """Verify the 0.4 threshold for acceptance."""
    inputs = CompletenessInputs(True, 3, True)
    low = CompletenessRecord(0.6, 0.4, 0.7, 0.8, 0.5, score=0.39, inputs=inputs)
    ok = CompletenessRecord(0.6, 0.4, 0.7, 0.8, 0.5, score=0.4, inputs=inputs)
    assert not scorer.meets_minimum(low)
    assert scorer.meets_minimum(ok)
