import pytest
from expansion.config import EngineConfig
from expansion.guardrail import QualityGuardrail
from expansion.models import (
    Candidate,
    CompletenessInputs,
    CompletenessRecord,
    FairnessLedgerEntry,
    ScoreBreakdown,
    ScoredCandidate,
    WeightVector,
)


def make(cid, region="Germany", completeness=0.9):
    candidate = Candidate(id=cid, lat=50.0, lng=8.0, region=region, population=5000)
    inputs = CompletenessInputs(True, 5, True)
    record = CompletenessRecord(1.0, 1.0, 1.0, 1.0, 1.0, score=completeness, inputs=inputs)
    breakdown = ScoreBreakdown(0.5, 0.5, 0.5, 0.5, 0.0, WeightVector(), 0.7)
    return ScoredCandidate(candidate, breakdown, record)


@pytest.fixture
def guardrail():
    return QualityGuardrail(EngineConfig())


def names(report):
    return [v.name for v in report.violations]


def test_healthy_batch_passes(guardrail):
    accepted = [make(f"c{i}") for i in range(5)]
    report = guardrail.evaluate(accepted, evaluated_count=10)
    assert report.passed
    assert report.acceptance_rate == 0.5
    assert report.avg_completeness == pytest.approx(0.9)


def test_low_acceptance_rate_holds(guardrail):
    """Verify 1 of 10 accepted (10%) is below the 15% floor."""
    report = guardrail.evaluate([make("c1")], evaluated_count=10)
    assert not report.passed
    assert names(report) == ["acceptance_rate"]
    assert report.violations[0].observed == pytest.approx(0.1)


def test_acceptance_rate_at_threshold_passes(guardrail):
    accepted = [make(f"c{i}") for i in range(3)]
    assert guardrail.evaluate(accepted, evaluated_count=20).passed


def test_low_completeness_holds(guardrail):
    accepted = [make("a", completeness=0.45), make("b", completeness=0.5)]
    report = guardrail.evaluate(accepted, evaluated_count=4)
    assert names(report) == ["avg_completeness"]
    assert report.avg_completeness == pytest.approx(0.475)


def test_region_concentration_holds(guardrail):
    """Verify one region holding more than 40% of accepted sites fails."""
    accepted = [make("a1", "A"), make("a2", "A"), make("a3", "A"), make("b1", "B")]
    report = guardrail.evaluate(accepted, evaluated_count=8)
    assert names(report) == ["region_concentration"]
    assert report.max_region_share == 0.75
    assert "A" in report.violations[0].message


def test_single_region_skips_concentration(guardrail):
    accepted = [make(f"c{i}") for i in range(4)]
    ledger = [FairnessLedgerEntry(region="Germany", population_share=1.0)]
    report = guardrail.evaluate(accepted, evaluated_count=8, ledger=ledger)
    assert report.passed
    assert report.max_region_share == 1.0


def test_ledger_regions_count_toward_concentration(guardrail):
    """Verify a region with no accepted sites still makes the batch multi-region."""
    accepted = [make(f"c{i}", "A") for i in range(4)]
    ledger = [FairnessLedgerEntry("A", 0.5), FairnessLedgerEntry("B", 0.5)]
    report = guardrail.evaluate(accepted, evaluated_count=8, ledger=ledger)
    assert "region_concentration" in names(report)


def test_nothing_accepted(guardrail):
    report = guardrail.evaluate([], evaluated_count=10)
    assert not report.passed
    assert names(report) == ["no_accepted_candidates", "acceptance_rate"]


def test_nothing_evaluated(guardrail):
    report = guardrail.evaluate([], evaluated_count=0)
    assert report.acceptance_rate == 0.0
    assert not report.passed


def test_report_to_dict(guardrail):
    data = guardrail.evaluate([make("c1")], evaluated_count=10).to_dict()
    assert data["passed"] is False
    assert data["violations"][0]["name"] == "acceptance_rate"
