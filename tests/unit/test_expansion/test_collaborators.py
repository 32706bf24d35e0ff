import threading

import pytest
from expansion.metrics import InMemoryMetricsSink, MetricsSink, NullMetricsSink
from expansion.models import (
    Candidate,
    CandidateSource,
    CompletenessInputs,
    CompletenessRecord,
    ScoreBreakdown,
    ScoredCandidate,
    WeightVector,
)
from expansion.narrative import NarrativeGenerator, TemplateNarrativeGenerator


def make(name="Kassel", saturation=0.0, weights=None):
    candidate = Candidate(
        id="settlement_kassel" if name else "grid_0001_0002",
        lat=51.31, lng=9.49, region="Hesse",
        source=CandidateSource.SETTLEMENT if name else CandidateSource.GRID,
        name=name, population=200000,
    )
    inputs = CompletenessInputs(True, 5, True)
    record = CompletenessRecord(1.0, 1.0, 1.0, 1.0, 1.0, score=1.0, inputs=inputs)
    breakdown = ScoreBreakdown(0.9, 0.2, 0.8, 0.1, saturation, weights or WeightVector(), 0.55)
    return ScoredCandidate(candidate, breakdown, record)


# ═══════════════════════════════════════════════════════════════════════════
# Metrics
# ═══════════════════════════════════════════════════════════════════════════
def test_interface_not_implemented():
    with pytest.raises(NotImplementedError):
        MetricsSink().increment("x")
    with pytest.raises(NotImplementedError):
        NarrativeGenerator().rationale(make())


def test_null_sink_discards():
    sink = NullMetricsSink()
    sink.increment("anchor_cache_hits")
    sink.observe("score_ms", 1.5)


def test_in_memory_sink_counts():
    sink = InMemoryMetricsSink()
    sink.increment("anchor_cache_hits")
    sink.increment("anchor_cache_hits", 2)
    sink.observe("score_ms", 1.0)
    sink.observe("score_ms", 3.0)

    snap = sink.snapshot()
    assert snap["counters"] == {"anchor_cache_hits": 3}
    assert snap["observations"]["score_ms"] == {"count": 2, "total": 4.0, "max": 3.0}


def test_in_memory_sink_thread_safe():
    """Verify concurrent increments are not lost."""
    sink = InMemoryMetricsSink()

    def work():
        for _ in range(1000):
            sink.increment("n")

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sink.snapshot()["counters"]["n"] == 4000


# ═══════════════════════════════════════════════════════════════════════════
# Narrative
# ═══════════════════════════════════════════════════════════════════════════
def test_rationale_names_top_contributions():
    """Verify the two strongest weighted sub-scores drive the text."""
    text = TemplateNarrativeGenerator().rationale(make())
    # population 0.25*0.9, anchor 0.20*0.8 beat gap 0.35*0.2 and performance 0.20*0.1
    assert text.startswith("Kassel (Hesse) scores 0.55")
    assert "population base and nearby anchors" in text
    assert "saturation" not in text


def test_rationale_mentions_penalty_and_uncertainty():
    weights = WeightVector().redistributed(population_factor=0.5)
    text = TemplateNarrativeGenerator().rationale(make(saturation=0.4, weights=weights))
    assert "saturation penalty 0.06" in text
    assert "uncertainty weight" in text


def test_rationale_for_grid_cell():
    text = TemplateNarrativeGenerator().rationale(make(name=None))
    assert text.startswith("grid cell grid_0001_0002")


def test_rationale_deterministic():
    generator = TemplateNarrativeGenerator()
    assert generator.rationale(make()) == generator.rationale(make())
