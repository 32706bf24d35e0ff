"""
Expansion engine.
Scores candidate store locations and allocates accepted suggestions fairly
across regions, with guardrails and reproducible scenarios.
"""

from expansion.models import (
    AnchorFeature,
    AnchorResult,
    BatchStatus,
    Candidate,
    CandidateSource,
    CandidateStatus,
    CompletenessRecord,
    FairnessLedgerEntry,
    RegionInputs,
    RegionPopulation,
    ScenarioRecord,
    ScoreBreakdown,
    ScoredCandidate,
    Settlement,
    Store,
    WeightVector,
)
from expansion.config import EngineConfig, GenerationParams, RegionOverride
from expansion.errors import (
    AllocationStateError,
    AnchorFetchError,
    ConfigurationError,
    ExpansionError,
    ScenarioNotFoundError,
)
from expansion.anchors import AnchorAggregator, AnchorFeatureSource, AnchorFetch
from expansion.completeness import CompletenessScorer
from expansion.scoring import CandidateScorer, rank_candidates, ranking_key
from expansion.generator import CandidateGenerator, prune_min_distance
from expansion.fairness import AllocationState, FairnessAllocator
from expansion.guardrail import GuardrailReport, QualityGuardrail
from expansion.scenario import ScenarioStore, scenario_id
from expansion.metrics import InMemoryMetricsSink, MetricsSink, NullMetricsSink
from expansion.narrative import NarrativeGenerator, TemplateNarrativeGenerator
from expansion.engine import ExpansionEngine, GenerationResult

__all__ = [
    # Models
    "AnchorFeature",
    "AnchorResult",
    "BatchStatus",
    "Candidate",
    "CandidateSource",
    "CandidateStatus",
    "CompletenessRecord",
    "FairnessLedgerEntry",
    "RegionInputs",
    "RegionPopulation",
    "ScenarioRecord",
    "ScoreBreakdown",
    "ScoredCandidate",
    "Settlement",
    "Store",
    "WeightVector",
    # Configuration
    "EngineConfig",
    "GenerationParams",
    "RegionOverride",
    # Errors
    "AllocationStateError",
    "AnchorFetchError",
    "ConfigurationError",
    "ExpansionError",
    "ScenarioNotFoundError",
    # Components
    "AnchorAggregator",
    "AnchorFeatureSource",
    "AnchorFetch",
    "CompletenessScorer",
    "CandidateScorer",
    "rank_candidates",
    "ranking_key",
    "CandidateGenerator",
    "prune_min_distance",
    "AllocationState",
    "FairnessAllocator",
    "GuardrailReport",
    "QualityGuardrail",
    "ScenarioStore",
    "scenario_id",
    "InMemoryMetricsSink",
    "MetricsSink",
    "NullMetricsSink",
    "NarrativeGenerator",
    "TemplateNarrativeGenerator",
    # Orchestration
    "ExpansionEngine",
    "GenerationResult",
]
