"""
Expansion Engine - one generation batch from raw inputs to a decision.

    generate -> score (parallel) -> exclude -> prune -> allocate
             -> guardrail -> accepted | held -> persist scenario

Per-candidate work runs on a thread pool and only reads its own candidate,
its anchor slice and the batch config. Allocation and guardrails wait for
every candidate to finish. Partial results are always returned with
reasons attached; only configuration errors raise.
"""

import time
import logging
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from expansion.anchors import AnchorAggregator, AnchorFeatureSource
from expansion.completeness import CompletenessScorer
from expansion.config import EngineConfig, GenerationParams
from expansion.fairness import FairnessAllocator
from expansion.generator import CandidateGenerator, prune_min_distance
from expansion.guardrail import GuardrailReport, QualityGuardrail
from expansion.metrics import MetricsSink, NullMetricsSink
from expansion.models import (
    BatchStatus,
    Candidate,
    CandidateStatus,
    CompletenessInputs,
    FairnessLedgerEntry,
    RegionInputs,
    ScoreBreakdown,
    ScoredCandidate,
    ScenarioRecord,
)
from expansion.narrative import NarrativeGenerator, TemplateNarrativeGenerator
from expansion.scenario import ScenarioStore, new_record, scenario_id
from expansion.scoring import CandidateScorer, StoreIndex, rank_candidates

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class GenerationResult:
    """Everything a caller needs to review or publish one batch."""
    status: str
    region: str
    seed: int
    target_count: int
    scenario_id: str
    suggestions: List[Dict[str, Any]] = field(default_factory=list)
    provisional: List[Dict[str, Any]] = field(default_factory=list)
    candidates: List[ScoredCandidate] = field(default_factory=list)
    ledger: List[FairnessLedgerEntry] = field(default_factory=list)
    guardrail: Optional[GuardrailReport] = None
    transitions: List[Dict[str, Any]] = field(default_factory=list)
    fairness_summary: List[Dict[str, Any]] = field(default_factory=list)
    profile: List[Dict[str, Any]] = field(default_factory=list)
    unallocated: int = 0
    stats: Dict[str, Any] = field(default_factory=dict)
    timings_ms: Dict[str, float] = field(default_factory=dict)
    scenario: Optional[ScenarioRecord] = None

    @property
    def accepted(self) -> List[ScoredCandidate]:
        return [c for c in self.candidates if c.status == CandidateStatus.ACCEPTED]

    @property
    def is_held(self) -> bool:
        return self.status == BatchStatus.HELD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "region": self.region,
            "seed": self.seed,
            "target_count": self.target_count,
            "scenario_id": self.scenario_id,
            "suggestions": self.suggestions,
            "provisional": self.provisional,
            "diagnostics": [c.to_suggestion() for c in self.candidates],
            "ledger": [e.to_dict() for e in self.ledger],
            "guardrail": self.guardrail.to_dict() if self.guardrail else None,
            "transitions": self.transitions,
            "fairness_summary": self.fairness_summary,
            "profile": self.profile,
            "unallocated": self.unallocated,
            "stats": self.stats,
            "timings_ms": self.timings_ms,
        }


# ═══════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════
class ExpansionEngine:
    """
    Runs generation batches.

    Usage:
        engine = ExpansionEngine(EngineConfig.from_env(), anchor_source=source)
        result = engine.run(inputs, GenerationParams(region="Germany", seed=42))
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        anchor_source: Optional[AnchorFeatureSource] = None,
        narrative: Optional[NarrativeGenerator] = None,
        scenario_store: Optional[ScenarioStore] = None,
        max_workers: int = 8,
        profile_size: int = 50,
    ):
        self.config = (config or EngineConfig()).validate()
        self.anchor_source = anchor_source
        self.narrative = narrative or TemplateNarrativeGenerator()
        self.scenario_store = scenario_store
        self.max_workers = max_workers
        self.profile_size = profile_size

    # ───────────────────────────────────────────────────────────────────────
    # Full batch
    # ───────────────────────────────────────────────────────────────────────
    def run(
        self,
        inputs: RegionInputs,
        params: GenerationParams,
        metrics: Optional[MetricsSink] = None,
    ) -> GenerationResult:
        """Generate, score and decide one batch. Raises only ConfigurationError."""
        metrics = metrics or NullMetricsSink()
        config = self.config.with_params(params)
        seed = params.resolved_seed()
        timings = {}
        started = time.perf_counter()

        log.info(f"Starting batch for {params.region} (seed={seed}, target={params.resolved_target_count()})")

        t0 = time.perf_counter()
        generator = CandidateGenerator(config)
        candidates = generator.generate(inputs, seed)
        timings["generate"] = (time.perf_counter() - t0) * 1000
        metrics.increment("candidates_generated", len(candidates))

        t0 = time.perf_counter()
        scored = self.score_candidates(candidates, inputs, config, metrics)
        timings["score"] = (time.perf_counter() - t0) * 1000

        result = self._decide(scored, params, config, seed, inputs, metrics, timings)
        result.stats["generation"] = generator.stats.to_dict()
        result.timings_ms["total"] = (time.perf_counter() - started) * 1000
        metrics.observe("batch_ms", result.timings_ms["total"])
        return result

    def decide(
        self,
        scored: Sequence[ScoredCandidate],
        params: GenerationParams,
        inputs: Optional[RegionInputs] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> GenerationResult:
        """Run exclusion, pruning, allocation and guardrails on pre-scored candidates."""
        config = self.config.with_params(params)
        return self._decide(
            list(scored), params, config, params.resolved_seed(), inputs,
            metrics or NullMetricsSink(), {},
        )

    # ───────────────────────────────────────────────────────────────────────
    # Per-candidate scoring
    # ───────────────────────────────────────────────────────────────────────
    def score_candidates(
        self,
        candidates: Sequence[Candidate],
        inputs: RegionInputs,
        config: EngineConfig,
        metrics: MetricsSink,
    ) -> List[ScoredCandidate]:
        aggregator = AnchorAggregator(config)
        completeness = CompletenessScorer(config)
        scorer = CandidateScorer(config)
        stores = StoreIndex(inputs.stores, config.saturation_radius_m)
        if stores.dropped:
            metrics.increment("stores_dropped", stores.dropped)

        results: List[ScoredCandidate] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(
                    self._score_one, c, config, aggregator, completeness, scorer,
                    stores, inputs, metrics,
                ): c
                for c in candidates
            }
            for future in as_completed(futures):
                candidate = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    log.exception(f"Scoring failed for candidate {candidate.id}")
                    metrics.increment("scoring_errors")
                    results.append(self._failed(candidate, config, completeness, e))

        metrics.increment("candidates_scored", len(results))
        return sorted(results, key=lambda s: s.id)

    def _score_one(
        self,
        candidate: Candidate,
        config: EngineConfig,
        aggregator: AnchorAggregator,
        completeness: CompletenessScorer,
        scorer: CandidateScorer,
        stores: StoreIndex,
        inputs: RegionInputs,
        metrics: MetricsSink,
    ) -> ScoredCandidate:
        fetch_errors = []
        features = []
        anchor_live = False

        if self.anchor_source is not None:
            try:
                fetch = self.anchor_source.fetch(candidate.lat, candidate.lng, config.anchor_search_radius_m)
                features = fetch.features
                anchor_live = fetch.live and not any(f.estimated for f in features)
                if not fetch.live:
                    metrics.increment("anchor_cache_hits")
            except Exception as e:
                log.warning(f"Anchor fetch failed for {candidate.id}: {e}")
                fetch_errors.append(f"anchors: {e}")
                metrics.increment("anchor_fetch_errors")

        anchors = aggregator.aggregate(candidate.lat, candidate.lng, features)
        store_metrics = stores.metrics_for(candidate.lat, candidate.lng)
        record = completeness.score(
            completeness.inputs_for(candidate, store_metrics, anchor_live, inputs.data_as_of)
        )
        breakdown = scorer.score(candidate, anchors, store_metrics, record)

        return ScoredCandidate(
            candidate=candidate,
            breakdown=breakdown,
            completeness=record,
            anchors=anchors,
            store_metrics=store_metrics,
            fetch_errors=fetch_errors,
        )

    @staticmethod
    def _failed(candidate: Candidate, config: EngineConfig, completeness: CompletenessScorer,
                error: Exception) -> ScoredCandidate:
        record = completeness.score(CompletenessInputs(
            population_measured=False,
            performance_sample_size=0,
            anchor_live=False,
        ))
        breakdown = ScoreBreakdown(0.0, 0.0, 0.0, 0.0, 0.0, config.weights, 0.0)
        return ScoredCandidate(
            candidate=candidate,
            breakdown=breakdown,
            completeness=record,
            status=CandidateStatus.EXCLUDED,
            rejection_reason="scoring_error",
            fetch_errors=[str(error)],
        )

    # ───────────────────────────────────────────────────────────────────────
    # Batch decision
    # ───────────────────────────────────────────────────────────────────────
    def _decide(
        self,
        scored: List[ScoredCandidate],
        params: GenerationParams,
        config: EngineConfig,
        seed: int,
        inputs: Optional[RegionInputs],
        metrics: MetricsSink,
        timings: Dict[str, float],
    ) -> GenerationResult:
        t0 = time.perf_counter()
        target = params.resolved_target_count()

        for s in scored:
            if s.status == CandidateStatus.ELIGIBLE and s.completeness_score < config.min_completeness:
                s.reject(CandidateStatus.EXCLUDED, "minimum_evidence")

        prune_min_distance(scored, config.min_distance_m)

        settlement_populations = defaultdict(int)
        region_populations = []
        if inputs is not None:
            region_populations = inputs.region_populations
            for settlement in inputs.settlements:
                settlement_populations[settlement.region] += settlement.effective_population

        allocator = FairnessAllocator(
            config,
            target,
            region_populations=region_populations,
            settlement_populations=dict(settlement_populations),
            manual_caps=params.manual_caps,
        )
        selected = allocator.allocate(scored)

        report = QualityGuardrail(config).evaluate(selected, len(scored), allocator.ledger)
        status = allocator.finish(
            report.passed,
            "; ".join(v.name for v in report.violations),
        )

        for s in selected:
            s.rationale = self.narrative.rationale(s)

        suggestions = [s.to_suggestion() for s in selected]
        status_counts = Counter(s.status for s in scored)
        metrics.increment("candidates_excluded", status_counts.get(CandidateStatus.EXCLUDED, 0))
        metrics.increment("candidates_pruned", status_counts.get(CandidateStatus.PRUNED, 0))
        metrics.increment("suggestions_accepted", status_counts.get(CandidateStatus.ACCEPTED, 0))
        timings["decide"] = (time.perf_counter() - t0) * 1000

        key = scenario_id(
            params.region, seed, config.weights, config.settlement_mix_ratio,
            config.population_floor, config.snapshot_date, config.data_versions,
        )
        result = GenerationResult(
            status=status,
            region=params.region,
            seed=seed,
            target_count=target,
            scenario_id=key,
            suggestions=suggestions if status == BatchStatus.ACCEPTED else [],
            provisional=suggestions if status == BatchStatus.HELD else [],
            candidates=scored,
            ledger=allocator.ledger,
            guardrail=report,
            transitions=[t.to_dict() for t in allocator.transitions],
            fairness_summary=allocator.fairness_summary(),
            profile=self._profile(scored, selected),
            unallocated=allocator.unallocated,
            stats={"evaluated": len(scored), "by_status": dict(status_counts)},
            timings_ms=timings,
        )

        log.info(
            f"Batch {key} for {params.region}: {status} "
            f"({len(selected)} selected of {len(scored)} evaluated, target {target})"
        )

        if self.scenario_store is not None:
            result.scenario = self._persist(result, params, config)
        return result

    def _profile(self, scored: Sequence[ScoredCandidate], selected: Sequence[ScoredCandidate]) -> List[Dict]:
        """Top-N candidates by rank with their outcome."""
        selected_ids = {s.id for s in selected}
        profile = []
        for rank, s in enumerate(rank_candidates(scored)[:self.profile_size], start=1):
            profile.append({
                "rank": rank,
                "id": s.id,
                "region": s.region,
                "final_score": s.final_score,
                "completeness": s.completeness_score,
                "selected": s.id in selected_ids,
                "status": s.status,
                "rejection_reason": s.rejection_reason,
            })
        return profile

    def _persist(self, result: GenerationResult, params: GenerationParams,
                 config: EngineConfig) -> ScenarioRecord:
        selected = result.suggestions or result.provisional
        evaluated = result.stats["evaluated"]
        parameters = {
            "region": params.region,
            "seed": result.seed,
            "target_count": result.target_count,
            "aggression": params.aggression,
            "population_bias": params.population_bias,
            "proximity_bias": params.proximity_bias,
            "turnover_bias": params.turnover_bias,
            "weights": config.weights.to_dict(),
            "mix_ratio": config.settlement_mix_ratio,
            "population_floor": config.population_floor,
            "min_distance_m": config.min_distance_m,
            "snapshot_date": config.snapshot_date,
        }
        results = {
            "status": result.status,
            "suggestion_count": len(result.suggestions),
            "evaluated_count": evaluated,
            "acceptance_rate": 100.0 * len(selected) / evaluated if evaluated else 0.0,
            "avg_confidence": (
                sum(s["completeness"] for s in selected) / len(selected) if selected else 0.0
            ),
            "timing_ms": round(sum(result.timings_ms.values()), 3),
        }
        record = new_record(
            result.scenario_id,
            params.scenario_name,
            parameters,
            config.data_versions,
            results,
            result.profile,
        )
        return self.scenario_store.save(record)
