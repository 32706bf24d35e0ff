"""
Core data models for the expansion engine.
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Dict, List, Optional, Any

from expansion.geo import BoundingBox


# ═══════════════════════════════════════════════════════════════════════════
# STATUS CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════
class CandidateSource:
    """Where a candidate came from."""
    SETTLEMENT = "settlement"  # Named city/town/village
    GRID = "grid"              # Exploratory grid cell

    PRIORITY = {SETTLEMENT: 0, GRID: 1}


class CandidateStatus:
    """Per-candidate outcome within a batch."""
    ELIGIBLE = "eligible"          # Scored, passed evidence and distance checks
    EXCLUDED = "excluded"          # Failed minimum evidence or could not be scored
    PRUNED = "pruned"              # Too close to a better candidate
    ACCEPTED = "accepted"          # Selected by the fairness allocator
    NOT_SELECTED = "not_selected"  # Eligible but no slot left in its region
    PROVISIONAL = "provisional"    # Selected in a batch the guardrail held


class BatchStatus:
    """Final decision for a generation batch."""
    ACCEPTED = "accepted"
    HELD = "held"


# ═══════════════════════════════════════════════════════════════════════════
# RAW INPUTS (owned by external collaborators)
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class Settlement:
    """A named place supplied by the places/demographics feed."""
    id: str
    name: str
    lat: float
    lng: float
    region: str
    settlement_type: str = "town"  # "city", "town" or "village"
    population: Optional[int] = None            # Measured
    estimated_population: Optional[int] = None  # Imputed
    median_income: Optional[float] = None

    @property
    def effective_population(self) -> int:
        if self.population is not None:
            return int(self.population)
        return int(self.estimated_population or 0)

    @classmethod
    def from_dict(cls, data: Dict) -> "Settlement":
        return cls(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            lat=data["lat"],
            lng=data["lng"],
            region=data.get("region", ""),
            settlement_type=data.get("settlement_type", data.get("type", "town")),
            population=data.get("population"),
            estimated_population=data.get("estimated_population"),
            median_income=data.get("median_income"),
        )


@dataclass
class Store:
    """An existing store with optional annual turnover."""
    id: str
    lat: float
    lng: float
    annual_turnover: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "Store":
        return cls(
            id=str(data["id"]),
            lat=data["lat"],
            lng=data["lng"],
            annual_turnover=data.get("annual_turnover"),
        )


@dataclass
class RegionPopulation:
    """Population figure used as the basis for a region's fairness quota."""
    region: str
    population: int
    estimated: bool = False


@dataclass
class RegionInputs:
    """Everything the external data collaborators supply for one batch."""
    region: str
    settlements: List[Settlement] = field(default_factory=list)
    stores: List[Store] = field(default_factory=list)
    region_populations: List[RegionPopulation] = field(default_factory=list)
    bounds: Optional[BoundingBox] = None
    data_as_of: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "RegionInputs":
        as_of = data.get("data_as_of")
        return cls(
            region=data["region"],
            settlements=[Settlement.from_dict(s) for s in data.get("settlements", [])],
            stores=[Store.from_dict(s) for s in data.get("stores", [])],
            region_populations=[
                RegionPopulation(
                    region=r["region"],
                    population=int(r["population"]),
                    estimated=bool(r.get("estimated", False)),
                )
                for r in data.get("region_populations", [])
            ],
            bounds=BoundingBox.from_dict(data.get("bounds")),
            data_as_of=date.fromisoformat(as_of) if as_of else None,
        )


@dataclass(frozen=True)
class AnchorFeature:
    """A raw point of interest. Read-only to the engine."""
    id: str
    anchor_type: str  # "mall", "station", "grocer", "retail", ...
    lat: float
    lng: float
    estimated: bool = False


# ═══════════════════════════════════════════════════════════════════════════
# CANDIDATES
# ═══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class Candidate:
    """
    A prospective new-store location.

    Created by the CandidateGenerator and never mutated afterwards.
    """
    id: str
    lat: float
    lng: float
    region: str
    source: str = CandidateSource.SETTLEMENT
    name: Optional[str] = None
    settlement_type: Optional[str] = None
    population: Optional[int] = None
    estimated_population: Optional[int] = None
    median_income: Optional[float] = None

    @property
    def effective_population(self) -> int:
        if self.population is not None:
            return int(self.population)
        return int(self.estimated_population or 0)

    @property
    def population_estimated(self) -> bool:
        return self.population is None

    @property
    def source_priority(self) -> int:
        return CandidateSource.PRIORITY.get(self.source, len(CandidateSource.PRIORITY))

    def to_dict(self) -> Dict:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════════════════
# ANCHORS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class AnchorCluster:
    """Deduplicated group of same-type anchors, ranked by proximity."""
    anchor_type: str
    lat: float
    lng: float
    member_ids: List[str]
    distance_m: float
    rank: int = 0


@dataclass
class AnchorResult:
    """Output of the AnchorAggregator for a single candidate."""
    score: float
    normalized: float
    raw_count: int
    deduplicated_count: int
    capped_count: int
    merged: Dict[str, int] = field(default_factory=dict)
    clusters: List[AnchorCluster] = field(default_factory=list)
    dropped: int = 0
    diminishing_applied: bool = True

    def to_dict(self) -> Dict:
        return {
            "score": self.score,
            "normalized": self.normalized,
            "raw_count": self.raw_count,
            "deduplicated_count": self.deduplicated_count,
            "capped_count": self.capped_count,
            "merged": dict(self.merged),
            "dropped": self.dropped,
            "diminishing_applied": self.diminishing_applied,
        }


# ═══════════════════════════════════════════════════════════════════════════
# COMPLETENESS
# ═══════════════════════════════════════════════════════════════════════════
class DataRecency:
    CURRENT = "current"
    RECENT = "recent"
    STALE = "stale"


@dataclass
class CompletenessInputs:
    """Which scoring inputs were measured vs. estimated for a candidate."""
    population_measured: bool
    performance_sample_size: int
    anchor_live: bool
    data_recency: str = DataRecency.STALE
    income_sourced: bool = False


@dataclass
class CompletenessRecord:
    """Five-item checklist and the derived data-quality score."""
    population_source: float
    performance_sample: float
    anchor_coverage: float
    data_recency: float
    income_proxy: float
    score: float
    inputs: CompletenessInputs
    flags: List[str] = field(default_factory=list)

    @property
    def checklist(self) -> Dict[str, float]:
        return {
            "population_source": self.population_source,
            "performance_sample": self.performance_sample,
            "anchor_coverage": self.anchor_coverage,
            "data_recency": self.data_recency,
            "income_proxy": self.income_proxy,
        }

    def to_dict(self) -> Dict:
        return {
            "score": self.score,
            "checklist": self.checklist,
            "flags": list(self.flags),
            "inputs": asdict(self.inputs),
        }


# ═══════════════════════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class WeightVector:
    """
    Scoring weights.

    population + gap + anchor + performance + uncertainty always sum to 1.0.
    saturation is a penalty coefficient applied subtractively.
    """
    population: float = 0.25
    gap: float = 0.35
    anchor: float = 0.20
    performance: float = 0.20
    saturation: float = 0.15
    uncertainty: float = 0.0

    def total(self) -> float:
        return self.population + self.gap + self.anchor + self.performance + self.uncertainty

    def redistributed(
        self,
        population_factor: float = 1.0,
        performance_factor: float = 1.0,
        anchor_factor: float = 1.0,
        gap_share: float = 0.8,
    ) -> "WeightVector":
        """
        Shrink the weights of sparse inputs and move what was removed.

        A factor of 1.0 leaves that weight untouched. The removed weight goes
        `gap_share` to gap and the rest to the explicit uncertainty weight,
        so the total is unchanged.
        """
        population = self.population * population_factor
        performance = self.performance * performance_factor
        anchor = self.anchor * anchor_factor
        removed = (
            (self.population - population)
            + (self.performance - performance)
            + (self.anchor - anchor)
        )
        return WeightVector(
            population=population,
            gap=self.gap + removed * gap_share,
            anchor=anchor,
            performance=performance,
            saturation=self.saturation,
            uncertainty=self.uncertainty + removed * (1.0 - gap_share),
        )

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "WeightVector":
        return cls(**{k: float(v) for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class StoreMetrics:
    """Existing-store context around a candidate."""
    nearest_distances_m: List[float] = field(default_factory=list)
    store_count_10km: int = 0
    turnover_mean: float = 0.0
    turnover_sample_size: int = 0


@dataclass
class ScoreBreakdown:
    """Sub-scores, the active weights and the final weighted score."""
    population: float
    gap: float
    anchor: float
    performance: float
    saturation: float
    weights: WeightVector
    final: float

    @property
    def uncertainty(self) -> float:
        return self.weights.uncertainty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "population": self.population,
            "gap": self.gap,
            "anchor": self.anchor,
            "performance": self.performance,
            "saturation": self.saturation,
            "final": self.final,
            "weights": self.weights.to_dict(),
        }


@dataclass
class ScoredCandidate:
    """A candidate with everything computed for it during the batch."""
    candidate: Candidate
    breakdown: ScoreBreakdown
    completeness: CompletenessRecord
    anchors: Optional[AnchorResult] = None
    store_metrics: StoreMetrics = field(default_factory=StoreMetrics)
    status: str = CandidateStatus.ELIGIBLE
    rejection_reason: Optional[str] = None
    fetch_errors: List[str] = field(default_factory=list)
    rationale: Optional[str] = None

    @property
    def id(self) -> str:
        return self.candidate.id

    @property
    def region(self) -> str:
        return self.candidate.region

    @property
    def final_score(self) -> float:
        return self.breakdown.final

    @property
    def completeness_score(self) -> float:
        return self.completeness.score

    def reject(self, status: str, reason: str) -> None:
        self.status = status
        self.rejection_reason = reason

    def to_suggestion(self) -> Dict[str, Any]:
        """Output record consumed by the surrounding product."""
        return {
            "id": self.candidate.id,
            "lat": self.candidate.lat,
            "lng": self.candidate.lng,
            "region": self.candidate.region,
            "source": self.candidate.source,
            "name": self.candidate.name,
            "final_score": self.breakdown.final,
            "completeness": self.completeness.score,
            "uncertainty": self.breakdown.uncertainty,
            "breakdown": self.breakdown.to_dict(),
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "rationale": self.rationale,
        }


# ═══════════════════════════════════════════════════════════════════════════
# FAIRNESS / SCENARIOS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class FairnessLedgerEntry:
    """Audit record of how acceptance slots were distributed to one region."""
    region: str
    population_share: float
    quota_basis_confidence: float = 1.0
    quota: int = 0
    bonus: int = 0
    override_cap: Optional[int] = None
    override_extra: int = 0
    override_reason: Optional[str] = None
    available: int = 0
    accepted: int = 0
    notes: List[str] = field(default_factory=list)

    @property
    def allotted(self) -> int:
        return self.quota + self.bonus + self.override_extra

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["allotted"] = self.allotted
        return data


@dataclass(frozen=True)
class ScenarioRecord:
    """Immutable snapshot of one generation run."""
    id: str
    name: str
    created_at: str
    parameters: Dict[str, Any]
    data_versions: Dict[str, str]
    results: Dict[str, Any]
    profile: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "parameters": self.parameters,
            "data_versions": self.data_versions,
            "results": self.results,
            "profile": self.profile,
        }
