"""
Engine Configuration

EngineConfig is built once per batch (defaults, then environment, then the
per-run GenerationParams) and is never mutated afterwards. Every tunable
constant of the engine lives here with an explicit meaning.
"""

import os
import math
import hashlib
from dataclasses import dataclass, field, asdict, replace
from datetime import date
from typing import Dict, List, Optional, Mapping
import logging

from expansion.errors import ConfigurationError
from expansion.models import WeightVector

log = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6

DEFAULT_MERGE_RADII_M = {
    "mall": 120.0,
    "station": 100.0,
    "grocer": 60.0,
    "retail": 60.0,
}

DEFAULT_DATA_VERSIONS = {
    "osm": "overpass-2024-11-01",
    "demographic": "census-2023",
    "stores": "db-current",
}

# Aggression (0-100) to target count when no explicit target is given
AGGRESSION_TIERS = [
    (20, 50),
    (40, 100),
    (60, 150),
    (80, 200),
]
AGGRESSION_MAX_TARGET = 300


# ═══════════════════════════════════════════════════════════════════════════
# PER-RUN PARAMETERS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class RegionOverride:
    """Manual per-region cap set by an operator, always with a reason."""
    region: str
    cap: int
    reason: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "RegionOverride":
        return cls(region=data["region"], cap=int(data["cap"]), reason=data.get("reason", ""))


@dataclass
class GenerationParams:
    """
    Parameters of a single generation request.

    Anything left as None falls back to the EngineConfig value.
    """

    region: str
    """Region (country or state) the batch is generated for."""

    seed: Optional[int] = None
    """Sampling seed. Derived from region, aggression and biases when None."""

    target_count: Optional[int] = None
    """Total acceptance budget. Derived from aggression when None."""

    aggression: int = 50
    """0-100. Higher means a larger batch when no target count is given."""

    population_bias: float = 0.5
    """0-1. Scales the population weight by (0.5 + bias); 0.5 is neutral."""

    proximity_bias: float = 0.5
    """0-1. Scales the gap (distance to existing stores) weight."""

    turnover_bias: float = 0.5
    """0-1. Scales the performance weight."""

    weight_overrides: Dict[str, float] = field(default_factory=dict)
    """Explicit weights replacing the configured ones (must still sum to 1)."""

    settlement_mix_ratio: Optional[float] = None
    """Share of the candidate pool drawn from settlements vs. grid cells."""

    min_distance_m: Optional[float] = None
    """Minimum spacing between eligible candidates."""

    population_floor: Optional[int] = None
    """Settlements and grid cells below this population are ignored."""

    manual_caps: List[RegionOverride] = field(default_factory=list)
    """Operator overrides of per-region allotments."""

    scenario_name: Optional[str] = None
    """Human-readable name stored with the scenario snapshot."""

    def resolved_target_count(self) -> int:
        if self.target_count is not None:
            return int(self.target_count)
        for upper, target in AGGRESSION_TIERS:
            if self.aggression <= upper:
                return target
        return AGGRESSION_MAX_TARGET

    def resolved_seed(self) -> int:
        if self.seed is not None:
            return int(self.seed)
        key = (
            f"{self.region}-{self.aggression}-{self.population_bias}-"
            f"{self.proximity_bias}-{self.turnover_bias}"
        )
        return int(hashlib.md5(key.encode()).hexdigest()[:8], 16)

    def validate(self) -> None:
        problems = []
        if not self.region:
            problems.append("region is required")
        if not 0 <= self.aggression <= 100:
            problems.append(f"aggression must be in [0, 100], got {self.aggression}")
        for name in ("population_bias", "proximity_bias", "turnover_bias"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                problems.append(f"{name} must be in [0, 1], got {value}")
        if self.target_count is not None and self.target_count < 1:
            problems.append(f"target_count must be >= 1, got {self.target_count}")
        unknown = set(self.weight_overrides) - set(WeightVector.__dataclass_fields__)
        if unknown:
            problems.append(f"unknown weight overrides: {sorted(unknown)}")
        for override in self.manual_caps:
            if override.cap < 0:
                problems.append(f"manual cap for {override.region} must be >= 0")
        if problems:
            raise ConfigurationError(problems)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "GenerationParams":
        data = dict(data)
        caps = [RegionOverride.from_dict(c) for c in data.pop("manual_caps", [])]
        return cls(**data, manual_caps=caps)


# ═══════════════════════════════════════════════════════════════════════════
# ENGINE CONFIG
# ═══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class EngineConfig:
    """
    All configurable settings of the engine.

    Every value has an explicit meaning. Call validate() (or build through
    from_env / with_params, which validate) before scoring anything.
    """

    # Scoring weights
    weights: WeightVector = field(default_factory=WeightVector)
    """Canonical weight vector. Saturation is a subtractive penalty."""

    population_sparse_factor: float = 0.5
    """Population weight multiplier when the population is estimated."""

    performance_sparse_factor: float = 0.5
    """Performance weight multiplier when fewer than 3 comparable stores exist."""

    anchor_sparse_factor: float = 0.8
    """Anchor weight multiplier when anchor data is cached, failed or estimated."""

    gap_redistribution_share: float = 0.8
    """Share of removed weight moved to gap; the rest becomes uncertainty."""

    # Sub-score shapes
    reference_turnover: float = 1_000_000.0
    """Mean annual turnover that maps to a performance sub-score of 1.0."""

    gap_midpoint_m: float = 10000.0
    """Mean distance to the nearest stores at which the gap sub-score is 0.5."""

    gap_scale_m: float = 3000.0
    """Steepness of the gap sigmoid."""

    saturation_radius_m: float = 10000.0
    """Stores within this radius count toward saturation and performance."""

    saturation_store_count: int = 10
    """Store count within the radius that means full saturation."""

    min_performance_sample: int = 3
    """Comparable stores needed for performance data to count as measured."""

    # Anchors
    anchor_merge_radii: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_MERGE_RADII_M))
    """Per-type distance under which anchors of the same type are merged."""

    default_merge_radius_m: float = 60.0
    """Merge radius for anchor types not listed above."""

    max_anchors_per_site: int = 25
    """Anchor clusters beyond this rank do not contribute."""

    diminishing_returns: bool = True
    """If True, rank r contributes 1/sqrt(r); otherwise each anchor counts 1."""

    anchor_search_radius_m: float = 2000.0
    """Radius around a candidate that anchor sources are queried for."""

    # Candidate generation
    max_candidates: int = 2000
    """Size of the candidate pool before scoring."""

    settlement_mix_ratio: float = 0.7
    """Share of the pool drawn from settlements; grid cells get the rest."""

    population_floor: int = 1000
    """Settlements and grid cells below this population are ignored."""

    grid_cell_size_m: float = 5000.0
    """Spacing between exploratory grid cell centres."""

    grid_population_radius_m: float = 5000.0
    """Settlements within this distance contribute to a grid cell's population."""

    min_distance_m: float = 1000.0
    """Eligible candidates closer than this to a better one are pruned."""

    min_completeness: float = 0.4
    """Candidates with less evidence than this are held back."""

    # Fairness
    bonus_slots_per_region: int = 1
    """Extra slots for regions that outperform the batch mean."""

    # Guardrails
    min_acceptance_rate: float = 0.15
    """Accepted / evaluated below this holds the batch."""

    min_avg_completeness: float = 0.5
    """Mean completeness of accepted candidates below this holds the batch."""

    max_region_share: float = 0.4
    """Any region above this share of accepted candidates holds the batch."""

    # Reproducibility
    snapshot_date: str = "2024-11-01"
    """Pinned data snapshot (ISO date); also the reference for data recency."""

    data_versions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DATA_VERSIONS))
    """Pinned versions of the external data sources."""

    def merge_radius_for(self, anchor_type: str) -> float:
        return self.anchor_merge_radii.get(anchor_type, self.default_merge_radius_m)

    @property
    def snapshot(self) -> date:
        return date.fromisoformat(self.snapshot_date)

    # ───────────────────────────────────────────────────────────────────────
    # Validation
    # ───────────────────────────────────────────────────────────────────────
    def validate(self) -> "EngineConfig":
        """Raise ConfigurationError listing every problem found."""
        problems = []
        w = self.weights

        for name, value in w.to_dict().items():
            if not math.isfinite(value) or value < 0:
                problems.append(f"weight '{name}' must be a non-negative number, got {value}")
        if abs(w.total() - 1.0) > WEIGHT_TOLERANCE:
            problems.append(f"weights must sum to 1.0, got {w.total():.6f}")
        else:
            # Worst case: every sparse input estimated at once
            worst = w.redistributed(
                population_factor=self.population_sparse_factor,
                performance_factor=self.performance_sparse_factor,
                anchor_factor=self.anchor_sparse_factor,
                gap_share=self.gap_redistribution_share,
            )
            if abs(worst.total() - 1.0) > WEIGHT_TOLERANCE:
                problems.append(
                    f"weights after redistribution sum to {worst.total():.6f}, expected 1.0"
                )

        for name in ("population_sparse_factor", "performance_sparse_factor",
                     "anchor_sparse_factor", "gap_redistribution_share",
                     "settlement_mix_ratio", "min_completeness", "min_acceptance_rate",
                     "min_avg_completeness", "max_region_share"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                problems.append(f"{name} must be in [0, 1], got {value}")

        for name in ("gap_scale_m", "saturation_radius_m", "default_merge_radius_m",
                     "anchor_search_radius_m", "grid_cell_size_m",
                     "grid_population_radius_m", "reference_turnover"):
            value = getattr(self, name)
            if not value > 0:
                problems.append(f"{name} must be positive, got {value}")
        for anchor_type, radius in self.anchor_merge_radii.items():
            if not radius > 0:
                problems.append(f"merge radius for '{anchor_type}' must be positive, got {radius}")

        if self.min_distance_m < 0:
            problems.append(f"min_distance_m must be >= 0, got {self.min_distance_m}")
        if self.max_anchors_per_site < 1:
            problems.append(f"max_anchors_per_site must be >= 1, got {self.max_anchors_per_site}")
        if self.max_candidates < 1:
            problems.append(f"max_candidates must be >= 1, got {self.max_candidates}")
        if self.saturation_store_count < 1:
            problems.append(f"saturation_store_count must be >= 1, got {self.saturation_store_count}")
        if self.population_floor < 0:
            problems.append(f"population_floor must be >= 0, got {self.population_floor}")
        if self.bonus_slots_per_region < 0:
            problems.append(f"bonus_slots_per_region must be >= 0, got {self.bonus_slots_per_region}")
        try:
            date.fromisoformat(self.snapshot_date)
        except (TypeError, ValueError):
            problems.append(f"snapshot_date must be an ISO date, got {self.snapshot_date!r}")

        if problems:
            raise ConfigurationError(problems)
        return self

    # ───────────────────────────────────────────────────────────────────────
    # Per-run overrides
    # ───────────────────────────────────────────────────────────────────────
    def with_params(self, params: GenerationParams) -> "EngineConfig":
        """Return a new validated config with the request's overrides applied."""
        params.validate()
        weights = self.weights
        if params.weight_overrides:
            weights = replace(weights, **{k: float(v) for k, v in params.weight_overrides.items()})
            # Overrides must be valid on their own; biases rescale and would hide a bad sum
            replace(self, weights=weights).validate()

        biases = (params.population_bias, params.proximity_bias, params.turnover_bias)
        if any(b != 0.5 for b in biases):
            weights = apply_biases(weights, *biases)

        changes = {"weights": weights}
        if params.settlement_mix_ratio is not None:
            changes["settlement_mix_ratio"] = params.settlement_mix_ratio
        if params.min_distance_m is not None:
            changes["min_distance_m"] = params.min_distance_m
        if params.population_floor is not None:
            changes["population_floor"] = params.population_floor
        return replace(self, **changes).validate()

    # ───────────────────────────────────────────────────────────────────────
    # Serialization
    # ───────────────────────────────────────────────────────────────────────
    def to_dict(self) -> Dict:
        data = asdict(self)
        data["weights"] = self.weights.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "EngineConfig":
        data = dict(data)
        weights = WeightVector.from_dict(data.pop("weights", {}))
        return cls(weights=weights, **data)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build a validated config from EXPANSION_* and anchor variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        problems = []

        def read(name, cast):
            raw = env.get(name)
            if raw is None or raw == "":
                return None
            try:
                return cast(raw)
            except ValueError:
                problems.append(f"{name}={raw!r} could not be parsed")
                return None

        defaults = cls()
        weight_changes = {}
        for name in ("population", "gap", "anchor", "performance", "saturation"):
            value = read(f"EXPANSION_WEIGHT_{name.upper()}", float)
            if value is not None:
                weight_changes[name] = value

        radii = dict(defaults.anchor_merge_radii)
        for anchor_type in DEFAULT_MERGE_RADII_M:
            value = read(f"ANCHOR_RADIUS_{anchor_type.upper()}", float)
            if value is not None:
                radii[anchor_type] = value

        changes = {
            "weights": replace(defaults.weights, **weight_changes),
            "anchor_merge_radii": radii,
        }
        scalar_vars = {
            "max_anchors_per_site": ("MAX_ANCHORS_PER_SITE", int),
            "diminishing_returns": ("DIMINISHING_RETURNS", _parse_bool),
            "settlement_mix_ratio": ("EXPANSION_MIX_SETTLEMENT", float),
            "min_distance_m": ("EXPANSION_MIN_DISTANCE_M", float),
            "population_floor": ("EXPANSION_POP_MIN", int),
            "max_candidates": ("EXPANSION_MAX_CANDIDATES", int),
            "snapshot_date": ("EXPANSION_OSM_SNAPSHOT_DATE", str),
            "min_acceptance_rate": ("EXPANSION_MIN_ACCEPTANCE_RATE", float),
            "min_avg_completeness": ("EXPANSION_MIN_AVG_COMPLETENESS", float),
            "max_region_share": ("EXPANSION_MAX_REGION_SHARE", float),
        }
        for attr, (var, cast) in scalar_vars.items():
            value = read(var, cast)
            if value is not None:
                changes[attr] = value

        cap_factor = read("EXPANSION_SPARSE_DATA_CAP_FACTOR", float)
        if cap_factor is not None:
            changes["population_sparse_factor"] = cap_factor
            changes["performance_sparse_factor"] = cap_factor

        osm_version = read("EXPANSION_OSM_VERSION", str)
        if osm_version is not None:
            changes["data_versions"] = {**defaults.data_versions, "osm": osm_version}

        if problems:
            raise ConfigurationError(problems)

        config = replace(defaults, **changes).validate()
        log.debug(f"Engine config from environment: {len(changes)} settings applied")
        return config


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


def apply_biases(
    weights: WeightVector,
    population_bias: float,
    proximity_bias: float,
    turnover_bias: float,
) -> WeightVector:
    """
    Scale population/gap/performance weights by (0.5 + bias) and renormalize.

    The four positive weights are rescaled to keep the overall total at 1.0.
    Saturation and uncertainty are left alone.
    """
    population = weights.population * (0.5 + population_bias)
    gap = weights.gap * (0.5 + proximity_bias)
    performance = weights.performance * (0.5 + turnover_bias)
    anchor = weights.anchor
    positive = population + gap + anchor + performance
    if positive <= 0:
        return weights
    budget = 1.0 - weights.uncertainty
    scale = budget / positive
    return replace(
        weights,
        population=population * scale,
        gap=gap * scale,
        anchor=anchor * scale,
        performance=performance * scale,
    )
