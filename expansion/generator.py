"""
Candidate Generation

Builds the raw candidate pool from two sources at a configurable mix:
- Settlement candidates: named cities, towns and villages above the
  population floor
- Grid candidates: exploratory cells with an estimated population

Both sources are sampled with a seeded, population-weighted draw when more
candidates qualify than there are slots, so a given seed always yields the
same pool. Minimum-distance pruning runs later, after scoring.
"""

import math
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Sequence

import numpy as np

from expansion.config import EngineConfig
from expansion.geo import haversine_m, is_valid_coordinate
from expansion.grid import CandidateGrid, bounds_from_settlements
from expansion.models import (
    Candidate,
    CandidateSource,
    CandidateStatus,
    RegionInputs,
    ScoredCandidate,
    Settlement,
)
from expansion.scoring import rank_candidates

log = logging.getLogger(__name__)

SETTLEMENT_TYPE_MULTIPLIERS = {
    "city": 1.2,
    "town": 1.0,
    "village": 0.8,
}
MIN_SAMPLING_WEIGHT = 0.1


def sampling_weight(population: float, settlement_type: str = "town") -> float:
    """Log-scaled population weight so large cities do not dominate the draw."""
    base = math.log10(population / 1000) if population > 0 else 0.0
    return max(base, MIN_SAMPLING_WEIGHT) * SETTLEMENT_TYPE_MULTIPLIERS.get(settlement_type, 1.0)


def weighted_sample(items: Sequence, weights: Sequence[float], k: int, rng: np.random.Generator) -> List:
    """Draw k items without replacement, preserving the input order of the picks."""
    if k >= len(items):
        return list(items)
    if k <= 0:
        return []
    p = np.asarray(weights, dtype=float)
    p = p / p.sum()
    picked = rng.choice(len(items), size=k, replace=False, p=p)
    return [items[i] for i in sorted(picked)]


@dataclass
class GenerationStats:
    """Counts reported with the batch."""
    settlement_slots: int = 0
    grid_slots: int = 0
    settlements_seen: int = 0
    settlements_qualified: int = 0
    settlements_malformed: int = 0
    settlements_estimated: int = 0
    grid_cells_seen: int = 0
    grid_cells_qualified: int = 0
    settlement_candidates: int = 0
    grid_candidates: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


class CandidateGenerator:
    """Produces the deterministic candidate pool for one batch."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self.stats = GenerationStats()

    def generate(self, inputs: RegionInputs, seed: int) -> List[Candidate]:
        cfg = self.config
        self.stats = GenerationStats()
        rng = np.random.default_rng(seed)

        settlement_slots = int(math.floor(cfg.max_candidates * cfg.settlement_mix_ratio))
        grid_slots = cfg.max_candidates - settlement_slots
        self.stats.settlement_slots = settlement_slots
        self.stats.grid_slots = grid_slots

        settlements = self._clean_settlements(inputs.settlements)
        candidates = self._settlement_candidates(settlements, settlement_slots, rng)
        candidates.extend(self._grid_candidates(inputs, settlements, grid_slots, rng))

        log.info(
            f"Generated {len(candidates)} candidates for {inputs.region} "
            f"({self.stats.settlement_candidates} settlement, {self.stats.grid_candidates} grid, seed={seed})"
        )
        return candidates

    # ───────────────────────────────────────────────────────────────────────
    # Settlements
    # ───────────────────────────────────────────────────────────────────────
    def _clean_settlements(self, settlements: Sequence[Settlement]) -> List[Settlement]:
        """Drop malformed places and estimate missing populations."""
        cleaned = []
        self.stats.settlements_seen = len(settlements)
        for s in settlements:
            if not is_valid_coordinate(s.lat, s.lng):
                self.stats.settlements_malformed += 1
                log.warning(f"Dropping settlement {s.id!r} with invalid coordinates ({s.lat}, {s.lng})")
                continue
            if s.population is None and s.estimated_population is None:
                self.stats.settlements_estimated += 1
                s = Settlement(
                    id=s.id, name=s.name, lat=s.lat, lng=s.lng, region=s.region,
                    settlement_type=s.settlement_type,
                    estimated_population=self.config.population_floor,
                    median_income=s.median_income,
                )
            cleaned.append(s)
        return cleaned

    def _settlement_candidates(self, settlements: List[Settlement], slots: int,
                               rng: np.random.Generator) -> List[Candidate]:
        floor = self.config.population_floor
        qualified = sorted(
            (s for s in settlements if s.effective_population >= floor),
            key=lambda s: s.id,
        )
        self.stats.settlements_qualified = len(qualified)

        weights = [sampling_weight(s.effective_population, s.settlement_type) for s in qualified]
        chosen = weighted_sample(qualified, weights, slots, rng)
        self.stats.settlement_candidates = len(chosen)

        return [
            Candidate(
                id=f"settlement_{s.id}",
                lat=s.lat,
                lng=s.lng,
                region=s.region,
                source=CandidateSource.SETTLEMENT,
                name=s.name,
                settlement_type=s.settlement_type,
                population=s.population,
                estimated_population=s.estimated_population,
                median_income=s.median_income,
            )
            for s in chosen
        ]

    # ───────────────────────────────────────────────────────────────────────
    # Grid
    # ───────────────────────────────────────────────────────────────────────
    def _grid_candidates(self, inputs: RegionInputs, settlements: List[Settlement], slots: int,
                         rng: np.random.Generator) -> List[Candidate]:
        if slots <= 0:
            return []
        bounds = inputs.bounds or bounds_from_settlements(settlements)
        if bounds is None:
            log.warning(f"No bounds or settlements for {inputs.region}; skipping grid candidates")
            return []

        cfg = self.config
        grid = CandidateGrid(bounds, cfg.grid_cell_size_m)
        cells = grid.populate(grid.cells(), settlements, cfg.grid_population_radius_m)
        self.stats.grid_cells_seen = len(cells)

        qualified = [c for c in cells if c.estimated_population >= cfg.population_floor]
        self.stats.grid_cells_qualified = len(qualified)

        weights = [sampling_weight(c.estimated_population) for c in qualified]
        chosen = weighted_sample(qualified, weights, slots, rng)
        self.stats.grid_candidates = len(chosen)

        return [
            Candidate(
                id=cell.id,
                lat=cell.lat,
                lng=cell.lng,
                region=cell.region or inputs.region,
                source=CandidateSource.GRID,
                estimated_population=int(round(cell.estimated_population)),
            )
            for cell in chosen
        ]


# ═══════════════════════════════════════════════════════════════════════════
# MINIMUM-DISTANCE PRUNING
# ═══════════════════════════════════════════════════════════════════════════
def prune_min_distance(scored: Sequence[ScoredCandidate], min_distance_m: float) -> List[ScoredCandidate]:
    """
    Walk eligible candidates best-first and prune any that lie closer than
    min_distance_m to one already kept.

    Pruned candidates are marked in place with reason "too_close:<kept id>".
    Returns the kept candidates in ranking order.
    """
    kept: List[ScoredCandidate] = []
    eligible = [s for s in scored if s.status == CandidateStatus.ELIGIBLE]
    for current in rank_candidates(eligible):
        c = current.candidate
        blocker = next(
            (k for k in kept
             if haversine_m(c.lat, c.lng, k.candidate.lat, k.candidate.lng) < min_distance_m),
            None,
        )
        if blocker is None:
            kept.append(current)
        else:
            current.reject(CandidateStatus.PRUNED, f"too_close:{blocker.id}")
    if len(eligible) != len(kept):
        log.debug(f"Pruned {len(eligible) - len(kept)} candidates closer than {min_distance_m:.0f}m")
    return kept
