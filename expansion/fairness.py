"""
Fair Allocation of Acceptance Slots

A small state machine over one generation batch:

    collecting -> quota_assignment -> bonus_assignment -> guardrail_check
                                                        -> accepted | held

Every region gets floor(target * population_share) slots, optionally lowered
by an operator cap. Regions whose candidates outperform the batch get a
bonus slot. Every decision is written to a per-region ledger entry and every
state change to a transition log.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from expansion.config import EngineConfig, RegionOverride
from expansion.errors import AllocationStateError
from expansion.models import (
    CandidateStatus,
    FairnessLedgerEntry,
    RegionPopulation,
    ScoredCandidate,
)
from expansion.scoring import rank_candidates

log = logging.getLogger(__name__)

MEASURED_QUOTA_CONFIDENCE = 1.0
ESTIMATED_QUOTA_CONFIDENCE = 0.6

# Site share vs population share tolerance for the fairness summary
BALANCE_TOLERANCE = 0.2


class AllocationState:
    """Allocation lifecycle states."""
    COLLECTING = "collecting"
    QUOTA_ASSIGNMENT = "quota_assignment"
    BONUS_ASSIGNMENT = "bonus_assignment"
    GUARDRAIL_CHECK = "guardrail_check"
    ACCEPTED = "accepted"
    HELD = "held"


TRANSITIONS = {
    AllocationState.COLLECTING: {AllocationState.QUOTA_ASSIGNMENT},
    AllocationState.QUOTA_ASSIGNMENT: {AllocationState.BONUS_ASSIGNMENT},
    AllocationState.BONUS_ASSIGNMENT: {AllocationState.GUARDRAIL_CHECK},
    AllocationState.GUARDRAIL_CHECK: {AllocationState.ACCEPTED, AllocationState.HELD},
    AllocationState.ACCEPTED: set(),
    AllocationState.HELD: set(),
}


@dataclass
class StateTransition:
    from_state: str
    to_state: str
    at: str
    note: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


class FairnessAllocator:
    """
    Distributes a fixed acceptance budget across regions.

    One instance handles exactly one batch. Call the stage methods in order,
    or allocate() to run everything up to the guardrail check.
    """

    def __init__(
        self,
        config: EngineConfig,
        target_count: int,
        region_populations: Sequence[RegionPopulation] = (),
        settlement_populations: Optional[Dict[str, int]] = None,
        manual_caps: Sequence[RegionOverride] = (),
    ):
        self.config = config
        self.target_count = target_count
        self.region_populations = {r.region: r for r in region_populations}
        self.settlement_populations = settlement_populations or {}
        self.manual_caps = {o.region: o for o in manual_caps}

        self.state = AllocationState.COLLECTING
        self.transitions: List[StateTransition] = []
        self.entries: Dict[str, FairnessLedgerEntry] = {}
        self.by_region: Dict[str, List[ScoredCandidate]] = {}
        self.selected: List[ScoredCandidate] = []

    # ───────────────────────────────────────────────────────────────────────
    # State machine
    # ───────────────────────────────────────────────────────────────────────
    def transition(self, to_state: str, note: str = "") -> None:
        if to_state not in TRANSITIONS.get(self.state, set()):
            raise AllocationStateError(f"Illegal transition {self.state} -> {to_state}")
        self.transitions.append(StateTransition(
            from_state=self.state,
            to_state=to_state,
            at=datetime.now().isoformat(),
            note=note,
        ))
        log.debug(f"Allocation {self.state} -> {to_state} {note}".rstrip())
        self.state = to_state

    def _require(self, state: str) -> None:
        if self.state != state:
            raise AllocationStateError(f"Expected state {state}, allocator is in {self.state}")

    @property
    def ledger(self) -> List[FairnessLedgerEntry]:
        return [self.entries[r] for r in sorted(self.entries)]

    @property
    def allotted_total(self) -> int:
        return sum(e.allotted for e in self.entries.values())

    @property
    def unallocated(self) -> int:
        return max(0, self.target_count - self.allotted_total)

    # ───────────────────────────────────────────────────────────────────────
    # Stages
    # ───────────────────────────────────────────────────────────────────────
    def collect(self, candidates: Sequence[ScoredCandidate]) -> None:
        """Group eligible candidates by region, best first, and build ledger entries."""
        self._require(AllocationState.COLLECTING)

        grouped = defaultdict(list)
        for scored in candidates:
            if scored.status == CandidateStatus.ELIGIBLE:
                grouped[scored.region].append(scored)
        self.by_region = {region: rank_candidates(items) for region, items in grouped.items()}

        regions = set(self.by_region) | set(self.region_populations)
        populations = {}
        for region in sorted(regions):
            entry = FairnessLedgerEntry(region=region, population_share=0.0)
            entry.available = len(self.by_region.get(region, []))

            figure = self.region_populations.get(region)
            if figure is not None:
                populations[region] = figure.population
                if figure.estimated:
                    entry.quota_basis_confidence = ESTIMATED_QUOTA_CONFIDENCE
                    entry.notes.append("quota basis: estimated population figure")
                else:
                    entry.quota_basis_confidence = MEASURED_QUOTA_CONFIDENCE
            elif region in self.settlement_populations:
                populations[region] = self.settlement_populations[region]
                entry.quota_basis_confidence = ESTIMATED_QUOTA_CONFIDENCE
                entry.notes.append("quota basis: derived from settlement populations")
            else:
                populations[region] = 0
                entry.quota_basis_confidence = ESTIMATED_QUOTA_CONFIDENCE
                entry.notes.append("quota basis: no population figure")
            self.entries[region] = entry

        total = sum(populations.values())
        for region, population in populations.items():
            entry = self.entries[region]
            if total > 0:
                entry.population_share = population / total
            else:
                entry.population_share = 1.0 / len(populations)
                entry.notes.append("quota basis: no population figures, equal shares")

        self.transition(
            AllocationState.QUOTA_ASSIGNMENT,
            f"{sum(len(v) for v in self.by_region.values())} eligible in {len(self.by_region)} regions",
        )

    def assign_quotas(self) -> None:
        """Base quota per region, lowered by any manual cap."""
        self._require(AllocationState.QUOTA_ASSIGNMENT)

        for region, entry in self.entries.items():
            entry.quota = int(self.target_count * entry.population_share + 1e-9)
            override = self.manual_caps.get(region)
            if override is not None:
                entry.override_cap = override.cap
                entry.override_reason = override.reason
                if override.cap < entry.quota:
                    entry.notes.append(
                        f"quota lowered from {entry.quota} to {override.cap} by manual cap: {override.reason}"
                    )
                    log.info(f"Manual cap for {region}: {entry.quota} -> {override.cap} ({override.reason})")
                    entry.quota = override.cap

        self.transition(AllocationState.BONUS_ASSIGNMENT, f"{self.allotted_total} quota slots")

    def assign_bonus(self) -> None:
        """Bonus slots for above-average regions, then manual cap raises."""
        self._require(AllocationState.BONUS_ASSIGNMENT)

        all_scores = [s.breakdown.performance for items in self.by_region.values() for s in items]
        if all_scores:
            batch_mean = sum(all_scores) / len(all_scores)
            region_means = {
                region: sum(s.breakdown.performance for s in items) / len(items)
                for region, items in self.by_region.items() if items
            }
            outperformers = sorted(
                (r for r, m in region_means.items() if m > batch_mean),
                key=lambda r: (-region_means[r], r),
            )
            for region in outperformers:
                entry = self.entries[region]
                slots = min(self.config.bonus_slots_per_region, self.unallocated,
                            max(0, entry.available - entry.quota))
                if entry.override_cap is not None:
                    slots = min(slots, max(0, entry.override_cap - entry.quota))
                if slots > 0:
                    entry.bonus = slots
                    entry.notes.append(
                        f"bonus +{slots}: mean performance {region_means[region]:.3f} > batch {batch_mean:.3f}"
                    )

        for region in sorted(self.manual_caps):
            entry = self.entries.get(region)
            if entry is None or entry.override_cap is None:
                continue
            wanted = entry.override_cap - (entry.quota + entry.bonus)
            extra = min(wanted, self.unallocated)
            if extra > 0:
                entry.override_extra = extra
                entry.notes.append(f"manual cap raised allotment by {extra}: {entry.override_reason}")
                log.info(f"Manual override for {region}: +{extra} slots ({entry.override_reason})")

        self.transition(AllocationState.GUARDRAIL_CHECK, f"{self.allotted_total} slots allotted")

    def select(self) -> List[ScoredCandidate]:
        """Take each region's best candidates up to its allotment."""
        self._require(AllocationState.GUARDRAIL_CHECK)

        selected = []
        for region in sorted(self.by_region):
            entry = self.entries[region]
            ranked = self.by_region[region]
            take = ranked[:entry.allotted]
            entry.accepted = len(take)
            selected.extend(take)
            for scored in ranked[entry.allotted:]:
                scored.reject(CandidateStatus.NOT_SELECTED, f"region_allotment_full:{region}")
        self.selected = rank_candidates(selected)
        return self.selected

    def allocate(self, candidates: Sequence[ScoredCandidate]) -> List[ScoredCandidate]:
        """Run collecting through selection; the guardrail decides the rest."""
        self.collect(candidates)
        self.assign_quotas()
        self.assign_bonus()
        return self.select()

    def finish(self, passed: bool, note: str = "") -> str:
        """Close the batch as accepted or held."""
        self._require(AllocationState.GUARDRAIL_CHECK)
        if passed:
            for scored in self.selected:
                scored.status = CandidateStatus.ACCEPTED
            self.transition(AllocationState.ACCEPTED, note)
        else:
            for scored in self.selected:
                scored.reject(CandidateStatus.PROVISIONAL, "batch_held")
            self.transition(AllocationState.HELD, note)
        return self.state

    # ───────────────────────────────────────────────────────────────────────
    # Reporting
    # ───────────────────────────────────────────────────────────────────────
    def fairness_summary(self) -> List[Dict]:
        """Per-region site share vs population share."""
        total_selected = sum(e.accepted for e in self.entries.values())
        summary = []
        for entry in self.ledger:
            site_share = entry.accepted / total_selected if total_selected else 0.0
            if entry.population_share > 0:
                ratio = site_share / entry.population_share
            else:
                ratio = float("inf") if site_share > 0 else 1.0
            if ratio > 1 + BALANCE_TOLERANCE:
                status = "over"
            elif ratio < 1 - BALANCE_TOLERANCE:
                status = "under"
            else:
                status = "balanced"
            summary.append({
                "region": entry.region,
                "sites": entry.accepted,
                "site_share": site_share,
                "population_share": entry.population_share,
                "status": status,
            })
        return summary
