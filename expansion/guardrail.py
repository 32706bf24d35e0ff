"""
Batch-level quality checks run after allocation.

Any failing check holds the whole batch. The report carries every
violation so an operator can adjust the configuration and re-run; the
engine never retries on its own.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Sequence

from expansion.config import EngineConfig
from expansion.models import FairnessLedgerEntry, ScoredCandidate

log = logging.getLogger(__name__)


@dataclass
class GuardrailViolation:
    name: str
    observed: float
    threshold: float
    message: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class GuardrailReport:
    passed: bool
    evaluated_count: int
    accepted_count: int
    acceptance_rate: float
    avg_completeness: float
    max_region_share: float
    violations: List[GuardrailViolation] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["violations"] = [v.to_dict() for v in self.violations]
        return data


class QualityGuardrail:
    """Acceptance rate, evidence and concentration checks."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def evaluate(
        self,
        accepted: Sequence[ScoredCandidate],
        evaluated_count: int,
        ledger: Sequence[FairnessLedgerEntry] = (),
    ) -> GuardrailReport:
        cfg = self.config
        violations = []
        accepted_count = len(accepted)

        acceptance_rate = accepted_count / evaluated_count if evaluated_count > 0 else 0.0
        avg_completeness = (
            sum(s.completeness_score for s in accepted) / accepted_count if accepted_count else 0.0
        )
        region_counts = Counter(s.region for s in accepted)
        max_region, max_count = max(region_counts.items(), key=lambda kv: (kv[1], kv[0]), default=("", 0))
        max_region_share = max_count / accepted_count if accepted_count else 0.0

        if accepted_count == 0:
            violations.append(GuardrailViolation(
                name="no_accepted_candidates",
                observed=0,
                threshold=1,
                message=f"No candidates accepted out of {evaluated_count} evaluated",
            ))

        if acceptance_rate < cfg.min_acceptance_rate:
            violations.append(GuardrailViolation(
                name="acceptance_rate",
                observed=acceptance_rate,
                threshold=cfg.min_acceptance_rate,
                message=(
                    f"Acceptance rate {acceptance_rate:.1%} is below the "
                    f"{cfg.min_acceptance_rate:.0%} floor"
                ),
            ))

        if accepted_count and avg_completeness < cfg.min_avg_completeness:
            violations.append(GuardrailViolation(
                name="avg_completeness",
                observed=avg_completeness,
                threshold=cfg.min_avg_completeness,
                message=(
                    f"Average completeness {avg_completeness:.2f} is below "
                    f"{cfg.min_avg_completeness:.2f}"
                ),
            ))

        # Concentration is only meaningful when there is more than one region
        ledger_regions = {e.region for e in ledger} | set(region_counts)
        if len(ledger_regions) >= 2 and max_region_share > cfg.max_region_share:
            violations.append(GuardrailViolation(
                name="region_concentration",
                observed=max_region_share,
                threshold=cfg.max_region_share,
                message=(
                    f"Region {max_region} holds {max_region_share:.0%} of accepted candidates "
                    f"(max {cfg.max_region_share:.0%})"
                ),
            ))

        report = GuardrailReport(
            passed=not violations,
            evaluated_count=evaluated_count,
            accepted_count=accepted_count,
            acceptance_rate=acceptance_rate,
            avg_completeness=avg_completeness,
            max_region_share=max_region_share,
            violations=violations,
        )
        if violations:
            log.warning(f"Guardrail failed: {'; '.join(v.message for v in violations)}")
        else:
            log.info(f"Guardrail passed: {accepted_count}/{evaluated_count} accepted")
        return report
