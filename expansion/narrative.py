"""
Rationale text for accepted suggestions.

Only the interface matters to the engine; the template implementation is
deterministic so results stay reproducible.
"""

from typing import List

from expansion.models import ScoredCandidate

SUB_SCORE_LABELS = {
    "population": "population base",
    "gap": "distance from existing stores",
    "anchor": "nearby anchors",
    "performance": "turnover of nearby stores",
}


class NarrativeGenerator:
    """Interface: produce a short rationale for one scored candidate."""

    def rationale(self, scored: ScoredCandidate) -> str:
        raise NotImplementedError


class TemplateNarrativeGenerator(NarrativeGenerator):
    """Builds the rationale from the two strongest weighted contributions."""

    def rationale(self, scored: ScoredCandidate) -> str:
        b = scored.breakdown
        w = b.weights
        contributions = {
            "population": w.population * b.population,
            "gap": w.gap * b.gap,
            "anchor": w.anchor * b.anchor,
            "performance": w.performance * b.performance,
        }
        top = sorted(contributions, key=lambda k: (-contributions[k], k))[:2]

        where = scored.candidate.name or f"grid cell {scored.candidate.id}"
        parts: List[str] = [
            f"{where} ({scored.region}) scores {b.final:.2f}",
            f"driven by {SUB_SCORE_LABELS[top[0]]} and {SUB_SCORE_LABELS[top[1]]}",
        ]
        if b.saturation > 0:
            parts.append(f"saturation penalty {w.saturation * b.saturation:.2f}")
        if b.uncertainty > 0:
            parts.append(f"uncertainty weight {b.uncertainty:.2f} from estimated inputs")
        return "; ".join(parts) + "."
