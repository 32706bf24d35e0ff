"""
Exception hierarchy for the expansion engine.

Configuration problems are fatal and raised before any scoring starts.
Data and fetch problems are caught per candidate and degrade completeness
instead of aborting the batch.
"""


class ExpansionError(Exception):
    """Base class for all expansion engine errors."""


class ConfigurationError(ExpansionError):
    """Invalid engine configuration (weights, radii, ratios, thresholds)."""

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class AnchorFetchError(ExpansionError):
    """Anchor/POI feed could not be fetched for a location."""


class AllocationStateError(ExpansionError):
    """Illegal transition in the fairness allocation state machine."""


class ScenarioNotFoundError(ExpansionError, KeyError):
    """Requested scenario id does not exist in the store."""
