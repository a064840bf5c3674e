"""Reconciliation engine components."""

from .matcher import MatchOutcome, ReconciliationMatcher, match
from .divergences import DivergenceBuilder
from .resolver import DivergenceResolver
from .locks import ScopeLockRegistry
from .orchestrator import ReconciliationCoordinator
from .statistics import StatisticsAggregator
from .tolerance_advisor import ToleranceAdvisor, ToleranceSuggestion

__all__ = [
    "MatchOutcome",
    "ReconciliationMatcher",
    "match",
    "DivergenceBuilder",
    "DivergenceResolver",
    "ScopeLockRegistry",
    "ReconciliationCoordinator",
    "StatisticsAggregator",
    "ToleranceAdvisor",
    "ToleranceSuggestion",
]
