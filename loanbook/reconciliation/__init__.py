"""Reconciliation engine components."""

from .scoring import MatchScorer, calculate_match_score
from .grouping import CandidateGrouper, find_subset_sum
from .patterns import PatternStore
from .suggestions import SuggestionBuilder, SuggestionPass
from .conflicts import ConflictDetector
from .orchestrator import ReconciliationOrchestrator
from .errors import (
    ReconciliationError,
    StaleReferenceError,
    ImbalancedGroupError,
    PersistenceError,
    SplitValidationError,
)

__all__ = [
    "MatchScorer",
    "calculate_match_score",
    "CandidateGrouper",
    "find_subset_sum",
    "PatternStore",
    "SuggestionBuilder",
    "SuggestionPass",
    "ConflictDetector",
    "ReconciliationOrchestrator",
    "ReconciliationError",
    "StaleReferenceError",
    "ImbalancedGroupError",
    "PersistenceError",
    "SplitValidationError",
]
