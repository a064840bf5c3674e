"""Enumerations for the card-terminal reconciliation system."""

from enum import Enum


class MatchStatus(str, Enum):
    """
    Match state of a sale or settlement record.

    UNMATCHED: Still eligible for matching
    MATCHED: Part of a simple (1:1) match group
    GROUPED: Part of a grouped (N:1) match group
    DIVERGENT: Owned by a divergence, no longer loaded by later runs
    """
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    GROUPED = "grouped"
    DIVERGENT = "divergent"


class MatchKind(str, Enum):
    """Cardinality of a match group."""
    SIMPLE = "simple"      # one sale, one settlement
    GROUPED = "grouped"    # many sales, one settlement


class DivergenceKind(str, Enum):
    """Type of divergence."""
    VALUE_MISMATCH = "value_mismatch"
    DATE_MISMATCH = "date_mismatch"
    SALE_WITHOUT_SETTLEMENT = "sale_without_settlement"
    SETTLEMENT_WITHOUT_SALE = "settlement_without_sale"


class DivergenceStatus(str, Enum):
    """
    Lifecycle of a divergence.

    PENDING is the only non-terminal state.
    """
    PENDING = "pending"
    RESOLVED = "resolved"
    JUSTIFIED = "justified"


class ResolutionKind(str, Enum):
    """How a divergence was closed."""
    JUSTIFICATIVA = "justificativa"    # explained, no financial adjustment
    AJUSTE_MANUAL = "ajuste_manual"    # manual adjustment with a value
    EXCLUSAO = "exclusao"              # excluded, null financial effect

    @property
    def target_status(self) -> DivergenceStatus:
        """Terminal status a resolution of this kind leads to."""
        if self is ResolutionKind.JUSTIFICATIVA:
            return DivergenceStatus.JUSTIFIED
        return DivergenceStatus.RESOLVED


class RunStatus(str, Enum):
    """Phase of a reconciliation run."""
    PENDING = "pending"
    LOADING = "loading"
    MATCHING_SIMPLE = "matching_simple"
    MATCHING_GROUPED = "matching_grouped"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class AuditAction(str, Enum):
    """Type of audit action."""
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    ANOMALY_DETECTED = "anomaly_detected"
    MATCH_SIMPLE = "match_simple"
    MATCH_GROUPED = "match_grouped"
    DIVERGENCE_CREATED = "divergence_created"
    DIVERGENCE_RESOLVED = "divergence_resolved"
    DIVERGENCE_REOPENED = "divergence_reopened"
    RESOLUTION_REJECTED = "resolution_rejected"
